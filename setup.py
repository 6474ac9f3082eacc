# Copyright (c) 2015-2020 Avere Systems, Inc.  All Rights Reserved.
# Copyright (c) Microsoft Corporation. All rights reserved.
import logging
from setuptools import setup

logging.basicConfig(level=logging.WARNING)

version = {}
with open("azvm/version.py") as f:
    exec(f.read(), version) #pylint: disable=exec-used

base_deps = ['requests']
azure_deps = ['azure-core', 'azure-identity', 'azure-mgmt-compute', 'azure-mgmt-network', 'azure-mgmt-resource', 'azure-mgmt-storage']

setup(name='vmdeploy',
    version=version['__version__'],
    description='''The azvm Python library and vmdeploy.py command line utility''',
    long_description='''The azvm Python library and vmdeploy.py command line utility
provide the ability to create, extend, destroy, start, and stop load-balanced
sets of Azure virtual machines, and to deploy two tier (web front end and SQL
back end) topologies with striped data disks.

Licensed under the MIT license.''',
    license='MIT',
    python_requires='>=3.8',
    install_requires = base_deps + azure_deps,
    packages=['azvm'],
    scripts=['vmdeploy.py'],
    classifiers=[
        'Development Status :: 5 - Production/Stable',
        'Environment :: Console',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: MIT License',
        'Operating System :: POSIX',
        'Programming Language :: Python :: 3',
    ],
)
