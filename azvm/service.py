# Copyright (c) 2015-2019 Avere Systems, Inc.  All Rights Reserved.
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
'''Service commons'''

import re
import os
import logging
import random
import threading
import urllib.parse

import requests

class AzVMServiceTimeout(Exception): pass
class AzVMServiceConnectionFailure(Exception): pass
class AzVMServiceFailure(Exception): pass
class AzVMServiceMetaDataFailure(Exception): pass
class AzVMConfigurationException(Exception): pass
class AzVMCreateFailure(Exception): pass
class AzVMInstanceExistsException(Exception): pass
class AzVMScriptFailure(Exception): pass

CONNECTION_TIMEOUT = 10
MAX_ERRORTIME = 30

def backoff(counter, max_backoff=MAX_ERRORTIME):
    '''Return an exponential backoff time based on a provided counter

        Arguments:
            counter (int): incrementing value
            max_backoff (int): maximum backoff value (defaults to azvm.service.MAX_ERRORTIME)
    '''
    return min(max_backoff, (2**counter) + (random.randint(0, 1000) / 1000.0))

def validate_proxy(proxy_uri):
    '''Validate the proxy URI

        Arguments:
            proxy_uri (str): http://[<user>[:<pass>]@]<host>[:<port>]

        This returns a urllib.parse.ParseResult object
    '''
    proxy = urllib.parse.urlparse(proxy_uri)
    if not proxy.hostname:
        raise AzVMConfigurationException("Invalid proxy: {}".format(proxy_uri))
    return proxy


class ServiceBase(object):
    '''Basic service interface'''
    INSTANCE_NAME_RE = re.compile(r'^(.*?)\-?([0-9]+)$')
    POLLTIME = 1
    WAIT_FOR_SUCCESS = 300
    WAIT_FOR_DESTROY = 600
    WAIT_FOR_START = WAIT_FOR_SUCCESS
    WAIT_FOR_RESTART = WAIT_FOR_SUCCESS
    WAIT_FOR_STOP = 600
    WAIT_FOR_STATUS = 120
    WAIT_FOR_OPERATION = 60
    WAIT_FOR_AGENT = 600
    WAIT_FOR_SCRIPT = 1800
    CLOUD_API_RETRIES = 3

    def __init__(self, *args, **kwargs): #pylint: disable=unused-argument
        self.local = threading.local()
        self.proxy_uri = None
        self.proxy = None

    def connection_test(self):
        raise NotImplementedError()
    def connection(self):
        raise NotImplementedError()
    def check(self, percentage=0.6):
        raise NotImplementedError()

    @classmethod
    def get_instance_data(cls, **options):
        raise NotImplementedError()

    @classmethod
    def environment_init(cls, **options):
        raise NotImplementedError()

    @classmethod
    def on_instance_init(cls, **options):
        raise NotImplementedError()

    def find_instances(self, search=None):
        raise NotImplementedError()
    def get_instances(self, instance_ids):
        raise NotImplementedError()
    def get_instance(self, instance_id):
        raise NotImplementedError()
    def wait_for_status(self, instance, status, retries=WAIT_FOR_STATUS):
        raise NotImplementedError()
    def wait_for_agent(self, instance, retries=WAIT_FOR_AGENT):
        raise NotImplementedError()
    def stop(self, instance, wait=WAIT_FOR_STOP):
        raise NotImplementedError()
    def start(self, instance, wait=WAIT_FOR_START):
        raise NotImplementedError()
    def restart(self, instance, wait=WAIT_FOR_RESTART):
        raise NotImplementedError()
    def destroy(self, instance, wait=WAIT_FOR_DESTROY):
        raise NotImplementedError()
    def is_on(self, instance):
        raise NotImplementedError()
    def is_off(self, instance):
        raise NotImplementedError()
    def name(self, instance):
        raise NotImplementedError()
    def instance_id(self, instance):
        raise NotImplementedError()
    def ip(self, instance):
        raise NotImplementedError()
    def fqdn(self, instance):
        raise NotImplementedError()
    def status(self, instance):
        raise NotImplementedError()
    def refresh(self, instance):
        raise NotImplementedError()
    def can_stop(self, instance):
        raise NotImplementedError()
    def data_disks(self, instance):
        raise NotImplementedError()
    def os_type(self, instance):
        raise NotImplementedError()

    def create_instance(self, machine_type, name, boot_disk_image, other_disks=None, **options):
        raise NotImplementedError()
    def run_script(self, instance, script, os_type=None, parameters=None, wait=WAIT_FOR_SCRIPT):
        raise NotImplementedError()

    # front end / endpoints

    def add_endpoint(self, lb_name, endpoint):
        raise NotImplementedError()
    def endpoint_members(self, lb_name, set_name):
        raise NotImplementedError()
    def endpoint_sets(self, lb_name):
        raise NotImplementedError()

    # networking

    def get_available_addresses(self, count=1, contiguous=False, addr_range=None, in_use=None):
        raise NotImplementedError()
    def in_use_addresses(self, cidr_block):
        raise NotImplementedError()
    def export(self):
        raise NotImplementedError()

    def valid_instancename(self, name):
        '''Validate the instance name

            Returns: bool
        '''
        if len(name) > 255:
            return False
        return True

    def url_fetch(self, url, filename, chunksize=1024 * 1024):
        '''Retrieve the object from the URL, writing it to the passed in file location

            Arguments:
                url (str): proto://
                filename (str): name of destination file (absolute path)

            Returns: Nothing
            Raises: Exception
        '''
        log = logging.getLogger(self.__module__)

        parsed_url = urllib.parse.urlparse(url)
        if parsed_url.scheme not in ['http', 'https']:
            raise AzVMConfigurationException("Invalid scheme: {}".format(parsed_url.scheme))

        proxies = {'http': self.proxy_uri, 'https': self.proxy_uri} if self.proxy_uri else None
        log.debug("Fetching {} to {}".format(url, filename))
        tmp_filename = filename + '.tmp'
        with requests.get(url, stream=True, proxies=proxies, timeout=CONNECTION_TIMEOUT) as r:
            r.raise_for_status()
            with open(tmp_filename, 'wb') as destination:
                for data in r.iter_content(chunk_size=chunksize):
                    destination.write(data)
        os.rename(tmp_filename, filename)

    def set_proxy(self, proxy_uri):
        '''Set service proxy

            Arguments:
                proxy_uri (str): http://[<user>[:<pass>]@]<host>[:<port>]
        '''
        proxy          = validate_proxy(proxy_uri)
        self.proxy_uri = proxy_uri
        self.proxy     = proxy

    def get_current_instance(self):
        '''This is a helper to return the current backend instance object.

            This is only applicable when running on a cloud instance.
        '''
        return self.get_instance(self.get_current_instance_id())
    def get_current_instance_id(self):
        '''This is a helper to return the current backend instance identifier.

            This is only applicable when running on a cloud instance.
        '''
        if not self.on_instance: #pylint: disable=no-member
            raise AzVMConfigurationException("Not a cloud instance")
        return self.local.instance_data['service_id']
