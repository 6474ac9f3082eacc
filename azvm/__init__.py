# Copyright (c) 2015-2019 Avere Systems, Inc.  All Rights Reserved.
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
'''Azure load-balanced VM and two-tier deployment library'''

from .version import __version__, __version_info__
from .deployment import LoadBalancedSet, Endpoint
from .twotier import TwoTierDeployment
from .serviceInstance import ServiceInstance
from .cidr import Cidr
from .service import ServiceBase
