# Copyright (c) 2015-2019 Avere Systems, Inc.  All Rights Reserved.
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
__version_info__ = (1, 0, 0)
__version__ = '.'.join([str(_) for _ in __version_info__])
