# Copyright (c) 2015-2019 Avere Systems, Inc.  All Rights Reserved.
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
'''
A utility class for subnet address selection

Used to check and pick static private addresses (such as the SQL back end
address of a two tier deployment) within a subnet.

Cookbook/examples:

n = Cidr('10.1.1.0/24')

for addr in n.addresses(): # generator
    print(addr)

if not n.contains('10.2.1.0'):
    pass
unused = n.available(count=1, used=['10.1.1.4','10.1.1.5'], contiguous=False)

int_val = Cidr.from_address('10.1.1.10')
str_val = Cidr.to_address(167837962)
'''

import struct
import socket
import logging
log = logging.getLogger(__name__)

class Cidr(object):
    '''A utility class for cidr notation'''
    def __init__(self, cidr):
        '''
            Arguments:
                cidr (str): x.x.x.x/x
            Raises: ValueError
        '''
        try:
            address, bits = cidr.split('/')
        except Exception as e:
            log.debug(e)
            raise ValueError("Must pass addr/prefix: {}".format(cidr))

        self.address    = address
        self.addr       = self.from_address(self.address)
        try:
            self.bits   = int(bits)
            if self.bits < 0 or self.bits > 32:
                raise ValueError(bits)
            self.mask   = (0xffffffff << (32 - self.bits)) & 0xffffffff
        except Exception:
            raise ValueError("Invalid prefix: {}".format(bits))
        self.netmask    = self.to_address(self.mask)

    def __str__(self):
        return "{}/{}".format(self.address, self.bits)
    def __repr__(self):
        return self.__str__()

    def start(self):
        ''' start of cidr block
            Returns: int
        '''
        return self.addr & self.mask
    def end(self):
        ''' end of cidr block
            Returns: int
        '''
        return self.addr | (~self.mask & 0xffffffff)

    def addresses(self):
        '''range of address strings in the block
            Returns: generator
        '''
        for i in range(self.start(), self.end() + 1):
            yield self.to_address(i)

    def contains(self, ip):
        '''
            Arguments:
                ip (str)
            Returns: bool
        '''
        i = self.from_address(ip)
        return i & self.mask == self.addr & self.mask

    def available(self, count=1, contiguous=True, used=None, honor_reserves=True):
        '''Return a list of available addresses that are not in the used list

            Arguments:
                count (int): number of addresses
                contiguous (bool): list should be contiguous (defaults True)
                used (list, optional): list of used addresses to skip
                honor_reserves (bool, optional): skips first 4 addresses as well as the last
                    two address in the block.  These are reserved by Azure within a subnet.
            Returns: list
            Raises: ValueError
        '''
        used = set(used or [])
        if honor_reserves:
            for offset in range(0, 4): # network, gateway, default services
                used.add(self.to_address(self.start() + offset))
            used.add(self.to_address(self.end() - 1))
            used.add(self.to_address(self.end())) # broadcast

        r = []
        for addr in self.addresses():
            if addr in used:
                # skip and reset our count
                if contiguous:
                    r = []
                continue
            r.append(addr)
            if len(r) == count:
                return r
        qualifier = 'contiguous ' if contiguous else ''
        raise ValueError("Unable to find {} {}available addresses in {}".format(count, qualifier, self))

    @classmethod
    def from_address(cls, addr):
        '''convert address string to integer value
            Arguments:
                addr (str)
            Returns: int
        '''
        try:
            return struct.unpack('!L', socket.inet_aton(str(addr)))[0]
        except Exception as e:
            log.debug(e)
            raise ValueError("Invalid address: {}".format(addr))
    @classmethod
    def to_address(cls, i):
        '''convert integer value to address string
            Arguments:
                i (int)
            Returns: str
        '''
        try:
            return socket.inet_ntoa(struct.pack('!L', int(i)))
        except Exception as e:
            log.debug(e)
            raise ValueError("Invalid address: {}".format(i))
