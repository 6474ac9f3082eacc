# Copyright (c) 2015-2019 Avere Systems, Inc.  All Rights Reserved.
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
'''Abstraction for backend services instance objects

The Azure SDK returns model objects for virtual machines which carry only a
snapshot of the instance.  ServiceInstance pairs one of those with the service
that can act on it and provides a useful and consistent interface.

Cookbook/examples:

# existing
inst = ServiceInstance(service=azure, instance_id='web-01')
# new
i = azure.create_instance(...)
inst = ServiceInstance(azure, instance=i)

# or the .create() constructor which takes the create_instance() arguments
inst = ServiceInstance.create(azure, 'Standard_D2s_v3', 'web-01', 'MicrosoftWindowsServer:WindowsServer:2022-datacenter:latest')

inst.start()
inst.stop()
inst.restart()
inst.destroy()

inst.is_on()
inst.is_off()

inst.id()
inst.name()
inst.ip()
inst.fqdn()
inst.status()
inst.data_disks()

inst.refresh()

stdout = inst.run_script('Get-Disk')
'''

from azvm.service import AzVMConfigurationException

class ServiceInstance(object):
    '''Presents service specific instance objects in a general way.

        The ServiceInstance composes both the backend service object and the
        instance object that is returned from the backend service.  Every
        method delegates to the service interface.
    '''
    def __init__(self, service=None, instance_id=None, instance=None):
        '''Constructor

            Arguments:
                service (Service object): backend service
                instance_id (str, optional): instance ID
                instance (obj, optional): instance object as returned from the backend

            Either an instance ID or an instance must be provided.  If the
            instance ID is provided, the instance object is looked up from
            the backend.
        '''
        self.instance_id    = instance_id
        self.instance       = instance
        self.service        = service
        if instance_id and service and not instance:
            self.instance = service.get_instance(instance_id)
            if not self.instance:
                raise AzVMConfigurationException("No such instance: {}".format(instance_id))
        if instance and service and not instance_id:
            self.instance_id = service.instance_id(self.instance)

        if not self.instance:
            raise AzVMConfigurationException("An instance ID or instance object must be provided")

    def __repr__(self):
        return "<ServiceInstance {}>".format(self.instance_id)

    @classmethod
    def create(cls, service, *args, **kwargs):
        '''Create an instance

            This delegates to the service.create_instance call.  See
            documentation there for specific arguments supported by the
            backend service.
        '''
        instance = service.create_instance(*args, **kwargs)
        return cls(service, instance=instance)

    # delegate to service

    def can_stop(self):
        return self.service.can_stop(self.instance)

    def stop(self):
        '''Stop the instance'''
        self.service.stop(self.instance)
        self.refresh()

    def start(self):
        '''Start the instance'''
        self.service.start(self.instance)
        self.refresh()

    def restart(self):
        '''Restart the instance'''
        self.service.restart(self.instance)
        self.refresh()

    def destroy(self, **options):
        '''Destroy the instance'''
        self.refresh()
        return self.service.destroy(self.instance, **options)

    def is_on(self):
        return self.service.is_on(self.instance)

    def is_off(self):
        return self.service.is_off(self.instance)

    def id(self):
        '''The instance ID'''
        return self.instance_id

    def name(self):
        '''The instance name'''
        return self.service.name(self.instance)

    def ip(self):
        '''The primary IP address of the instance'''
        return self.service.ip(self.instance)

    def fqdn(self):
        return self.service.fqdn(self.instance)

    def status(self):
        '''The instance status'''
        return self.service.status(self.instance)

    def os_type(self):
        '''Windows or Linux'''
        return self.service.os_type(self.instance)

    def data_disks(self):
        '''The data disks of the instance as [{'name', 'lun', 'size'}]'''
        return self.service.data_disks(self.instance)

    def refresh(self):
        '''Refresh the backend instance object'''
        self.instance = self.service.refresh(self.instance)
        if not self.instance:
            raise AzVMConfigurationException("Failed to refresh, no such instance: {}".format(self.instance_id))

    def wait_for_agent(self):
        '''Wait for the guest agent to report ready'''
        return self.service.wait_for_agent(self.instance)

    def run_script(self, script, **options):
        '''Run a script on the instance

            Arguments:
                script (str): script contents
                options (dict): passed to service backend (os_type, parameters, wait)

            Returns: str (script output)
        '''
        return self.service.run_script(self.instance, script, **options)
