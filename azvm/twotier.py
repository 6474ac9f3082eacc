# Copyright (c) 2015-2019 Avere Systems, Inc.  All Rights Reserved.
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
'''Two tier (web front end + SQL back end) deployments

The web tier is a LoadBalancedSet named <name>-web behind the <name> cloud
service.  The back end is a single instance <name>-sql-01 in its own
availability set, with a static private address and its data disks striped
into a single volume.

Cookbook/examples:

t = TwoTierDeployment.create(service, 'myapp', 2,
        admin_password='...',
        sql_disk_count=4, sql_disk_size=1024)

t = TwoTierDeployment.load(service, 'myapp')
t.web.add_instances(1, admin_password='...')
TwoTierDeployment.stripe_disks(t.sql_instance)

t.destroy()
'''

import logging

from azvm.deployment import LoadBalancedSet, Endpoint
from azvm.serviceInstance import ServiceInstance
from azvm.service import *
import azvm.striping

log = logging.getLogger(__name__)


class TwoTierDeployment(object):
    '''Web front end and SQL back end deployment'''
    DEFAULT_WEB_MACHINE_TYPE = 'Standard_D2s_v3'
    DEFAULT_SQL_MACHINE_TYPE = 'Standard_E4s_v3'
    DEFAULT_WEB_IMAGE = 'MicrosoftWindowsServer:WindowsServer:2022-datacenter-azure-edition:latest'
    DEFAULT_SQL_IMAGE = 'MicrosoftSQLServer:sql2022-ws2022:standard-gen2:latest'
    DEFAULT_SQL_DISK_COUNT = 4
    DEFAULT_SQL_DISK_SIZE = 1024
    DEFAULT_SQL_DISK_CACHING = 'ReadOnly'
    WEB_ENDPOINT_NAME = 'web'
    # create() options that are not passed to the instances
    TIER_OPTIONS = [
        'web_machine_type', 'web_image', 'sql_machine_type', 'sql_image',
        'sql_disk_count', 'sql_disk_size', 'sql_disk_caching', 'sql_address',
        'endpoint', 'skip_cleanup', 'launch_delay', 'dns_label',
        'drive_letter', 'label', 'interleave_kb', 'allocation_unit_kb', 'pool_name',
        'mount_point', 'filesystem', 'chunk_kb', 'md_device',
    ]
    STRIPING_OPTIONS = ['drive_letter', 'label', 'interleave_kb', 'allocation_unit_kb', 'pool_name',
                        'mount_point', 'filesystem', 'chunk_kb', 'md_device']

    def __init__(self, service, **options):
        '''Constructor

            To create a deployment, use TwoTierDeployment.create()

            To load a deployment, use TwoTierDeployment.load()

            Arguments:
                service: the backend service
                name (str, optional): deployment name
                web (LoadBalancedSet or dict, optional): web tier
                sql_instance (str or ServiceInstance, optional): SQL back end instance
                sql_availability_set (str, optional): SQL back end availability set name
        '''
        self.service      = service
        self.name         = options.get('name') or None
        self.web          = options.get('web') or None
        self.sql_instance = options.get('sql_instance') or None
        self.sql_availability_set = options.get('sql_availability_set') or None

        if isinstance(self.web, dict):
            self.web = LoadBalancedSet(service, **self.web)
        if self.sql_instance and not isinstance(self.sql_instance, ServiceInstance):
            self.sql_instance = ServiceInstance(service=service, instance_id=self.sql_instance)

    def __repr__(self):
        return "<TwoTierDeployment {}>".format(self.name)

    @classmethod
    def web_name(cls, name):
        return '{}-web'.format(name)

    @classmethod
    def sql_name(cls, name):
        return '{}-sql-01'.format(name)

    @classmethod
    def create(cls, service, name, web_count, **options):
        '''Create a two tier deployment

            Arguments:
                service: the backend service
                name (str): deployment name (also the cloud service name)
                web_count (int): number of web front end instances
                web_machine_type (str, optional): defaults to DEFAULT_WEB_MACHINE_TYPE
                web_image (str, optional): defaults to DEFAULT_WEB_IMAGE
                sql_machine_type (str, optional): defaults to DEFAULT_SQL_MACHINE_TYPE
                sql_image (str, optional): defaults to DEFAULT_SQL_IMAGE
                sql_disk_count (int, optional): number of SQL data disks to stripe
                sql_disk_size (int, optional): size of each SQL data disk in GB
                sql_disk_caching (str, optional): SQL data disk caching
                sql_address (str, optional): static private address of the SQL instance
                    (defaults to the first address still free once the web tier is up)
                endpoint (Endpoint, optional): web endpoint (defaults to HTTP on port 80 with an HTTP probe)
                skip_cleanup (bool, optional): do not clean up on failure
                launch_delay (int, optional): seconds between web instance launches
                dns_label (str, optional): public address DNS label
                drive_letter, label, interleave_kb, allocation_unit_kb, pool_name,
                mount_point, filesystem, chunk_kb, md_device: striping options
                **options: passed to the service create_instance() for both tiers

            Raises: AzVMConfigurationException, AzVMCreateFailure
        '''
        if not name:
            raise AzVMConfigurationException("A deployment name is required")
        if not LoadBalancedSet.valid_set_name(cls.web_name(name)):
            raise AzVMConfigurationException("{} is not a valid deployment name".format(name))
        if int(web_count) < 1:
            raise AzVMConfigurationException("At least one web instance is required")

        web_machine_type = options.get('web_machine_type') or cls.DEFAULT_WEB_MACHINE_TYPE
        web_image        = options.get('web_image') or cls.DEFAULT_WEB_IMAGE
        sql_machine_type = options.get('sql_machine_type') or cls.DEFAULT_SQL_MACHINE_TYPE
        sql_image        = options.get('sql_image') or cls.DEFAULT_SQL_IMAGE
        sql_disk_size    = int(options.get('sql_disk_size') or cls.DEFAULT_SQL_DISK_SIZE)
        sql_disk_caching = options.get('sql_disk_caching') or cls.DEFAULT_SQL_DISK_CACHING
        sql_disk_count   = options.get('sql_disk_count') or cls.DEFAULT_SQL_DISK_COUNT
        sql_disk_count   = azvm.striping.validate_disk_count(sql_disk_count, service.max_data_disk_count(sql_machine_type))
        endpoint         = options.get('endpoint') or Endpoint(cls.WEB_ENDPOINT_NAME, port=80, probe_protocol='Http', probe_path='/')
        skip_cleanup     = options.get('skip_cleanup', False)

        sql_address = options.get('sql_address') or None
        if sql_address:
            if not service.subnet_contains(sql_address):
                raise AzVMConfigurationException("The SQL address {} is not within the subnet".format(sql_address))
            if service.in_use_addresses('{}/32'.format(sql_address)):
                raise AzVMConfigurationException("The requested SQL address {} is already in use".format(sql_address))

        # validate the disk layout before we create anything
        disks = service.data_disk_definitions(cls.sql_name(name), sql_disk_count, sql_disk_size, sql_disk_caching, sql_machine_type)

        instance_options = {k: v for k, v in options.items() if k not in cls.TIER_OPTIONS}
        striping_options = {k: v for k, v in options.items() if k in cls.STRIPING_OPTIONS}

        t = cls(service, name=name, sql_availability_set='{}-sql-availability-set'.format(name))
        try:
            log.info("Creating web tier {}".format(cls.web_name(name)))
            t.web = LoadBalancedSet.create(service, web_machine_type, cls.web_name(name), web_count, web_image, endpoint,
                        service_name=name,
                        dns_label=options.get('dns_label'),
                        launch_delay=options.get('launch_delay'),
                        skip_cleanup=skip_cleanup,
                        **instance_options)

            # the web NICs take dynamic addresses, so choose the static one after them
            web_addresses = [_.ip() for _ in t.web.instances]
            if sql_address in web_addresses:
                raise AzVMConfigurationException("The requested SQL address {} is already in use".format(sql_address))
            if not sql_address:
                avail, _ = service.get_available_addresses(count=1, in_use=web_addresses)
                sql_address = avail[0]
            log.debug("Using SQL back end address {}".format(sql_address))

            log.info("Creating SQL back end {}".format(cls.sql_name(name)))
            service._create_availability_set(t.sql_availability_set)
            sql_options = dict(instance_options)
            sql_options['availability_set'] = t.sql_availability_set
            sql_options['private_ip_address'] = sql_address
            t.sql_instance = ServiceInstance.create(service, sql_machine_type, cls.sql_name(name), sql_image,
                                other_disks=disks, **sql_options)

            cls.stripe_disks(t.sql_instance, **striping_options)
        except (KeyboardInterrupt, Exception) as e:
            log.error("Two tier deployment failed: {}".format(e))
            if not skip_cleanup:
                try:
                    t.destroy()
                except Exception as destroy_e:
                    log.error("Failed to clean up {}: {}".format(name, destroy_e))
            if isinstance(e, AzVMCreateFailure):
                raise
            raise AzVMCreateFailure(e)

        return t

    @classmethod
    def stripe_disks(cls, instance, **options):
        '''Stripe the data disks of an instance into a single volume

            Waits for the instance agent before running the striping script.

            Arguments:
                instance (ServiceInstance): instance with attached data disks
                **options: passed to azvm.striping.striping_script()

            Returns: str (script output)
            Raises: AzVMConfigurationException, AzVMScriptFailure
        '''
        disk_count = len(instance.data_disks())
        if not disk_count:
            raise AzVMConfigurationException("{} has no data disks to stripe".format(instance.name()))
        script = azvm.striping.striping_script(instance.os_type(), disk_count, **options)

        log.info("Waiting for the agent on {}".format(instance.name()))
        instance.wait_for_agent()
        log.info("Striping {} data disks on {}".format(disk_count, instance.name()))
        output = instance.run_script(script)
        log.info(output)
        return output

    @classmethod
    def load(cls, service, name, endpoint_name=None):
        '''Load an existing two tier deployment

            Arguments:
                service: the backend service
                name (str): deployment name
                endpoint_name (str, optional): web endpoint set name (defaults to the
                    endpoint set holding the <name>-web-<nn> instances)

            Raises: AzVMConfigurationException
        '''
        endpoint_name = endpoint_name or cls.web_endpoint_name(service, name)
        t = cls(service, name=name, sql_availability_set='{}-sql-availability-set'.format(name))
        t.web = LoadBalancedSet.load(service, name, endpoint_name, name=cls.web_name(name))
        t.sql_instance = ServiceInstance(service=service, instance_id=cls.sql_name(name))
        return t

    @classmethod
    def web_endpoint_name(cls, service, name):
        '''Return the endpoint set of the web tier of a deployment

            The web tier may have been created with a custom endpoint, so the
            endpoint sets of the cloud service are searched for the one whose
            members are the <name>-web-<nn> instances.
        '''
        set_names = sorted(service.endpoint_sets(name), key=lambda _: _ != cls.WEB_ENDPOINT_NAME)
        for set_name in set_names:
            for member in service.endpoint_members(name, set_name):
                m = ServiceBase.INSTANCE_NAME_RE.match(member)
                if m and m.group(1) == cls.web_name(name):
                    return set_name
        return cls.WEB_ENDPOINT_NAME

    def _all_instances(self):
        instances = list(self.web.instances) if self.web else []
        if self.sql_instance:
            instances.append(self.sql_instance)
        return instances

    def start(self):
        '''Start the back end, then the web tier'''
        if self.sql_instance:
            self.sql_instance.start()
        if self.web:
            self.web.start()

    def stop(self):
        '''Stop the web tier, then the back end'''
        if self.web:
            self.web.stop()
        if self.sql_instance:
            self.sql_instance.stop()

    def is_on(self):
        instances = self._all_instances()
        return all([_.is_on() for _ in instances]) if instances else False

    def is_off(self):
        instances = self._all_instances()
        return all([_.is_off() for _ in instances]) if instances else False

    def status(self):
        '''Returns a dict of instance name to instance status'''
        status = self.web.status() if self.web else {}
        if self.sql_instance:
            status[self.sql_instance.name()] = self.sql_instance.status()
        return status

    def destroy(self, **options):
        '''Destroy both tiers

            Arguments:
                **options: passed to ServiceInstance.destroy()
        '''
        if self.web:
            self.web.destroy(**options)
            self.web = None
        if self.sql_instance:
            self.sql_instance.destroy(**options)
            self.sql_instance = None
        if self.sql_availability_set:
            try:
                self.service._delete_availability_set(self.sql_availability_set)
            except Exception as e:
                log.debug('Ignoring availability set cleanup error: {}'.format(e))

    def export(self):
        '''Export the deployment in an easy to serialize format'''
        return {
            'name': self.name,
            'web': self.web.export() if self.web else None,
            'sql_instance': self.sql_instance.instance_id if self.sql_instance else None,
            'sql_availability_set': self.sql_availability_set,
        }
