# Copyright (c) 2015-2019 Avere Systems, Inc.  All Rights Reserved.
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
'''Load-balanced instance set management

A load-balanced set is a group of instances sharing one load-balanced
endpoint set (backend pool, health probe and rule) on a load balancer with a
public address (the "cloud service"), all placed in one availability set.
Instance names are <name>-<nn>.

Cookbook/examples:

service = azvm.msazure.Service(...)

# create a new set (creates the front end and availability set as needed)
web = LoadBalancedSet.create(service, 'Standard_D2s_v3', 'myapp-web', 2,
            'MicrosoftWindowsServer:WindowsServer:2022-datacenter:latest',
            Endpoint('web', port=80, probe_protocol='Http', probe_path='/'),
            admin_password='...')

# load the members of an existing endpoint set
web = LoadBalancedSet.load(service, 'myapp-web', 'web')
web.next_instance_number()
web.add_instances(3) # replicates the first member

web.start()
web.stop()
web.status()
web.destroy(keep_front_end=True)

serializeme = web.export()
web = LoadBalancedSet(service, **serializeme)
'''

import threading
import queue
import time
import logging
import re

from azvm.serviceInstance import ServiceInstance
from azvm.service import *

log = logging.getLogger(__name__)


class Endpoint(object):
    '''Load-balanced endpoint set definition

        The backend pool, health probe and load balancing rule created for an
        endpoint are all named after it.
    '''
    VALID_PROTOCOLS = ['Tcp', 'Udp']
    VALID_PROBE_PROTOCOLS = ['Tcp', 'Http', 'Https']
    NAME_RE = re.compile(r'^[a-zA-Z0-9][-a-zA-Z0-9_.]*$')

    def __init__(self, name, port=80, local_port=None, protocol='Tcp',
                 probe_protocol='Tcp', probe_port=None, probe_path='/',
                 probe_interval=15, probe_count=2, idle_timeout=4):
        '''Constructor

            Arguments:
                name (str): endpoint set name
                port (int, optional): public port (defaults to 80)
                local_port (int, optional): instance port (defaults to port)
                protocol (str, optional): Tcp or Udp
                probe_protocol (str, optional): Tcp, Http or Https
                probe_port (int, optional): probe port (defaults to local_port)
                probe_path (str, optional): probe request path for Http/Https probes
                probe_interval (int, optional): seconds between probes
                probe_count (int, optional): failed probes before a member is taken out
                idle_timeout (int, optional): idle timeout in minutes

            Raises: AzVMConfigurationException
        '''
        self.name           = name
        self.protocol       = str(protocol).capitalize()
        self.port           = self._valid_port(port)
        self.local_port     = self._valid_port(local_port or port)
        self.probe_protocol = str(probe_protocol).capitalize()
        self.probe_port     = self._valid_port(probe_port or self.local_port)
        self.probe_path     = probe_path
        self.probe_interval = int(probe_interval)
        self.probe_count    = int(probe_count)
        self.idle_timeout   = int(idle_timeout)

        if not name or not self.NAME_RE.match(name):
            raise AzVMConfigurationException("{} is not a valid endpoint name".format(name))
        if self.protocol not in self.VALID_PROTOCOLS:
            raise AzVMConfigurationException("Invalid endpoint protocol {}, must be one of {}".format(protocol, ', '.join(self.VALID_PROTOCOLS)))
        if self.probe_protocol not in self.VALID_PROBE_PROTOCOLS:
            raise AzVMConfigurationException("Invalid probe protocol {}, must be one of {}".format(probe_protocol, ', '.join(self.VALID_PROBE_PROTOCOLS)))
        if self.probe_protocol != 'Tcp' and not (probe_path or '').startswith('/'):
            raise AzVMConfigurationException("An {} probe requires a request path".format(self.probe_protocol))

    def __repr__(self):
        return "<Endpoint {} {} {}->{}>".format(self.name, self.protocol, self.port, self.local_port)

    def _valid_port(self, port):
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise AzVMConfigurationException("Invalid port: {}".format(port))
        if port < 1 or port > 65535:
            raise AzVMConfigurationException("Invalid port: {}".format(port))
        return port

    def export(self):
        '''Export the endpoint in an easy to serialize format'''
        return {
            'name': self.name,
            'port': self.port,
            'local_port': self.local_port,
            'protocol': self.protocol,
            'probe_protocol': self.probe_protocol,
            'probe_port': self.probe_port,
            'probe_path': self.probe_path,
            'probe_interval': self.probe_interval,
            'probe_count': self.probe_count,
            'idle_timeout': self.idle_timeout,
        }


class LoadBalancedSet(object):
    '''Load-balanced instance set representation

        LoadBalancedSet composes the backend service object and performs all
        operations through it.
    '''
    LAUNCH_DELAY = 30
    MIN_SUFFIX_WIDTH = 2
    # create() options that are not passed to the instances
    SET_OPTIONS = ['service_name', 'availability_set', 'dns_label', 'skip_cleanup', 'launch_delay']

    def __init__(self, service, **options):
        '''Constructor

            The only required argument is the service backend.

            To create a set, use LoadBalancedSet.create()

            To load a set, use LoadBalancedSet.load()

            Arguments:
                service: the backend service
                name (str, optional): instance name prefix
                service_name (str, optional): load balancer (cloud service) name, defaults to name
                set_name (str, optional): endpoint set name
                endpoint (Endpoint or dict, optional): endpoint definition
                availability_set (str, optional): availability set name
                machine_type (str, optional): machine type of the instances
                image (str, optional): boot image of the instances
                instances ([], optional): list of instance IDs or ServiceInstance objects
        '''
        self.service          = service
        self.name             = options.get('name') or None
        self.service_name     = options.get('service_name') or self.name
        self.endpoint         = options.get('endpoint') or None
        self.availability_set = options.get('availability_set') or None
        self.machine_type     = options.get('machine_type') or None
        self.image            = options.get('image') or None
        self.instances        = options.get('instances') or []

        if isinstance(self.endpoint, dict):
            self.endpoint = Endpoint(**self.endpoint)
        self.set_name = options.get('set_name') or (self.endpoint.name if self.endpoint else None)

        if self.service and self.instances and all([not isinstance(i, ServiceInstance) for i in self.instances]):
            instances = []
            for instance_id in self.instances:
                log.debug("Loading instance {}".format(instance_id))
                instances.append(ServiceInstance(service=self.service, instance_id=instance_id))
            self.instances = instances

    def __repr__(self):
        return "<LoadBalancedSet {}/{}>".format(self.service_name, self.set_name)

    @classmethod
    def create(cls, service, machine_type, name, count, image, endpoint, **options):
        '''Create a load-balanced set

            If the cloud service (load balancer) already exists it is reused
            and only the endpoint set is added or updated.  Existing members of
            the endpoint set are kept and numbering continues after them.

            Arguments:
                service: the backend service
                machine_type (str): service specific machine type
                name (str): set name, used as the instance name prefix
                count (int): number of instances to create
                image (str): boot disk image
                endpoint (Endpoint): load-balanced endpoint set definition
                service_name (str, optional): load balancer name (defaults to name)
                dns_label (str, optional): public address DNS label (defaults to service_name)
                availability_set (str, optional): availability set name (defaults to that of the
                    existing members, or <name>-availability-set)
                skip_cleanup (bool, optional): do not clean up on failure
                launch_delay (int, optional): seconds between instance launches (defaults to LAUNCH_DELAY)
                **options: passed to add_instances()

            Raises: AzVMConfigurationException, AzVMCreateFailure
        '''
        if not name:
            raise AzVMConfigurationException("A set name is required")
        if not cls.valid_set_name(name):
            raise AzVMConfigurationException("{} is not a valid set name".format(name))
        if int(count) < 1:
            raise AzVMConfigurationException("At least one instance is required")
        if not isinstance(endpoint, Endpoint):
            raise AzVMConfigurationException("An endpoint definition is required")

        s = cls(service, name=name, endpoint=endpoint,
                service_name=options.get('service_name') or name,
                availability_set=options.get('availability_set'),
                machine_type=machine_type, image=image)
        skip_cleanup = options.get('skip_cleanup', False)

        if service.location:
            service._create_resource_group()

        created_front_end = False
        created_availability_set = False
        try:
            if service._get_load_balancer(s.service_name):
                log.info("Using existing cloud service {}".format(s.service_name))
                members = service.endpoint_members(s.service_name, s.set_name)
                if members:
                    log.info("Found {} existing members of {}: {}".format(len(members), s.set_name, ', '.join(members)))
                    s.instances = [ServiceInstance(service=service, instance_id=_) for _ in members]
                    if not s.availability_set:
                        s.availability_set = service.replicate_options(s.instances[0].instance).get('availability_set')
            else:
                log.info("Creating cloud service {}".format(s.service_name))
                service._create_load_balancer(s.service_name, dns_label=options.get('dns_label'))
                created_front_end = True

            s.availability_set = s.availability_set or '{}-availability-set'.format(name)
            if not service._get_availability_set(s.availability_set):
                service._create_availability_set(s.availability_set)
                created_availability_set = True

            service.add_endpoint(s.service_name, endpoint)

            instance_options = {k: v for k, v in options.items() if k not in cls.SET_OPTIONS}
            s.add_instances(count, machine_type=machine_type, root_image=image,
                            availability_set=s.availability_set,
                            launch_delay=options.get('launch_delay'),
                            skip_cleanup=skip_cleanup,
                            **instance_options)
        except (KeyboardInterrupt, Exception) as e:
            log.error("Set creation failed: {}".format(e))
            if not skip_cleanup and not s.instances:
                s._cleanup_front_end(created_front_end, created_availability_set)
            if isinstance(e, AzVMCreateFailure):
                raise
            raise AzVMCreateFailure(e)

        return s

    def _cleanup_front_end(self, front_end=True, availability_set=True):
        '''Remove a newly created front end and availability set'''
        if front_end:
            try:
                self.service._delete_load_balancer(self.service_name)
            except Exception as e:
                log.debug('Ignoring cloud service cleanup error: {}'.format(e))
        if availability_set:
            try:
                self.service._delete_availability_set(self.availability_set)
            except Exception as e:
                log.debug('Ignoring availability set cleanup error: {}'.format(e))

    @classmethod
    def load(cls, service, service_name, set_name, name=None):
        '''Load an existing set from the members of its endpoint set

            Arguments:
                service: the backend service
                service_name (str): load balancer (cloud service) name
                set_name (str): endpoint set name
                name (str, optional): instance name prefix (defaults to the prefix of the first member)

            Raises: AzVMConfigurationException
        '''
        if not service._get_load_balancer(service_name):
            raise AzVMConfigurationException("No such cloud service: {}".format(service_name))

        s = cls(service, service_name=service_name, set_name=set_name, name=name)
        members = service.endpoint_members(service_name, set_name)
        log.debug("Loading {} members of {}".format(len(members), set_name))
        s.instances = [ServiceInstance(service=service, instance_id=_) for _ in members]

        if s.instances:
            instance = s.instances[0].instance
            opts = service.replicate_options(instance)
            s.machine_type = opts['machine_type']
            s.image = opts['root_image']
            s.availability_set = opts.get('availability_set')
            if not s.name:
                m = ServiceBase.INSTANCE_NAME_RE.match(s.instances[0].name())
                s.name = m.groups()[0] if m else s.instances[0].name()
        s.name = s.name or set_name
        return s

    def next_instance_number(self):
        '''Return the next free instance number

            The trailing number of every member name is parsed (both
            <prefix>-<nn> and <prefix><nn> forms).  Names without a numeric
            suffix are ignored.  An empty set starts at 1.
        '''
        numbers = [int(m.group(2)) for m in self._suffixes()]
        if not numbers:
            return 1
        return max(numbers) + 1

    def _suffixes(self):
        matches = []
        for i in self.instances:
            m = ServiceBase.INSTANCE_NAME_RE.match(i.name())
            if m:
                matches.append(m)
        return matches

    def instance_name(self, number):
        '''Instance name for a number, zero padded to the widest existing suffix'''
        width = max([self.MIN_SUFFIX_WIDTH] + [len(m.group(2)) for m in self._suffixes()])
        return '{}-{:0{}d}'.format(self.name, number, width)

    def add_instances(self, count, **options):
        '''Add instances to the set

            Settings are replicated from the first existing member (machine
            type, image, availability set, admin user and SSH key, tags, data
            disk layout, subnet, network security group and endpoint pools).
            Options override the replicated settings.

            One thread is started per instance, LAUNCH_DELAY seconds apart.
            Each waits for its own instance to boot.

            Arguments:
                count (int): number of instances to add
                machine_type (str, optional): machine type (required for an empty set)
                root_image (str, optional): boot disk image (required for an empty set)
                data_disk_count (int, optional): number of data disks
                data_disk_size (int, optional): size of each data disk in GB
                data_disk_caching (str, optional): data disk caching
                launch_delay (int, optional): seconds between launches (defaults to LAUNCH_DELAY)
                skip_cleanup (bool, optional): do not clean up on failure
                **options: passed to the service create_instance()

            Returns: [ServiceInstance] new instances
            Raises: AzVMConfigurationException, AzVMCreateFailure
        '''
        count = int(count)
        if count < 1:
            raise AzVMConfigurationException("At least one instance is required")

        opts = {}
        if self.instances:
            opts = self.service.replicate_options(self.instances[0].instance)
        if self.availability_set and not opts.get('availability_set'):
            opts['availability_set'] = self.availability_set

        launch_delay = options.pop('launch_delay', None)
        launch_delay = self.LAUNCH_DELAY if launch_delay is None else launch_delay
        skip_cleanup = options.pop('skip_cleanup', False)

        # overrides
        for k, v in options.items():
            if v is not None:
                opts[k] = v

        machine_type      = opts.pop('machine_type', None) or self.machine_type
        root_image        = opts.pop('root_image', None) or self.image
        data_disk_count   = int(opts.pop('data_disk_count', None) or 0)
        data_disk_size    = opts.pop('data_disk_size', None)
        data_disk_caching = opts.pop('data_disk_caching', None)
        if not machine_type or not root_image:
            raise AzVMConfigurationException("A machine type and boot image are required to add instances to {}".format(self))
        if data_disk_count and not data_disk_size:
            raise AzVMConfigurationException("A data disk size is required")

        # make sure every new instance joins our endpoint set
        if self.service_name and self.set_name:
            pool_id = self.service.endpoint_pool_id(self.service_name, self.set_name)
            backend_pools = list(opts.get('backend_pools') or [])
            if pool_id.lower() not in [_.lower() for _ in backend_pools]:
                backend_pools.append(pool_id)
            opts['backend_pools'] = backend_pools

        first_number = self.next_instance_number()
        names = [self.instance_name(n) for n in range(first_number, first_number + count)]
        disks = {}
        for name in names:
            disks[name] = None
            if data_disk_count:
                disks[name] = self.service.data_disk_definitions(name, data_disk_count, data_disk_size, data_disk_caching, machine_type)

        instanceq = queue.Queue()
        failq     = queue.Queue()
        threads   = []

        def cb(name, inst_opts, instanceq, failq):
            '''callback'''
            try:
                instance = self.service.create_instance(machine_type, name, root_image, other_disks=disks[name], **inst_opts)
                instanceq.put(instance)
            except Exception as e:
                if not log.isEnabledFor(logging.DEBUG):
                    log.exception(e)
                failq.put((name, e))

        for idx, name in enumerate(names):
            if idx and launch_delay:
                time.sleep(launch_delay)
            log.info("Creating instance {}".format(name))
            t = threading.Thread(target=cb, args=(name, opts.copy(), instanceq, failq,))
            t.daemon = True
            t.start()
            threads.append(t)

        for t in threads:
            t.join()

        instances = []
        while True:
            try:
                i = instanceq.get_nowait()
                instances.append(ServiceInstance(service=self.service, instance=i))
            except queue.Empty:
                break

        failed = []
        while True:
            try:
                failed.append(failq.get_nowait())
            except queue.Empty:
                break
        if failed:
            if not skip_cleanup:
                for i in instances:
                    try:
                        i.destroy()
                    except Exception as e:
                        log.error("Failed to clean up instance {}: {}".format(i.id(), e))
            raise AzVMCreateFailure(failed)

        self.instances.extend(instances)
        log.info("Added {} to {}".format(', '.join([_.name() for _ in instances]), self))
        self.converge()
        return instances

    def converge(self):
        '''Make sure every instance of the set is a member of the endpoint set

            Returns: [str] names of the instances that were added
        '''
        if not (self.service_name and self.set_name):
            return []
        pool_id = self.service.endpoint_pool_id(self.service_name, self.set_name)
        members = self.service.endpoint_members(self.service_name, self.set_name)
        added = []
        for i in self.instances:
            if i.name() in members:
                continue
            if self.service.add_instance_to_endpoint(i.instance, pool_id):
                added.append(i.name())
        return added

    def parallel_call(self, serviceinstances, method, **options):
        '''Run the named method across all instances

            A thread is spawned to run the method for each instance.

            Arguments:
                serviceinstances [ServiceInstance]: list of ServiceInstance objects
                method (str): method to call on each ServiceInstance

            Raises: AzVMServiceFailure
        '''
        threads = []
        failq   = queue.Queue()

        def thread_cb(service, instance_id, q):
            '''thread callback'''
            try:
                # create the instance within the thread, retry initial load prior to calling the method
                retries = service.CLOUD_API_RETRIES
                while True:
                    try:
                        instance = ServiceInstance(service=service, instance_id=instance_id)
                        break
                    except Exception:
                        if retries == 0:
                            raise
                        retries -= 1
                getattr(instance, method)(**options)
            except Exception as e:
                log.error("Failed to {} {}: {}".format(method, instance_id, e))
                if log.isEnabledFor(logging.DEBUG):
                    log.exception(e)
                q.put(("Failed to {} instance {}".format(method, instance_id), e))

        for si in serviceinstances:
            t = threading.Thread(target=thread_cb, args=(si.service, si.instance_id, failq,))
            t.daemon = True
            t.start()
            threads.append(t)
        for t in threads:
            t.join()

        failed = []
        while True:
            try:
                failed.append(failq.get_nowait())
            except queue.Empty:
                break

        if failed:
            raise AzVMServiceFailure(failed)

    def start(self):
        '''Start all instances in the set'''
        self.parallel_call(self.instances, 'start')
        self.refresh()

    def stop(self):
        '''Stop (deallocate) all instances in the set'''
        if not all([_.can_stop() for _ in self.instances]):
            raise AzVMConfigurationException("Instance configuration prevents them from being stopped")
        self.parallel_call(self.instances, 'stop')
        self.refresh()

    def destroy(self, keep_front_end=False, **options):
        '''Destroy the set

            Arguments:
                keep_front_end (bool, optional): keep the load balancer, public address
                    and availability set (defaults to False)
                **options: passed to ServiceInstance.destroy()
        '''
        self.parallel_call(self.instances, 'destroy', **options)
        self.instances = []
        if keep_front_end:
            return
        if self.service_name:
            self.service._delete_load_balancer(self.service_name)
        if self.availability_set:
            try:
                self.service._delete_availability_set(self.availability_set)
            except Exception as e:
                log.debug('Ignoring availability set cleanup error: {}'.format(e))

    def is_on(self):
        '''Returns true if all instances are on'''
        return all([_.is_on() for _ in self.instances]) if self.instances else False

    def is_off(self):
        '''Returns true if all instances are off'''
        return all([_.is_off() for _ in self.instances]) if self.instances else False

    def status(self):
        '''Returns a dict of instance name to instance status'''
        return {_.name(): _.status() for _ in self.instances}

    def refresh(self):
        '''Refresh instance objects from the service backend'''
        for i in self.instances:
            i.refresh()

    def export(self):
        '''Export the set object in an easy to serialize format'''
        data = {
            'name': self.name,
            'service_name': self.service_name,
            'set_name': self.set_name,
            'availability_set': self.availability_set,
            'machine_type': self.machine_type,
            'image': self.image,
            'instances': [i.instance_id for i in self.instances],
        }
        if self.endpoint:
            data['endpoint'] = self.endpoint.export()
        return data

    @classmethod
    def valid_set_name(cls, name):
        '''Validate the set name (leaves room for the instance number suffix)

            Returns: bool
        '''
        name_len = len(name)
        if name_len < 1 or name_len > 58:
            return False
        if re.search('^[a-z]([-a-z0-9]*[a-z0-9])?$', name):
            return True
        return False
