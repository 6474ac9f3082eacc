# Copyright (c) 2015-2019 Avere Systems, Inc.  All Rights Reserved.
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
'''Data disk striping scripts

The scripts are run on the instance with the service run_script() call
and combine all of the data disks into a single striped volume.  Windows
instances get a Storage Spaces simple virtual disk (one column per disk),
Linux instances get an mdadm RAID 0 array.

Cookbook/examples:

validate_disk_count(4, service.max_data_disk_count('Standard_E4s_v3'))
script = striping_script('Windows', 4, drive_letter='F', label='SQLData')
stdout = service.run_script(instance, script)
'''

import re
import logging

from azvm.service import AzVMConfigurationException

log = logging.getLogger(__name__)

VALID_OS_TYPES = ['Windows', 'Linux']
# drive letters C and D are the OS and temporary disks
RESERVED_DRIVE_LETTERS = ['A', 'B', 'C', 'D']
VALID_ALLOCATION_UNITS_KB = [4, 8, 16, 32, 64]
VALID_FILESYSTEMS = ['xfs', 'ext4']
MOUNT_POINT_RE = re.compile(r'^/[-a-zA-Z0-9_./]+$')
LABEL_RE = re.compile(r'^[-a-zA-Z0-9_ ]{1,32}$')

WINDOWS_SCRIPT = '''$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
if (Get-StoragePool -FriendlyName '{pool_name}' -ErrorAction SilentlyContinue) {{
    Write-Output "Storage pool {pool_name} already exists"
    exit 0
}}
$disks = @(Get-PhysicalDisk -CanPool $true | Sort-Object DeviceId)
if ($disks.Count -ne {disk_count}) {{
    throw "Expected {disk_count} poolable data disks, found $($disks.Count)"
}}
$subsystem = Get-StorageSubSystem -FriendlyName 'Windows Storage*'
New-StoragePool -FriendlyName '{pool_name}' -StorageSubSystemUniqueId $subsystem.UniqueId -PhysicalDisks $disks | Out-Null
New-VirtualDisk -StoragePoolFriendlyName '{pool_name}' -FriendlyName '{label}' -ResiliencySettingName Simple -NumberOfColumns {disk_count} -Interleave {interleave} -UseMaximumSize | Out-Null
Get-VirtualDisk -FriendlyName '{label}' | Get-Disk | Initialize-Disk -PartitionStyle GPT -PassThru | New-Partition -DriveLetter {drive_letter} -UseMaximumSize | Format-Volume -FileSystem NTFS -NewFileSystemLabel '{label}' -AllocationUnitSize {allocation_unit} -Confirm:$false | Out-Null
Write-Output "Striped {disk_count} data disks to {drive_letter}:"
'''

LINUX_SCRIPT = '''#!/bin/bash
fail() {{ echo "$*" >&2; exit 1; }}
if grep -qs ' {mount_point} ' /proc/mounts; then
    echo "{mount_point} is already mounted"
    exit 0
fi
devices=""
for lun in $(seq 0 {last_lun}); do
    [ -e /dev/disk/azure/scsi1/lun$lun ] || fail "Missing data disk at LUN $lun"
    devices="$devices $(readlink -f /dev/disk/azure/scsi1/lun$lun)"
done
{create_device}
mkfs.{filesystem} {mkfs_force} {device} >/dev/null 2>&1 || fail "Failed to create {filesystem} filesystem on {device}"
mkdir -p {mount_point}
uuid=$(blkid -s UUID -o value {device})
[ -n "$uuid" ] || fail "Unable to find the filesystem UUID of {device}"
echo "UUID=$uuid {mount_point} {filesystem} defaults,nofail 0 2" >> /etc/fstab
mount {mount_point} || fail "Failed to mount {mount_point}"
echo "Striped {disk_count} data disks to {mount_point}"
'''

LINUX_MDADM = '''command -v mdadm >/dev/null 2>&1 || (apt-get -y install mdadm || yum -y install mdadm) >/dev/null 2>&1 || fail "Unable to install mdadm"
mdadm --create {device} --run --level=0 --chunk={chunk_kb} --raid-devices={disk_count} $devices >/dev/null 2>&1 || fail "Failed to create RAID 0 array {device}"
conf=/etc/mdadm/mdadm.conf
[ -d /etc/mdadm ] || conf=/etc/mdadm.conf
mdadm --detail --scan >> $conf'''

LINUX_SINGLE = '''# a single data disk is used directly'''


def validate_disk_count(count, maximum):
    '''Validate a data disk count

        Arguments:
            count (int): number of data disks
            maximum (int): maximum number of data disks for the machine type

        Returns: int
        Raises: AzVMConfigurationException
    '''
    try:
        count = int(count)
    except (TypeError, ValueError):
        raise AzVMConfigurationException("Invalid disk count: {}".format(count))
    if count < 1:
        raise AzVMConfigurationException("At least one data disk is required")
    if count > maximum:
        raise AzVMConfigurationException('{} exceeds the maximum allowed disk count of {}'.format(count, maximum))
    return count


def windows_striping_script(disk_count, drive_letter='F', label='SQLData', interleave_kb=64, allocation_unit_kb=64, pool_name='SQLDataPool'):
    '''PowerShell script that stripes all poolable disks into one NTFS volume

        Arguments:
            disk_count (int): number of data disks (number of columns)
            drive_letter (str, optional): drive letter for the volume
            label (str, optional): volume and virtual disk name
            interleave_kb (int, optional): stripe size in KB
            allocation_unit_kb (int, optional): NTFS allocation unit size in KB
            pool_name (str, optional): storage pool name

        Raises: AzVMConfigurationException
    '''
    drive_letter = str(drive_letter).upper().rstrip(':')
    if not re.match(r'^[A-Z]$', drive_letter) or drive_letter in RESERVED_DRIVE_LETTERS:
        raise AzVMConfigurationException("Invalid drive letter: {}".format(drive_letter))
    if not LABEL_RE.match(label) or not LABEL_RE.match(pool_name):
        raise AzVMConfigurationException("Invalid volume label or pool name")
    if int(interleave_kb) < 1:
        raise AzVMConfigurationException("Invalid interleave: {}".format(interleave_kb))
    if int(allocation_unit_kb) not in VALID_ALLOCATION_UNITS_KB:
        raise AzVMConfigurationException("Invalid allocation unit size {}, must be one of {}".format(allocation_unit_kb, VALID_ALLOCATION_UNITS_KB))

    return WINDOWS_SCRIPT.format(
        disk_count=int(disk_count),
        drive_letter=drive_letter,
        label=label,
        pool_name=pool_name,
        interleave=int(interleave_kb) * 1024,
        allocation_unit=int(allocation_unit_kb) * 1024,
    )


def linux_striping_script(disk_count, mount_point='/data', filesystem='xfs', chunk_kb=64, md_device='/dev/md0'):
    '''Shell script that stripes the data disks into one mounted filesystem

        The data disks are found by LUN through the Azure udev links.

        Arguments:
            disk_count (int): number of data disks
            mount_point (str, optional): mount point for the filesystem
            filesystem (str, optional): xfs or ext4
            chunk_kb (int, optional): RAID chunk size in KB
            md_device (str, optional): RAID device

        Raises: AzVMConfigurationException
    '''
    disk_count = int(disk_count)
    if not MOUNT_POINT_RE.match(mount_point) or mount_point == '/':
        raise AzVMConfigurationException("Invalid mount point: {}".format(mount_point))
    if filesystem not in VALID_FILESYSTEMS:
        raise AzVMConfigurationException("Invalid filesystem {}, must be one of {}".format(filesystem, ', '.join(VALID_FILESYSTEMS)))
    if int(chunk_kb) < 4:
        raise AzVMConfigurationException("Invalid chunk size: {}".format(chunk_kb))

    if disk_count > 1:
        device = md_device
        create_device = LINUX_MDADM.format(device=device, chunk_kb=int(chunk_kb), disk_count=disk_count)
    else:
        device = '$devices'
        create_device = LINUX_SINGLE

    return LINUX_SCRIPT.format(
        disk_count=disk_count,
        last_lun=disk_count - 1,
        mount_point=mount_point,
        filesystem=filesystem,
        mkfs_force='-f' if filesystem == 'xfs' else '-F',
        device=device,
        create_device=create_device,
    )


def striping_script(os_type, disk_count, **options):
    '''Return the striping script for the OS type

        Arguments:
            os_type (str): Windows or Linux
            disk_count (int): number of data disks
            **options: passed to windows_striping_script() or linux_striping_script()

        Raises: AzVMConfigurationException
    '''
    if os_type not in VALID_OS_TYPES:
        raise AzVMConfigurationException("Invalid OS type {}, must be one of {}".format(os_type, ', '.join(VALID_OS_TYPES)))
    log.debug("Building {} striping script for {} disks".format(os_type, disk_count))
    if os_type == 'Windows':
        keys = ['drive_letter', 'label', 'interleave_kb', 'allocation_unit_kb', 'pool_name']
        return windows_striping_script(disk_count, **{k: v for k, v in options.items() if k in keys and v is not None})
    keys = ['mount_point', 'filesystem', 'chunk_kb', 'md_device']
    return linux_striping_script(disk_count, **{k: v for k, v in options.items() if k in keys and v is not None})
