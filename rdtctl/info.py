# Copyright (c) 2019 Intel Corporation
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Discovery of resctrl mount point and readout of hardware capabilities.

Everything here only describes the platform, nothing is written.
"""
import logging
import os
from typing import List, Optional, Tuple

from dataclasses import dataclass, field

from rdtctl import logger
from rdtctl.cbm_bits import Bitmask
from rdtctl.errors import UnsupportedError
from rdtctl.schemata import parse_schemata_resources, RESOURCE_L3, RESOURCE_MB

log = logging.getLogger(__name__)

BASE_RESCTRL_PATH = '/sys/fs/resctrl'
PROC_MOUNTS = '/proc/mounts'
RESCTRL_FS_TYPE = 'resctrl'

INFO = 'info'
SCHEMATA = 'schemata'
MON_DATA = 'mon_data'
MON_L3_PREFIX = 'mon_L3_'
INFO_L3 = 'L3'
INFO_L3CODE = 'L3CODE'
INFO_MB = 'MB'
INFO_L3_MON = 'L3_MON'

MOUNT_OPTION_CDP = 'cdp'
MOUNT_OPTION_MBA_MBPS = 'mba_MBps'


@dataclass
class L3Info:
    domain_ids: List[int]
    cbm_mask: Bitmask
    min_cbm_bits: int = 1
    num_closids: int = 16

    @property
    def cbm_bits(self) -> int:
        return self.cbm_mask.count()


@dataclass
class MBInfo:
    domain_ids: List[int]
    min_bandwidth: int = 10
    bandwidth_gran: int = 10
    num_closids: int = 8


@dataclass
class L3MonInfo:
    domain_ids: List[int]
    mon_features: List[str] = field(default_factory=list)
    num_rmids: int = 0


@dataclass
class ResctrlInfo:
    """Platform capabilities as exposed by resctrl filesystem.

    Missing resource (e.g. no memory bandwidth allocation) is represented by None.
    """
    root: str
    l3: Optional[L3Info] = None
    mb: Optional[MBInfo] = None
    l3_mon: Optional[L3MonInfo] = None
    mount_options: Tuple[str, ...] = ()
    cdp_enabled: bool = False

    @property
    def mba_mbps_enabled(self) -> bool:
        return MOUNT_OPTION_MBA_MBPS in self.mount_options

    @property
    def num_closids(self) -> Optional[int]:
        """Number of CLOSIDs usable by all allocation resources together."""
        closids = [resource.num_closids for resource in (self.l3, self.mb) if resource]
        return min(closids) if closids else None

    @property
    def mon_supported(self) -> bool:
        return self.l3_mon is not None and bool(self.l3_mon.mon_features)


def find_resctrl_mount(mounts_file: str = PROC_MOUNTS) -> Tuple[str, Tuple[str, ...]]:
    """Return resctrl mount point and its mount options based on mounts file."""
    with open(mounts_file) as f:
        for line in f:
            fields = line.split()
            if len(fields) >= 4 and fields[2] == RESCTRL_FS_TYPE:
                mount_options = tuple(fields[3].split(','))
                log.debug('resctrl mounted at %r with options %r', fields[1], mount_options)
                return fields[1], mount_options
    raise UnsupportedError('resctrl filesystem is not mounted (checked %s)' % mounts_file)


def _read_value(path: str) -> str:
    with open(path) as f:
        value = f.read().strip()
    log.log(logger.TRACE, 'resctrl: read(%s): %r', path, value)
    return value


def _read_int(path: str, default: int) -> int:
    if not os.path.exists(path):
        return default
    return int(_read_value(path))


def _read_mon_domain_ids(root: str) -> List[int]:
    mon_data_dir = os.path.join(root, MON_DATA)
    if not os.path.isdir(mon_data_dir):
        return []
    return sorted(int(entry[len(MON_L3_PREFIX):]) for entry in os.listdir(mon_data_dir)
                  if entry.startswith(MON_L3_PREFIX))


def read_resctrl_info(root: str = BASE_RESCTRL_PATH,
                      mount_options: Tuple[str, ...] = ()) -> ResctrlInfo:
    """Read capabilities from <root>/info and domain ids from root schemata file."""
    info_dir = os.path.join(root, INFO)
    if not os.path.isdir(info_dir):
        raise UnsupportedError('%r does not look like resctrl filesystem (no %s directory)' %
                               (root, INFO))

    resources = parse_schemata_resources(_read_value(os.path.join(root, SCHEMATA)))
    info = ResctrlInfo(root=root, mount_options=tuple(mount_options))

    l3_dir = os.path.join(info_dir, INFO_L3)
    if os.path.isdir(l3_dir):
        info.l3 = L3Info(
            domain_ids=sorted(resources.get(RESOURCE_L3, {})),
            cbm_mask=Bitmask.from_hex(_read_value(os.path.join(l3_dir, 'cbm_mask'))),
            min_cbm_bits=_read_int(os.path.join(l3_dir, 'min_cbm_bits'), 1),
            num_closids=_read_int(os.path.join(l3_dir, 'num_closids'), 16),
        )
    elif os.path.isdir(os.path.join(info_dir, INFO_L3CODE)):
        log.warning('resctrl mounted with code and data prioritization (CDP), '
                    'cache allocation is not available')
        info.cdp_enabled = True

    mb_dir = os.path.join(info_dir, INFO_MB)
    if os.path.isdir(mb_dir):
        info.mb = MBInfo(
            domain_ids=sorted(resources.get(RESOURCE_MB, {})),
            min_bandwidth=_read_int(os.path.join(mb_dir, 'min_bandwidth'), 10),
            bandwidth_gran=_read_int(os.path.join(mb_dir, 'bandwidth_gran'), 10),
            num_closids=_read_int(os.path.join(mb_dir, 'num_closids'), 8),
        )

    l3_mon_dir = os.path.join(info_dir, INFO_L3_MON)
    if os.path.isdir(l3_mon_dir):
        info.l3_mon = L3MonInfo(
            domain_ids=_read_mon_domain_ids(root),
            mon_features=_read_value(os.path.join(l3_mon_dir, 'mon_features')).split(),
            num_rmids=_read_int(os.path.join(l3_mon_dir, 'num_rmids'), 0),
        )

    if MOUNT_OPTION_CDP in info.mount_options:
        info.cdp_enabled = True

    log.debug('resctrl info: %r', info)
    return info
