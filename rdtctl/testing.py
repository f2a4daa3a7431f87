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
"""Module is used only in tests (test dependencies are not required in production)."""
import os
from typing import Dict, List, Union, Iterable
from unittest.mock import mock_open, Mock

from rdtctl.cbm_bits import Bitmask
from rdtctl.info import ResctrlInfo, L3Info, MBInfo, L3MonInfo, MOUNT_OPTION_CDP

MON_FEATURES = ['llc_occupancy', 'mbm_local_bytes', 'mbm_total_bytes']


def create_open_mock(paths: Dict[str, Union[str, Mock]]):
    """Return callable to be used instead of builtin open.

    paths maps filename to its content (str) or to mock (e.g. mock_open())
    that can be inspected after the test.
    """

    class OpenMock:
        def __init__(self, paths: dict):
            self.paths = paths
            self._mocks = {}

        def __call__(self, path, mode='r', *args, **kwargs):
            if path not in self._mocks:
                if path not in self.paths:
                    raise FileNotFoundError(path)
                content = self.paths[path]
                if isinstance(content, str):
                    self._mocks[path] = mock_open(read_data=content)
                elif isinstance(content, Mock):
                    self._mocks[path] = content
                else:
                    raise Exception('unsupported content for %r: %r' % (path, content))
            return self._mocks[path](path, mode)

    return OpenMock(paths)


def resctrl_info(root: str, num_domains: int = 4, cbm_mask: str = 'fffff',
                 min_cbm_bits: int = 1, num_closids: int = 16,
                 mb: bool = True, mon: bool = True, mount_options=()) -> ResctrlInfo:
    """Platform description matching the tree built by create_mock_resctrl_fs."""
    domain_ids = list(range(num_domains))
    return ResctrlInfo(
        root=root,
        l3=L3Info(domain_ids=domain_ids, cbm_mask=Bitmask.from_hex(cbm_mask),
                  min_cbm_bits=min_cbm_bits, num_closids=num_closids),
        mb=MBInfo(domain_ids=domain_ids) if mb else None,
        l3_mon=L3MonInfo(domain_ids=domain_ids, mon_features=list(MON_FEATURES),
                         num_rmids=176) if mon else None,
        mount_options=tuple(mount_options),
        cdp_enabled=MOUNT_OPTION_CDP in mount_options,
    )


def _write(path: str, content: str):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        f.write(content)


def _create_mon_data(group_dir: str, num_domains: int):
    # Counter of n-th event in domain d equals d*10 + n + 1.
    for domain_id in range(num_domains):
        for event_idx, event in enumerate(MON_FEATURES):
            _write(os.path.join(group_dir, 'mon_data', 'mon_L3_%02d' % domain_id, event),
                   '%i\n' % (domain_id * 10 + event_idx + 1))


def create_mock_group(group_dir: str, pids: Iterable[str] = (), num_domains: int = 4,
                      schemata: str = None, ctrl: bool = True):
    """Create ctrl (or mon, when ctrl=False) group directory as kernel would do."""
    _write(os.path.join(group_dir, 'tasks'), ''.join('%s\n' % pid for pid in pids))
    _write(os.path.join(group_dir, 'cpus'), '0\n')
    _create_mon_data(group_dir, num_domains)
    if ctrl:
        if schemata is None:
            schemata = _default_schemata(num_domains)
        _write(os.path.join(group_dir, 'schemata'), schemata)
        os.makedirs(os.path.join(group_dir, 'mon_groups'), exist_ok=True)


def _default_schemata(num_domains: int, cbm_mask: str = 'fffff') -> str:
    domains = range(num_domains)
    return '    L3:%s\n    MB:%s\n' % (
        ';'.join('%i=%s' % (d, cbm_mask) for d in domains),
        ';'.join('%i=100' % d for d in domains))


def create_mock_resctrl_fs(root: str, num_domains: int = 4, cbm_mask: str = 'fffff',
                           mb: bool = True, mon: bool = True) -> str:
    """Build directory tree looking like mounted resctrl filesystem (root class only)."""
    _write(os.path.join(root, 'info', 'L3', 'cbm_mask'), cbm_mask + '\n')
    _write(os.path.join(root, 'info', 'L3', 'min_cbm_bits'), '1\n')
    _write(os.path.join(root, 'info', 'L3', 'num_closids'), '16\n')
    if mb:
        _write(os.path.join(root, 'info', 'MB', 'min_bandwidth'), '10\n')
        _write(os.path.join(root, 'info', 'MB', 'bandwidth_gran'), '10\n')
        _write(os.path.join(root, 'info', 'MB', 'num_closids'), '8\n')
    if mon:
        _write(os.path.join(root, 'info', 'L3_MON', 'mon_features'),
               ''.join(feature + '\n' for feature in MON_FEATURES))
        _write(os.path.join(root, 'info', 'L3_MON', 'num_rmids'), '176\n')

    schemata = _default_schemata(num_domains, cbm_mask)
    if not mb:
        schemata = schemata.splitlines(keepends=True)[0]
    create_mock_group(root, num_domains=num_domains, schemata=schemata)
    if not mon:
        for domain_id in range(num_domains):
            for event in MON_FEATURES:
                os.remove(os.path.join(root, 'mon_data', 'mon_L3_%02d' % domain_id, event))
            os.rmdir(os.path.join(root, 'mon_data', 'mon_L3_%02d' % domain_id))
        os.rmdir(os.path.join(root, 'mon_data'))
    return root


def read_file(path: str) -> str:
    with open(path) as f:
        return f.read()


def group_names(groups: List) -> List[str]:
    return [group.name for group in groups]
