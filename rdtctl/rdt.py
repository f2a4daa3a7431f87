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
import logging
import os
from typing import Dict, List, Optional

from rdtctl.allocation import compute_schemata
from rdtctl.config import Config, validate_config
from rdtctl.errors import ConfigError, NotFoundError, UnsupportedError
from rdtctl.info import ResctrlInfo, find_resctrl_mount, read_resctrl_info
from rdtctl.logger import trace
from rdtctl.resctrl import CtrlGroup, RemoveFunc, discover_groups, reconcile_groups

log = logging.getLogger(__name__)


class Rdt:
    """State of RDT classes on this host: resctrl location, group name prefix and classes.

    Nothing here is thread safe: host has to serialize initialize, set_config and
    all group modifications (e.g. with a single lock). Read only queries can run
    concurrently with each other only.

    Before initialize, queries return empty results and modifications fail.
    """

    def __init__(self, remove_func: RemoveFunc = os.rmdir):
        self._remove_func = remove_func
        self._info: Optional[ResctrlInfo] = None
        self._prefix: Optional[str] = None
        self._classes: Dict[str, CtrlGroup] = {}
        self._stale: List[CtrlGroup] = []
        self._config: Optional[Config] = None

    @property
    def initialized(self) -> bool:
        return self._info is not None

    @property
    def info(self) -> Optional[ResctrlInfo]:
        return self._info

    @property
    def prefix(self) -> Optional[str]:
        return self._prefix

    @property
    def config(self) -> Optional[Config]:
        return self._config

    @trace(log, verbose=False)
    def initialize(self, prefix: str, info: Optional[ResctrlInfo] = None):
        """Discover resctrl filesystem and existing groups with given prefix.

        info describes platform, when not given it is read from mounted resctrl.
        Every prefixed directory becomes a class until configuration is applied.
        """
        if info is None:
            root, mount_options = find_resctrl_mount()
            info = read_resctrl_info(root, mount_options)
        if info.cdp_enabled:
            raise UnsupportedError('resctrl mounted with code and data prioritization (cdp) '
                                   'is not supported')

        classes, stale = discover_groups(info, prefix, self._remove_func)

        self._info = info
        self._prefix = prefix
        self._classes = classes
        self._stale = stale
        self._config = None
        log.info('RDT initialized (root=%r, prefix=%r): found classes %s', info.root, prefix,
                 ', '.join(sorted(classes)))

    @trace(log, verbose=False)
    def set_config(self, config: Config):
        """Apply configuration: compute schemata of all classes and synchronize resctrl
        filesystem with them. Classes not in configuration are removed from filesystem."""
        if not self.initialized:
            raise ConfigError('RDT not initialized')

        partitions = validate_config(config, self._info)
        class_schemata = compute_schemata(partitions, self._info)
        self._classes = reconcile_groups(self._classes, class_schemata, self._info,
                                         self._prefix, self._remove_func)
        self._stale = []
        self._config = config
        log.info('RDT configuration applied: classes %s', ', '.join(sorted(self._classes)))

    def get_classes(self) -> List[CtrlGroup]:
        """All classes (including root) sorted by name."""
        return [self._classes[name] for name in sorted(self._classes)]

    def get_class(self, name: str) -> CtrlGroup:
        try:
            return self._classes[name]
        except KeyError:
            raise NotFoundError('class %r not found' % name) from None

    def get_stale_classes(self) -> List[CtrlGroup]:
        """Groups found on disk that will be removed by next set_config."""
        return list(self._stale)

    def mon_supported(self) -> bool:
        return self.initialized and self._info.mon_supported

    def get_mon_features(self) -> List[str]:
        if not self.mon_supported():
            return []
        return sorted(self._info.l3_mon.mon_features)
