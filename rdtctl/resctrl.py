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
"""Control groups (classes) and monitoring groups as directories of resctrl filesystem.

Layout:
    <root>/                                   - root class (SYSTEM_DEFAULT)
    <root>/<prefix><class>/{schemata,tasks}   - class
    <root>/<prefix><class>/mon_groups/<prefix><mon_group>/{tasks,mon_data}
"""
import errno
import logging
import os
from typing import Callable, Dict, List, Optional, Tuple, Iterable, Union

from rdtctl import logger
from rdtctl.config import ROOT_CLASS_NAME
from rdtctl.errors import AlreadyExistsError, GroupLimitError, NotFoundError, ConfigError
from rdtctl.info import ResctrlInfo, INFO, MON_DATA
from rdtctl.monitoring import MonData, get_mon_data
from rdtctl.schemata import Schemata, parse_schemata

log = logging.getLogger(__name__)

MON_GROUPS = 'mon_groups'
TASKS_FILENAME = 'tasks'
SCHEMATA = 'schemata'

# Entries of resctrl root that are never control groups.
RESERVED_ROOT_ENTRIES = (INFO, MON_GROUPS, MON_DATA)

# On real resctrl rmdir removes the whole group (kernel owns the files inside).
RemoveFunc = Callable[[str], None]

Pid = Union[int, str]


def _read_pids_from_tasks_file(tasks_filepath: str) -> List[str]:
    with open(tasks_filepath) as ftasks:
        pids = [line.strip() for line in ftasks.read().splitlines() if line.strip()]
    log.log(logger.TRACE, 'resctrl: read(%s): found %i pids', tasks_filepath, len(pids))
    return pids


def _add_pids_to_tasks_file(pids: Iterable[Pid], tasks_filepath: str):
    """Append pids, one per write, kernel accepts only single pid in one write."""
    pids = [str(pid) for pid in pids]
    log.log(logger.TRACE, 'resctrl: write(%s): number_of_pids=%r', tasks_filepath, len(pids))
    with open(tasks_filepath, 'a') as ftasks:
        for pid in pids:
            ftasks.write(pid + '\n')
            ftasks.flush()


def _create_directory(path: str):
    try:
        log.log(logger.TRACE, 'resctrl: makedirs(%s)', path)
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        if e.errno == errno.ENOSPC:  # "No space left on device"
            raise GroupLimitError(e.errno, 'Limit of groups reached! '
                                           '(Out of available CLOSes/RMIDs!)', path) from e
        raise


def _check_group_name(name: str):
    if not name or '/' in name or name in ('.', '..'):
        raise ConfigError('invalid group name %r' % name)


class CtrlGroup:
    """Represents class (ctrl group) - root class when name == ROOT_CLASS_NAME."""

    def __init__(self, name: str, info: ResctrlInfo, prefix: str,
                 remove_func: RemoveFunc = os.rmdir, is_root: Optional[bool] = None):
        self._name = name
        # Directory "<prefix>SYSTEM_DEFAULT" found on disk is not the root class.
        self._is_root = name == ROOT_CLASS_NAME if is_root is None else is_root
        self._info = info
        self._prefix = prefix
        self._remove_func = remove_func
        self._mon_groups: Dict[str, MonGroup] = {}
        # Last schemata written by this process.
        self.schemata = Schemata()

    def __repr__(self):
        return 'CtrlGroup(name=%r, path=%r)' % (self._name, self.path())

    @property
    def name(self) -> str:
        return self._name

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def info(self) -> ResctrlInfo:
        return self._info

    @property
    def is_root(self) -> bool:
        return self._is_root

    def rel_path(self, *elems: str) -> str:
        """Path relative to resctrl root, e.g. "<prefix><name>/tasks"."""
        directory = '' if self.is_root else self._prefix + self._name
        return os.path.join(directory, *elems)

    def path(self, *elems: str) -> str:
        rel_path = self.rel_path(*elems)
        return os.path.join(self._info.root, rel_path) if rel_path else self._info.root

    def create_directory(self):
        if not self.is_root:
            log.debug('creating resctrl group %r', self._name)
            _create_directory(self.path())

    def remove(self):
        """Remove monitoring groups first and then the group directory itself."""
        assert not self.is_root, 'root class cannot be removed'
        for mon_group_name in list(self._mon_groups):
            self._remove_mon_group(mon_group_name)
        log.log(logger.TRACE, 'resctrl: rmdir(%r)', self.path())
        self._remove_func(self.path())

    # ------------------ pids -------------------

    def add_pids(self, *pids: Pid):
        log.debug('add_pids: %d pids to %r', len(pids), self.path(TASKS_FILENAME))
        _add_pids_to_tasks_file(pids, self.path(TASKS_FILENAME))

    def get_pids(self) -> List[str]:
        return _read_pids_from_tasks_file(self.path(TASKS_FILENAME))

    # ------------------ schemata -------------------

    def write_schemata(self, schemata: Schemata):
        """Write every resource as separate row, so kernel reports errors per row."""
        self.schemata = schemata
        if not schemata:
            log.debug('resctrl: nothing to write for %r', self._name)
            return
        with open(self.path(SCHEMATA), 'bw') as schemata_file:
            for line in schemata.lines():
                log.log(logger.TRACE, 'resctrl: write(%s): %r', schemata_file.name, line)
                schemata_file.write(bytes(line + '\n', encoding='utf-8'))
                schemata_file.flush()

    def get_schemata(self) -> Schemata:
        """Read current schemata (L3 and MB only) from the group's schemata file."""
        with open(self.path(SCHEMATA)) as schemata_file:
            return parse_schemata(schemata_file.read())

    # ------------------ monitoring -------------------

    def get_mon_data(self) -> MonData:
        return _get_group_mon_data(self._info, self.path())

    # ------------------ mon groups -------------------

    def create_mon_group(self, name: str, annotations: Optional[Dict[str, str]] = None) \
            -> 'MonGroup':
        """Create monitoring group. Group left on disk by previous owner is taken over."""
        _check_group_name(name)
        mon_group = self._mon_groups.get(name)
        if mon_group is not None:
            if mon_group.claimed:
                raise AlreadyExistsError('monitoring group %r already exists in class %r' %
                                         (name, self._name))
            log.debug('taking over existing monitoring group %r in %r', name, self._name)
            mon_group.claim(annotations)
            return mon_group

        mon_group = MonGroup(name, self, annotations, claimed=True)
        _create_directory(mon_group.path())
        self._mon_groups[name] = mon_group
        return mon_group

    def delete_mon_group(self, name: str):
        if name not in self._mon_groups:
            raise NotFoundError('monitoring group %r not found in class %r' % (name, self._name))
        self._remove_mon_group(name)

    def _remove_mon_group(self, name: str):
        mon_group = self._mon_groups[name]
        log.log(logger.TRACE, 'resctrl: rmdir(%r)', mon_group.path())
        self._remove_func(mon_group.path())
        del self._mon_groups[name]

    def get_mon_group(self, name: str) -> 'MonGroup':
        try:
            return self._mon_groups[name]
        except KeyError:
            raise NotFoundError('monitoring group %r not found in class %r' %
                                (name, self._name)) from None

    def get_mon_groups(self) -> List['MonGroup']:
        """Monitoring groups sorted by name."""
        return [self._mon_groups[name] for name in sorted(self._mon_groups)]

    def discover_mon_groups(self):
        """Synchronize monitoring groups with mon_groups directory.

        Only directories with prefix are considered, groups already known
        keep their state (annotations), unknown ones are added as unclaimed.
        """
        mon_groups_dir = self.path(MON_GROUPS)
        found = set()
        if os.path.isdir(mon_groups_dir):
            for entry in os.listdir(mon_groups_dir):
                if entry.startswith(self._prefix) and len(entry) > len(self._prefix) \
                        and os.path.isdir(os.path.join(mon_groups_dir, entry)):
                    found.add(entry[len(self._prefix):])

        for name in sorted(found - set(self._mon_groups)):
            log.debug('found existing monitoring group %r in %r', name, self._name)
            self._mon_groups[name] = MonGroup(name, self)
        for name in sorted(set(self._mon_groups) - found):
            log.debug('monitoring group %r in %r disappeared', name, self._name)
            del self._mon_groups[name]

    def prune_mon_groups(self):
        """Remove monitoring groups that nobody claimed and that have no tasks."""
        for name, mon_group in sorted(self._mon_groups.items()):
            if mon_group.claimed:
                continue
            if mon_group.get_pids():
                log.debug('keeping monitoring group %r in %r: has tasks', name, self._name)
                continue
            log.info('removing unused monitoring group %r from %r', name, self._name)
            self._remove_mon_group(name)


class MonGroup:
    """Monitoring group, sub-directory of ctrl group used only to read counters."""

    def __init__(self, name: str, parent: CtrlGroup,
                 annotations: Optional[Dict[str, str]] = None, claimed: bool = False):
        self._name = name
        self._parent = parent
        self._annotations = dict(annotations or {})
        # Created or taken over by this process (not just found on disk).
        self.claimed = claimed

    def __repr__(self):
        return 'MonGroup(name=%r, parent=%r)' % (self._name, self._parent.name)

    @property
    def name(self) -> str:
        return self._name

    def parent(self) -> CtrlGroup:
        return self._parent

    def claim(self, annotations: Optional[Dict[str, str]] = None):
        self._annotations = dict(annotations or {})
        self.claimed = True

    def get_annotations(self) -> Dict[str, str]:
        return dict(self._annotations)

    def rel_path(self, *elems: str) -> str:
        return self._parent.rel_path(MON_GROUPS, self._parent.prefix + self._name, *elems)

    def path(self, *elems: str) -> str:
        return os.path.join(self._parent.info.root, self.rel_path(*elems))

    def add_pids(self, *pids: Pid):
        log.debug('add_pids: %d pids to %r', len(pids), self.path(TASKS_FILENAME))
        _add_pids_to_tasks_file(pids, self.path(TASKS_FILENAME))

    def get_pids(self) -> List[str]:
        return _read_pids_from_tasks_file(self.path(TASKS_FILENAME))

    def get_mon_data(self) -> MonData:
        return _get_group_mon_data(self._parent.info, self.path())


def _get_group_mon_data(info: ResctrlInfo, group_path: str) -> MonData:
    if not info.mon_supported:
        return MonData()
    return get_mon_data(group_path, info.l3_mon.domain_ids, info.l3_mon.mon_features)


#
# ------------------------ discovery & reconciliation -----------------------------------
#

def discover_groups(info: ResctrlInfo, prefix: str, remove_func: RemoveFunc = os.rmdir) \
        -> Tuple[Dict[str, CtrlGroup], List[CtrlGroup]]:
    """Read existing groups from resctrl filesystem.

    Returns class name -> group for root and all directories with prefix (with their
    monitoring groups) and list of prefixed directories that cannot be classes
    (clashing with root class name). Foreign directories are ignored.
    """
    groups = {ROOT_CLASS_NAME: CtrlGroup(ROOT_CLASS_NAME, info, prefix, remove_func)}
    stale = []
    for entry in sorted(os.listdir(info.root)):
        if entry in RESERVED_ROOT_ENTRIES or not entry.startswith(prefix):
            continue
        if not os.path.isdir(os.path.join(info.root, entry)):
            continue
        name = entry[len(prefix):]
        if not name:
            continue
        group = CtrlGroup(name, info, prefix, remove_func, is_root=False)
        if name == ROOT_CLASS_NAME:
            log.warning('resctrl group %r clashes with root class name - treating as stale',
                        entry)
            stale.append(group)
            continue
        log.debug('found existing resctrl group %r', name)
        groups[name] = group

    for group in list(groups.values()) + stale:
        group.discover_mon_groups()
    return groups, stale


def reconcile_groups(current: Dict[str, CtrlGroup], desired: Dict[str, Schemata],
                     info: ResctrlInfo, prefix: str, remove_func: RemoveFunc = os.rmdir) \
        -> Dict[str, CtrlGroup]:
    """Make resctrl filesystem match desired classes and return new class name -> group.

    Steps (in this order):
    1. desired set: configured classes and root,
    2. diff against groups found on disk,
    3. create missing directories and write schemata,
    4. remove stale groups (on disk with prefix but not desired),
    5. prune unclaimed, empty monitoring groups of remaining classes.

    Groups present on both sides are kept untouched (tasks and monitoring groups stay).
    """
    desired_names = set(desired) | {ROOT_CLASS_NAME}
    on_disk, stale = discover_groups(info, prefix, remove_func)
    stale.extend(group for name, group in sorted(on_disk.items()) if name not in desired_names)

    groups = {}
    for name in sorted(desired_names):
        if name in current:
            group = current[name]
        elif name in on_disk:
            group = on_disk[name]
        else:
            group = CtrlGroup(name, info, prefix, remove_func)
        if name not in on_disk:
            group.create_directory()
        group.discover_mon_groups()
        groups[name] = group

    for name in sorted(desired):
        groups[name].write_schemata(desired[name])

    for group in stale:
        log.warning('removing stale resctrl group %r (%s)', group.name, group.path())
        group.remove()

    for name in sorted(groups):
        groups[name].prune_mon_groups()

    return groups
