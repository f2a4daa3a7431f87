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
"""Configuration model: partitions of hardware resources and classes inside them.

Example (yaml):

    options:
      l3:
        optional: false
      mb:
        optional: true
    partitions:
      priority:
        l3Allocation: 60%
        mbAllocation:
          all: [100%]
        classes:
          Guaranteed:
            l3schema: 100%
      default:
        l3Allocation:
          all: 40%
          "2-3": 20%
        mbAllocation: 100%
        classes:
          BestEffort:
            l3schema: 66%
            mbschema: 33%

Percentages of partitions are relative to the whole resource,
percentages of classes are relative to its partition.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Union, Any

from dataclasses import dataclass, field
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from rdtctl.cbm_bits import list_str_to_array
from rdtctl.errors import ConfigError, FormatError, OverCommitError, UnsupportedError
from rdtctl.info import ResctrlInfo

log = logging.getLogger(__name__)

# Class mapped to the resctrl root directory.
ROOT_CLASS_NAME = 'SYSTEM_DEFAULT'
# Reserved for directories found on disk that do not match any configured class.
STALE_CLASS_NAME = 'Stale'

ALL_DOMAINS_KEY = 'all'

Percent = Union[int, float]


class AllocationSpec(ABC):
    """Percentage request for some resource, either the same for all domains or per domain."""

    @abstractmethod
    def resolve(self, domain_ids: List[int]) -> Dict[int, Percent]:
        """Return percentage for every domain of domain_ids."""


@dataclass
class Uniform(AllocationSpec):
    percent: Percent

    def resolve(self, domain_ids):
        return {domain_id: self.percent for domain_id in domain_ids}


@dataclass
class PerDomain(AllocationSpec):
    """Ordered list of percentages, n-th value for n-th domain.
    Single element list applies to all domains."""
    percents: List[Percent]

    def resolve(self, domain_ids):
        if len(self.percents) == 1:
            return {domain_id: self.percents[0] for domain_id in domain_ids}
        if len(self.percents) != len(domain_ids):
            raise ConfigError('expected %i values (one per domain %r), got %i' % (
                len(domain_ids), domain_ids, len(self.percents)))
        return dict(zip(domain_ids, self.percents))


@dataclass
class DomainMap(AllocationSpec):
    """Default for all domains (optional) with overrides for selected domain ids."""
    default: Optional[AllocationSpec] = None
    overrides: Dict[int, Percent] = field(default_factory=dict)

    def resolve(self, domain_ids):
        resolved = self.default.resolve(domain_ids) if self.default is not None else {}
        for domain_id, percent in self.overrides.items():
            if domain_id not in domain_ids:
                raise ConfigError('unknown domain id %i (available %r)' % (domain_id, domain_ids))
            resolved[domain_id] = percent
        missing = [domain_id for domain_id in domain_ids if domain_id not in resolved]
        if missing:
            raise ConfigError('no value for domains %r (use %r key to set default)' % (
                missing, ALL_DOMAINS_KEY))
        return resolved


@dataclass
class ResourceOptions:
    # When False, lack of hardware support for the resource is an error.
    optional: bool = False


@dataclass
class Options:
    l3: ResourceOptions = field(default_factory=ResourceOptions)
    mb: ResourceOptions = field(default_factory=ResourceOptions)


@dataclass
class Class:
    # None means 100% of partition.
    l3_schema: Optional[AllocationSpec] = None
    mb_schema: Optional[AllocationSpec] = None


@dataclass
class Partition:
    l3_allocation: Optional[AllocationSpec] = None
    mb_allocation: Optional[AllocationSpec] = None
    classes: Dict[str, Class] = field(default_factory=dict)


@dataclass
class Config:
    options: Options = field(default_factory=Options)
    partitions: Dict[str, Partition] = field(default_factory=dict)


#
# ------------------------ parsing -----------------------------------
#

def parse_percent(value: Any, path: str) -> Percent:
    """Accept 60, 60.5, "60%" and "60.5%"."""
    if isinstance(value, bool):
        raise ConfigError('%s: expected percentage, got %r' % (path, value))
    if isinstance(value, (int, float)):
        percent = value
    elif isinstance(value, str) and value.strip().endswith('%'):
        try:
            percent = float(value.strip()[:-1])
        except ValueError:
            raise ConfigError('%s: invalid percentage %r' % (path, value))
        if percent.is_integer():
            percent = int(percent)
    else:
        raise ConfigError('%s: expected percentage (e.g. "50%%"), got %r' % (path, value))
    if not 0 <= percent <= 100:
        raise ConfigError('%s: percentage %r out of range [0%%, 100%%]' % (path, value))
    return percent


def _parse_single_percent(value: Any, path: str) -> Percent:
    if isinstance(value, list):
        if len(value) != 1:
            raise ConfigError('%s: expected single value, got %r' % (path, value))
        value = value[0]
    return parse_percent(value, path)


def _parse_scalar_or_list(value: Any, path: str) -> AllocationSpec:
    if isinstance(value, list):
        if not value:
            raise ConfigError('%s: empty list' % path)
        return PerDomain([parse_percent(v, '%s[%i]' % (path, i)) for i, v in enumerate(value)])
    return Uniform(parse_percent(value, path))


def parse_allocation_spec(raw: Any, path: str) -> Optional[AllocationSpec]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        return _parse_scalar_or_list(raw, path)

    domain_map = DomainMap()
    for key, value in raw.items():
        key = str(key)
        key_path = '%s.%s' % (path, key)
        if key == ALL_DOMAINS_KEY:
            domain_map.default = _parse_scalar_or_list(value, key_path)
            continue
        try:
            domain_ids = list_str_to_array(key)
        except FormatError as e:
            raise ConfigError('%s: invalid domain ids: %s' % (key_path, e)) from e
        percent = _parse_single_percent(value, key_path)
        for domain_id in domain_ids:
            domain_map.overrides[domain_id] = percent
    return domain_map


def _check_mapping(raw, path: str) -> dict:
    if not isinstance(raw, dict):
        raise ConfigError('%s: expected mapping, got %r' % (path, raw))
    return raw


def _check_keys(raw: dict, allowed: set, path: str):
    _check_mapping(raw, path)
    unknown = set(raw) - allowed
    if unknown:
        raise ConfigError('%s: unknown fields %s' % (path, ', '.join(sorted(map(str, unknown)))))


def _first_of(raw: dict, *keys):
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _parse_options(raw: Optional[dict]) -> Options:
    options = Options()
    if raw is None:
        return options
    _check_keys(raw, {'l3', 'mb'}, 'options')
    for resource in ('l3', 'mb'):
        resource_raw = raw.get(resource) or {}
        _check_keys(resource_raw, {'optional'}, 'options.%s' % resource)
        optional = resource_raw.get('optional', False)
        if not isinstance(optional, bool):
            raise ConfigError('options.%s.optional: expected boolean, got %r' %
                              (resource, optional))
        setattr(options, resource, ResourceOptions(optional=optional))
    return options


def parse_config(raw: Optional[dict]) -> Config:
    """Build Config from already decoded (e.g. from yaml) structure."""
    if raw is None:
        return Config()
    _check_keys(raw, {'options', 'config', 'partitions'}, 'config')
    config = Config(options=_parse_options(_first_of(raw, 'options', 'config')))

    partitions_raw = _check_mapping(raw.get('partitions') or {}, 'partitions')
    for partition_name, partition_raw in partitions_raw.items():
        path = 'partitions.%s' % partition_name
        partition_raw = partition_raw or {}
        _check_keys(partition_raw, {'l3Allocation', 'mbAllocation', 'classes'}, path)
        partition = Partition(
            l3_allocation=parse_allocation_spec(partition_raw.get('l3Allocation'),
                                                path + '.l3Allocation'),
            mb_allocation=parse_allocation_spec(partition_raw.get('mbAllocation'),
                                                path + '.mbAllocation'),
        )
        classes_raw = _check_mapping(partition_raw.get('classes') or {}, path + '.classes')
        for class_name, class_raw in classes_raw.items():
            class_path = '%s.classes.%s' % (path, class_name)
            class_raw = class_raw or {}
            _check_keys(class_raw, {'l3schema', 'l3Schema', 'mbschema', 'mbSchema'}, class_path)
            partition.classes[str(class_name)] = Class(
                l3_schema=parse_allocation_spec(_first_of(class_raw, 'l3schema', 'l3Schema'),
                                                class_path + '.l3schema'),
                mb_schema=parse_allocation_spec(_first_of(class_raw, 'mbschema', 'mbSchema'),
                                                class_path + '.mbschema'),
            )
        config.partitions[str(partition_name)] = partition
    return config


def load_config(filename: str) -> Config:
    yaml = YAML(typ='safe')
    try:
        with open(filename) as f:
            raw = yaml.load(f)
    except YAMLError as e:
        raise ConfigError('Cannot parse %r: %s' % (filename, e)) from e
    log.debug('loaded config from %r', filename)
    return parse_config(raw)


#
# ------------------------ validation -----------------------------------
#

@dataclass
class NormalizedClass:
    """Class percentages resolved per domain (relative to partition).
    Empty mapping means resource is not managed for this class."""
    name: str
    l3: Dict[int, Percent] = field(default_factory=dict)
    mb: Dict[int, Percent] = field(default_factory=dict)


@dataclass
class NormalizedPartition:
    name: str
    l3: Dict[int, Percent] = field(default_factory=dict)
    mb: Dict[int, Percent] = field(default_factory=dict)
    classes: Dict[str, NormalizedClass] = field(default_factory=dict)


def _resolve(spec: AllocationSpec, domain_ids: List[int], path: str) -> Dict[int, Percent]:
    try:
        return spec.resolve(domain_ids)
    except ConfigError as e:
        raise ConfigError('%s: %s' % (path, e)) from e


def _check_resource_support(name: str, supported: bool, options: ResourceOptions,
                            used: bool) -> bool:
    """Return True if resource should be managed."""
    if supported:
        return used
    if not options.optional:
        raise UnsupportedError('%s allocation is not supported by the platform '
                               '(set options.%s.optional to ignore)' % (name, name.lower()))
    if used:
        log.warning('%s allocation not supported by the platform - ignoring %s settings',
                    name, name)
    return False


def _check_class_name(class_name: str, path: str):
    if not class_name or '/' in class_name or class_name in ('.', '..'):
        raise ConfigError('%s: invalid class name %r' % (path, class_name))
    if class_name == STALE_CLASS_NAME:
        raise ConfigError('%s: class name %r is reserved' % (path, class_name))


def validate_config(config: Config, info: ResctrlInfo) -> List[NormalizedPartition]:
    """Validate config against platform and resolve all percentages per domain.

    Returns partitions sorted by name.
    """
    uses_l3 = any(p.l3_allocation is not None for p in config.partitions.values())
    uses_mb = any(p.mb_allocation is not None for p in config.partitions.values())

    manage_l3 = _check_resource_support('L3', info.l3 is not None, config.options.l3, uses_l3)
    mb_supported = info.mb is not None and not info.mba_mbps_enabled
    if info.mb is not None and info.mba_mbps_enabled and uses_mb:
        log.warning('resctrl mounted with mba_MBps, memory bandwidth percentages '
                    'cannot be applied')
    manage_mb = _check_resource_support('MB', mb_supported, config.options.mb, uses_mb)

    partitions = []
    class_owners = {}
    for partition_name in sorted(config.partitions):
        partition = config.partitions[partition_name]
        path = 'partitions.%s' % partition_name
        normalized = NormalizedPartition(name=partition_name)
        if manage_l3 and partition.l3_allocation is not None:
            normalized.l3 = _resolve(partition.l3_allocation, info.l3.domain_ids,
                                     path + '.l3Allocation')
        if manage_mb and partition.mb_allocation is not None:
            normalized.mb = _resolve(partition.mb_allocation, info.mb.domain_ids,
                                     path + '.mbAllocation')

        for class_name, cls in sorted(partition.classes.items()):
            class_path = '%s.classes.%s' % (path, class_name)
            _check_class_name(class_name, class_path)
            if class_name in class_owners:
                raise ConfigError('%s: class %r already defined in partition %r' % (
                    class_path, class_name, class_owners[class_name]))
            class_owners[class_name] = partition_name

            normalized_class = NormalizedClass(name=class_name)
            for resource, schema, partition_percents, domain_ids in (
                    ('l3', cls.l3_schema, normalized.l3, info.l3.domain_ids if info.l3 else []),
                    ('mb', cls.mb_schema, normalized.mb, info.mb.domain_ids if info.mb else [])):
                if not partition_percents:
                    # Resource not managed in this partition.
                    if schema is not None and getattr(partition, resource + '_allocation') is None:
                        raise ConfigError('%s: %sschema set but partition has no %sAllocation' % (
                            class_path, resource, resource))
                    continue
                if schema is None:
                    percents = {domain_id: 100 for domain_id in domain_ids}
                else:
                    percents = _resolve(schema, domain_ids, '%s.%sschema' % (class_path, resource))
                for domain_id, percent in percents.items():
                    if percent <= 0:
                        raise ConfigError('%s.%sschema: percentage must be above 0%% '
                                          '(domain %i)' % (class_path, resource, domain_id))
                setattr(normalized_class, resource, percents)
            normalized.classes[class_name] = normalized_class

        partitions.append(normalized)

    _check_l3_overcommit(partitions)

    num_classes = len([name for name in class_owners if name != ROOT_CLASS_NAME])
    if info.num_closids is not None and num_classes > info.num_closids - 1:
        raise ConfigError('too many classes (%i), platform supports only %i besides %s' % (
            num_classes, info.num_closids - 1, ROOT_CLASS_NAME))

    return partitions


def _check_l3_overcommit(partitions: List[NormalizedPartition]):
    totals = {}
    for partition in partitions:
        for domain_id, percent in partition.l3.items():
            totals[domain_id] = totals.get(domain_id, 0) + percent
    for domain_id, total in sorted(totals.items()):
        # Tolerance for fractional percentages like 33.3 + 33.3 + 33.4.
        if total > 100 + 1e-9:
            raise OverCommitError('L3 allocation of partitions exceeds 100%% in domain %i '
                                  '(%r%%)' % (domain_id, total))
