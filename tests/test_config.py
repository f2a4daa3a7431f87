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

import pytest

from rdtctl.config import parse_config, parse_percent, parse_allocation_spec, load_config, \
    validate_config, Config, Partition, Class, Options, ResourceOptions, Uniform, PerDomain, \
    DomainMap
from rdtctl.errors import ConfigError, OverCommitError, UnsupportedError
from rdtctl.testing import resctrl_info

CONFIG_YAML = """
config:
  l3:
    optional: false
  mb:
    optional: true
partitions:
  priority:
    l3Allocation:
      all: 60%
    mbAllocation:
      all: [100%]
    classes:
      Guaranteed:
        l3schema:
          all: 100%
  default:
    l3Allocation:
      all: 40%
    mbAllocation:
      all: [100%]
    classes:
      Burstable:
        l3schema:
          all: 100%
        mbschema:
          all: [66%]
      BestEffort:
        l3schema:
          all: 66%
        mbschema:
          all: [33%]
"""


@pytest.mark.parametrize('value, expected', (
        (60, 60),
        (33.3, 33.3),
        ('60%', 60),
        ('12.5%', 12.5),
        (' 100% ', 100),
        ('0%', 0),
))
def test_parse_percent(value, expected):
    assert parse_percent(value, 'x') == expected


@pytest.mark.parametrize('invalid_value, expected_message', (
        ('60', 'expected percentage'),
        ('abc%', 'invalid percentage'),
        ('101%', 'out of range'),
        (-1, 'out of range'),
        (True, 'expected percentage'),
        (None, 'expected percentage'),
))
def test_parse_percent_invalid(invalid_value, expected_message):
    with pytest.raises(ConfigError, match=expected_message):
        parse_percent(invalid_value, 'x')


@pytest.mark.parametrize('raw, expected_spec', (
        (None, None),
        ('60%', Uniform(60)),
        (['60%'], PerDomain([60])),
        ({'all': '40%'}, DomainMap(default=Uniform(40))),
        ({'all': ['100%']}, DomainMap(default=PerDomain([100]))),
        ({'all': '40%', '2-3': '20%'}, DomainMap(default=Uniform(40),
                                                 overrides={2: 20, 3: 20})),
        ({0: '50%', 1: ['60%']}, DomainMap(overrides={0: 50, 1: 60})),
))
def test_parse_allocation_spec(raw, expected_spec):
    assert parse_allocation_spec(raw, 'x') == expected_spec


def test_parse_allocation_spec_invalid_domain():
    with pytest.raises(ConfigError, match='invalid domain ids'):
        parse_allocation_spec({'1-': '50%'}, 'x')


@pytest.mark.parametrize('spec, domain_ids, expected', (
        (Uniform(40), [0, 1], {0: 40, 1: 40}),
        (PerDomain([100]), [0, 1, 2], {0: 100, 1: 100, 2: 100}),
        (PerDomain([10, 20]), [0, 1], {0: 10, 1: 20}),
        (DomainMap(default=Uniform(40), overrides={1: 20}), [0, 1], {0: 40, 1: 20}),
        (DomainMap(overrides={0: 50, 1: 60}), [0, 1], {0: 50, 1: 60}),
))
def test_allocation_spec_resolve(spec, domain_ids, expected):
    assert spec.resolve(domain_ids) == expected


@pytest.mark.parametrize('spec, expected_message', (
        (PerDomain([10, 20, 30]), 'expected 2 values'),
        (DomainMap(overrides={0: 50}), r'no value for domains \[1\]'),
        (DomainMap(default=Uniform(10), overrides={5: 50}), 'unknown domain id 5'),
))
def test_allocation_spec_resolve_invalid(spec, expected_message):
    with pytest.raises(ConfigError, match=expected_message):
        spec.resolve([0, 1])


def test_parse_config():
    from ruamel.yaml import YAML
    config = parse_config(YAML(typ='safe').load(CONFIG_YAML))
    assert config.options == Options(l3=ResourceOptions(optional=False),
                                     mb=ResourceOptions(optional=True))
    assert sorted(config.partitions) == ['default', 'priority']
    assert config.partitions['priority'] == Partition(
        l3_allocation=DomainMap(default=Uniform(60)),
        mb_allocation=DomainMap(default=PerDomain([100])),
        classes={'Guaranteed': Class(l3_schema=DomainMap(default=Uniform(100)))})
    assert config.partitions['default'].classes['BestEffort'] == Class(
        l3_schema=DomainMap(default=Uniform(66)),
        mb_schema=DomainMap(default=PerDomain([33])))


def test_parse_config_empty():
    assert parse_config(None) == Config()
    assert parse_config({'partitions': None}) == Config()


def test_parse_config_aliases():
    config = parse_config({
        'options': {'mb': {'optional': True}},
        'partitions': {'p': {'l3Allocation': '100%',
                             'classes': {'c': {'l3Schema': '50%'}, 'd': None}}},
    })
    assert config.options.mb.optional
    assert not config.options.l3.optional
    assert config.partitions['p'].classes == {'c': Class(l3_schema=Uniform(50)), 'd': Class()}


@pytest.mark.parametrize('raw, expected_message', (
        ({'foo': 1}, 'unknown fields foo'),
        ({'partitions': {'p': {'l3allocation': '10%'}}}, 'partitions.p: unknown fields'),
        ({'partitions': {'p': {'classes': {'c': {'l2schema': 1}}}}},
         'partitions.p.classes.c: unknown fields'),
        ({'options': {'l3': {'optional': 'yes'}}}, 'expected boolean'),
        ({'options': {'l2': {}}}, 'unknown fields l2'),
        ({'partitions': {'p': ['x']}}, 'expected mapping'),
        ({'partitions': ['a']}, 'partitions: expected mapping'),
        ({'partitions': 'a'}, 'partitions: expected mapping'),
        ({'partitions': {'p': {'classes': ['c']}}}, 'partitions.p.classes: expected mapping'),
        ({'partitions': {'p': {'classes': {'c': 5}}}}, 'partitions.p.classes.c: expected mapping'),
))
def test_parse_config_invalid(raw, expected_message):
    with pytest.raises(ConfigError, match=expected_message):
        parse_config(raw)


def test_load_config(tmp_path):
    config_file = tmp_path / 'rdt.yaml'
    config_file.write_text(CONFIG_YAML)
    config = load_config(str(config_file))
    assert sorted(config.partitions['default'].classes) == ['BestEffort', 'Burstable']


def test_load_config_invalid_yaml(tmp_path):
    config_file = tmp_path / 'rdt.yaml'
    config_file.write_text('partitions: [\n')
    with pytest.raises(ConfigError, match='Cannot parse'):
        load_config(str(config_file))


def _config(partitions, **options):
    return Config(options=Options(**options), partitions=partitions)


def test_validate_config():
    from ruamel.yaml import YAML
    config = parse_config(YAML(typ='safe').load(CONFIG_YAML))
    partitions = validate_config(config, resctrl_info('/sys/fs/resctrl'))

    assert [p.name for p in partitions] == ['default', 'priority']
    default, priority = partitions
    assert default.l3 == {0: 40, 1: 40, 2: 40, 3: 40}
    assert default.mb == {0: 100, 1: 100, 2: 100, 3: 100}
    assert default.classes['BestEffort'].l3 == {0: 66, 1: 66, 2: 66, 3: 66}
    assert default.classes['BestEffort'].mb == {0: 33, 1: 33, 2: 33, 3: 33}
    # Class without mbschema gets the whole partition.
    assert priority.classes['Guaranteed'].mb == {0: 100, 1: 100, 2: 100, 3: 100}


def test_validate_config_l3_overcommit():
    config = _config({'a': Partition(l3_allocation=Uniform(60)),
                      'b': Partition(l3_allocation=DomainMap(default=Uniform(40),
                                                             overrides={2: 41}))})
    with pytest.raises(OverCommitError, match='exceeds 100% in domain 2'):
        validate_config(config, resctrl_info('/sys/fs/resctrl'))


def test_validate_config_fractional_percentages_do_not_overcommit():
    config = _config({'a': Partition(l3_allocation=Uniform(33.3)),
                      'b': Partition(l3_allocation=Uniform(33.3)),
                      'c': Partition(l3_allocation=Uniform(33.4))})
    assert len(validate_config(config, resctrl_info('/sys/fs/resctrl'))) == 3


def test_validate_config_mb_is_not_partitioned():
    config = _config({'a': Partition(mb_allocation=Uniform(100)),
                      'b': Partition(mb_allocation=Uniform(100))})
    partitions = validate_config(config, resctrl_info('/sys/fs/resctrl'))
    assert [p.mb[0] for p in partitions] == [100, 100]


@pytest.mark.parametrize('partitions, expected_message', (
        ({'a': Partition(l3_allocation=Uniform(50), classes={'Stale': Class()})}, 'reserved'),
        ({'a': Partition(l3_allocation=Uniform(50), classes={'x/y': Class()})},
         'invalid class name'),
        ({'a': Partition(l3_allocation=Uniform(50), classes={'c': Class()}),
          'b': Partition(l3_allocation=Uniform(50), classes={'c': Class()})},
         "already defined in partition 'a'"),
        ({'a': Partition(l3_allocation=Uniform(50),
                         classes={'c': Class(mb_schema=Uniform(50))})},
         'mbschema set but partition has no mbAllocation'),
        ({'a': Partition(l3_allocation=Uniform(50), classes={'c': Class(l3_schema=Uniform(0))})},
         'must be above 0%'),
        ({'a': Partition(l3_allocation=PerDomain([10, 20]))}, 'expected 4 values'),
))
def test_validate_config_invalid(partitions, expected_message):
    with pytest.raises(ConfigError, match=expected_message):
        validate_config(_config(partitions), resctrl_info('/sys/fs/resctrl'))


def test_validate_config_too_many_classes():
    classes = {'c%i' % i: Class() for i in range(8)}
    config = _config({'a': Partition(mb_allocation=Uniform(100), classes=classes)})
    # MB limits number of CLOSIDs to 8, root takes one of them.
    with pytest.raises(ConfigError, match='too many classes'):
        validate_config(config, resctrl_info('/sys/fs/resctrl'))


def test_validate_config_root_class_does_not_use_closid():
    classes = {'c%i' % i: Class() for i in range(7)}
    classes['SYSTEM_DEFAULT'] = Class()
    config = _config({'a': Partition(mb_allocation=Uniform(100), classes=classes)})
    validate_config(config, resctrl_info('/sys/fs/resctrl'))


def test_validate_config_unsupported_required_resource():
    config = _config({'a': Partition(mb_allocation=Uniform(100))})
    with pytest.raises(UnsupportedError, match='MB allocation is not supported'):
        validate_config(config, resctrl_info('/sys/fs/resctrl', mb=False))


def test_validate_config_unsupported_optional_resource_is_ignored():
    config = _config({'a': Partition(l3_allocation=Uniform(50), mb_allocation=Uniform(100),
                                     classes={'c': Class(mb_schema=Uniform(50))})},
                     mb=ResourceOptions(optional=True))
    partitions = validate_config(config, resctrl_info('/sys/fs/resctrl', mb=False))
    assert partitions[0].mb == {}
    assert partitions[0].classes['c'].mb == {}
    assert partitions[0].classes['c'].l3 == {0: 100, 1: 100, 2: 100, 3: 100}


def test_validate_config_mba_mbps_mount():
    config = _config({'a': Partition(mb_allocation=Uniform(100))})
    info = resctrl_info('/sys/fs/resctrl', mount_options=('rw', 'mba_MBps'))
    with pytest.raises(UnsupportedError):
        validate_config(config, info)
