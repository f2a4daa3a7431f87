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
from typing import Dict, List

from dataclasses import dataclass, field

from rdtctl.cbm_bits import Bitmask
from rdtctl.errors import FormatError

RESOURCE_L3 = 'L3'
RESOURCE_MB = 'MB'

RESOURCE_ID_SEPARATOR = ':'
DOMAIN_ID_SEPARATOR = ';'
VALUE_SEPARATOR = '='


@dataclass
class Schemata:
    """Content of schemata file: per domain cache bitmasks and memory bandwidth percentages."""
    l3: Dict[int, Bitmask] = field(default_factory=dict)
    mb: Dict[int, int] = field(default_factory=dict)

    def __bool__(self):
        return bool(self.l3 or self.mb)

    def lines(self) -> List[str]:
        """Rows in the format accepted by kernel, without trailing newline."""
        lines = []
        if self.l3:
            lines.append(RESOURCE_L3 + RESOURCE_ID_SEPARATOR + DOMAIN_ID_SEPARATOR.join(
                '%i=%s' % (domain_id, self.l3[domain_id].hex_str())
                for domain_id in sorted(self.l3)))
        if self.mb:
            lines.append(RESOURCE_MB + RESOURCE_ID_SEPARATOR + DOMAIN_ID_SEPARATOR.join(
                '%i=%i' % (domain_id, self.mb[domain_id])
                for domain_id in sorted(self.mb)))
        return lines

    def render(self) -> str:
        return ''.join(line + '\n' for line in self.lines())


def _parse_schemata_file_row(line: str) -> Dict[str, str]:
    """Parse single schemata row based on
    https://elixir.bootlin.com/linux/latest/source/arch/x86/kernel/cpu/intel_rdt_ctrlmondata.c#lL206
    and return dict mapping and domain id to its configuration (value).
    Resource type (e.g. mb, l3) is dropped.

    Eg.
    mb:1=20;2=50 returns {'1':'20', '2':'50'}
    mb:xxx=20mbs;2=50b returns {'xxx':'20mbs', '2':'50b'}
    raises FormatError exception for improper format or conflicting domains ids.
    """
    domains = {}

    # Ignore empty line.
    if not line:
        return {}

    # Drop resource identifier prefix like ("mb:")
    line = line[line.find(RESOURCE_ID_SEPARATOR) + 1:]
    # Domains
    domains_with_values = line.split(DOMAIN_ID_SEPARATOR)
    for domain_with_value in domains_with_values:
        if not domain_with_value:
            raise FormatError('domain cannot be empty')
        if VALUE_SEPARATOR not in domain_with_value:
            raise FormatError('Value separator is missing "="!')
        separator_position = domain_with_value.find(VALUE_SEPARATOR)
        domain_id = domain_with_value[:separator_position].strip()
        if not domain_id:
            raise FormatError('domain_id cannot be empty!')
        value = domain_with_value[separator_position + 1:].strip()
        if not value:
            raise FormatError('value cannot be empty!')
        if domain_id in domains:
            raise FormatError('Conflicting domain id found!')
        domains[domain_id] = value

    return domains


def parse_schemata_resources(content: str) -> Dict[str, Dict[int, str]]:
    """Split schemata file content into resource name -> domain id -> raw value.

    Kernel pads rows with spaces for alignment, so rows are stripped first.
    """
    resources = {}
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        if RESOURCE_ID_SEPARATOR not in line:
            raise FormatError('Resource separator is missing ":" in %r' % line)
        resource = line[:line.find(RESOURCE_ID_SEPARATOR)].strip().upper()
        try:
            resources[resource] = {int(domain_id): value for domain_id, value
                                   in _parse_schemata_file_row(line).items()}
        except ValueError as e:
            raise FormatError('Invalid schemata row %r: %s' % (line, e)) from e
    return resources


def parse_schemata(content: str) -> Schemata:
    """Parse schemata file content keeping only L3 and MB resources."""
    resources = parse_schemata_resources(content)
    schemata = Schemata()
    for domain_id, value in resources.get(RESOURCE_L3, {}).items():
        schemata.l3[domain_id] = Bitmask.from_hex(value)
    for domain_id, value in resources.get(RESOURCE_MB, {}).items():
        try:
            schemata.mb[domain_id] = int(value)
        except ValueError as e:
            raise FormatError('Invalid memory bandwidth value %r' % value) from e
    return schemata
