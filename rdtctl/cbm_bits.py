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
import re
from typing import List, Tuple

from rdtctl.errors import ConfigError, FormatError

BITMASK_WIDTH = 64

_DECIMAL_RE = re.compile(r'[0-9]+')
_HEX_RE = re.compile(r'[0-9a-fA-F]+')


class Bitmask(int):
    """Fixed width (64 bits) set of bits, bit i represents cache way i.

    Has two text forms: range list used in configuration and logs ("0-3,5")
    and hexadecimal used by kernel in schemata files ("2f").
    """

    def __new__(cls, value: int = 0):
        if not 0 <= value < (1 << BITMASK_WIDTH):
            raise FormatError('bitmask value %#x does not fit in %i bits' %
                              (value, BITMASK_WIDTH))
        return super().__new__(cls, value)

    def __repr__(self):
        return 'Bitmask(%#x)' % int(self)

    @classmethod
    def from_hex(cls, hex_str: str) -> 'Bitmask':
        hex_str = hex_str.strip()
        if not _HEX_RE.fullmatch(hex_str):
            raise FormatError('invalid hexadecimal bitmask %r' % hex_str)
        return cls(int(hex_str, 16))

    @classmethod
    def from_range(cls, lsb: int, num_bits: int) -> 'Bitmask':
        """Contiguous mask of num_bits bits starting at lsb."""
        return cls(((1 << num_bits) - 1) << lsb)

    def hex_str(self) -> str:
        """Kernel schemata form: lowercase, no leading zeros."""
        return '%x' % int(self)

    def list_str(self) -> str:
        """Canonical range list: sorted, runs of consecutive bits joined with "-"."""
        ranges = []
        for start, end in self._runs():
            if start == end:
                ranges.append(str(start))
            else:
                ranges.append('%i-%i' % (start, end))
        return ','.join(ranges)

    def _runs(self) -> List[Tuple[int, int]]:
        runs = []
        start = None
        for i in range(BITMASK_WIDTH + 1):
            bit_set = i < BITMASK_WIDTH and bool(self & (1 << i))
            if bit_set and start is None:
                start = i
            elif not bit_set and start is not None:
                runs.append((start, i - 1))
                start = None
        return runs

    def count(self) -> int:
        return bin(self).count('1')

    def lsb_one(self) -> int:
        """Position of the least significant bit set or -1 for empty mask."""
        return (self & -self).bit_length() - 1

    def msb_one(self) -> int:
        """Position of the most significant bit set or -1 for empty mask."""
        return self.bit_length() - 1


def _parse_list_str(list_str: str, limit: int = None) -> List[int]:
    """Parse range list like "0-3,5,7" into list of (unsorted, maybe duplicated) integers.

    Raises FormatError on empty tokens, malformed numbers, not increasing ranges
    and values equal or above limit (if given).
    """
    if list_str == '':
        return []

    def _parse_int(token: str) -> int:
        if not _DECIMAL_RE.fullmatch(token):
            raise FormatError('invalid number %r in %r' % (token, list_str))
        value = int(token)
        if limit is not None and value >= limit:
            raise FormatError('value %i out of range (max %i) in %r' %
                              (value, limit - 1, list_str))
        return value

    values = []
    for token in list_str.split(','):
        if not token:
            raise FormatError('empty element in %r' % list_str)
        if '-' in token:
            bounds = token.split('-')
            if len(bounds) != 2:
                raise FormatError('invalid range %r in %r' % (token, list_str))
            low, high = _parse_int(bounds[0]), _parse_int(bounds[1])
            if low >= high:
                raise FormatError('invalid range %r in %r (start must be lower than end)' %
                                  (token, list_str))
            values.extend(range(low, high + 1))
        else:
            values.append(_parse_int(token))
    return values


def list_str_to_bitmask(list_str: str) -> Bitmask:
    """Convert range list string into Bitmask, e.g. "0-3,5" -> 0x2f."""
    value = 0
    for bit in _parse_list_str(list_str, limit=BITMASK_WIDTH):
        value |= 1 << bit
    return Bitmask(value)


def list_str_to_array(list_str: str) -> List[int]:
    """Convert range list string into sorted list of unique integers, e.g. "4,0-2" -> [0,1,2,4].

    Used for domain ids so there is no upper limit of values.
    """
    return sorted(set(_parse_list_str(list_str)))


def check_cbm_bits(mask: Bitmask, cbm_mask: Bitmask, min_cbm_bits: int):
    """Verify that mask is acceptable by hardware described with cbm_mask and min_cbm_bits:
    fits in cbm_mask, has no gaps and has at least min_cbm_bits bits set.
    """
    if mask & ~cbm_mask:
        raise ConfigError('Mask %s is bigger than allowed %s' %
                          (mask.hex_str(), cbm_mask.hex_str()))

    if len(mask._runs()) > 1:
        raise ConfigError('Bit series of ones in mask %s '
                          'must occur without a gap between them' % mask.hex_str())

    number_of_cbm_bits = mask.count()
    if number_of_cbm_bits < min_cbm_bits:
        raise ConfigError('%i cbm bits in mask %s. Requires minimum %i' %
                          (number_of_cbm_bits, mask.hex_str(), min_cbm_bits))
