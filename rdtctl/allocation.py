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
"""Translation of partition/class percentages into schemata values.

L3: every partition gets its own contiguous block of cache ways (partitions are
isolated from each other), laid out from the lowest bit in partition name order.
Classes of a partition share its block: each class gets the lowest part of the
block sized proportionally to its percentage, so sibling classes overlap.

MB: bandwidth is not partitioned, class gets partition percentage scaled by its
own percentage.
"""
import logging
import math
from typing import Dict, List, Tuple

from rdtctl.cbm_bits import Bitmask, check_cbm_bits
from rdtctl.config import NormalizedPartition, Percent
from rdtctl.errors import ConfigError
from rdtctl.info import ResctrlInfo, L3Info, MBInfo
from rdtctl.schemata import Schemata

log = logging.getLogger(__name__)

# Absorbs float noise of percentage arithmetic (e.g. 14.000000000000002).
_EPSILON = 1e-9

# (lowest bit, number of bits)
Block = Tuple[int, int]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_partition_blocks(partitions: List[NormalizedPartition],
                               l3_info: L3Info) -> Dict[str, Dict[int, Block]]:
    """Return partition name -> domain id -> block of cache ways.

    Block boundaries are rounded from cumulative percentages, so rounding errors
    do not accumulate and blocks never go beyond the cbm mask.
    """
    base_bit = l3_info.cbm_mask.lsb_one()
    total_bits = l3_info.cbm_bits
    blocks = {}

    for domain_id in l3_info.domain_ids:
        cumulative_percent = 0
        next_free_bit = 0
        for partition in partitions:
            if domain_id not in partition.l3:
                continue
            low = max(_round_half_up(cumulative_percent * total_bits / 100), next_free_bit)
            cumulative_percent += partition.l3[domain_id]
            high = _round_half_up(cumulative_percent * total_bits / 100)
            num_bits = max(high - low, l3_info.min_cbm_bits)
            if low + num_bits > total_bits:
                raise ConfigError(
                    'cannot fit L3 allocation of partition %r in domain %i: needs bits %i-%i, '
                    'only %i available (min_cbm_bits=%i)' % (
                        partition.name, domain_id, low, low + num_bits - 1, total_bits,
                        l3_info.min_cbm_bits))
            blocks.setdefault(partition.name, {})[domain_id] = (base_bit + low, num_bits)
            next_free_bit = low + num_bits

    return blocks


def calculate_class_cbm(block: Block, percent: Percent, min_cbm_bits: int) -> Bitmask:
    """Lowest part of partition block, rounded up to whole cache ways."""
    block_lsb, block_bits = block
    num_bits = math.ceil(percent * block_bits / 100 - _EPSILON)
    num_bits = min(max(num_bits, min_cbm_bits), block_bits)
    return Bitmask.from_range(block_lsb, num_bits)


def calculate_class_mb(partition_percent: Percent, class_percent: Percent,
                       mb_info: MBInfo) -> int:
    value = _round_half_up(partition_percent * class_percent / 100)
    if value < mb_info.min_bandwidth:
        log.debug('memory bandwidth %i%% below platform minimum, using %i%%',
                  value, mb_info.min_bandwidth)
        value = mb_info.min_bandwidth
    return value


def compute_schemata(partitions: List[NormalizedPartition],
                     info: ResctrlInfo) -> Dict[str, Schemata]:
    """Return class name -> schemata for all classes of validated partitions."""
    blocks = calculate_partition_blocks(partitions, info.l3) if info.l3 else {}

    class_schemata = {}
    for partition in partitions:
        for class_name, cls in sorted(partition.classes.items()):
            schemata = Schemata()
            for domain_id, percent in sorted(cls.l3.items()):
                mask = calculate_class_cbm(blocks[partition.name][domain_id], percent,
                                           info.l3.min_cbm_bits)
                check_cbm_bits(mask, info.l3.cbm_mask, info.l3.min_cbm_bits)
                schemata.l3[domain_id] = mask
            for domain_id, percent in sorted(cls.mb.items()):
                schemata.mb[domain_id] = calculate_class_mb(partition.mb[domain_id], percent,
                                                            info.mb)
            log.debug('class %r (partition %r): L3 ways %s, MB %s', class_name, partition.name,
                      {d: m.list_str() for d, m in schemata.l3.items()}, schemata.mb)
            class_schemata[class_name] = schemata
    return class_schemata
