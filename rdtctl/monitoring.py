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
from typing import Dict, List

from dataclasses import dataclass, field

from rdtctl import logger
from rdtctl.info import MON_DATA, MON_L3_PREFIX

log = logging.getLogger(__name__)

MBM_TOTAL = 'mbm_total_bytes'
MBM_LOCAL = 'mbm_local_bytes'
LLC_OCCUPANCY = 'llc_occupancy'

# Event name -> counter value.
MonLeafData = Dict[str, int]


@dataclass
class MonData:
    # Domain (L3 cache id) -> event counters.
    l3: Dict[int, MonLeafData] = field(default_factory=dict)

    def sum(self, event: str) -> int:
        """Total of event over all domains (e.g. memory bandwidth of whole group)."""
        return sum(leaf.get(event, 0) for leaf in self.l3.values())


def _get_event_file(group_path: str, domain_id: int, event: str) -> str:
    return os.path.join(group_path, MON_DATA, '%s%02d' % (MON_L3_PREFIX, domain_id), event)


def get_mon_data(group_path: str, domain_ids: List[int], events: List[str]) -> MonData:
    """Read all event counters of ctrl or mon group located at group_path.

    Reading is best effort: counter that cannot be read or parsed
    (e.g. kernel returns "Unavailable") is skipped.
    """
    mon_data = MonData()
    for domain_id in domain_ids:
        for event in events:
            event_file = _get_event_file(group_path, domain_id, event)
            try:
                with open(event_file) as f:
                    raw_value = f.read()
                value = int(raw_value)
            except (OSError, ValueError) as e:
                log.debug('cannot read counter %s: %s - skipping', event_file, e)
                continue
            log.log(logger.TRACE, 'resctrl: read(%s): %r', event_file, value)
            mon_data.l3.setdefault(domain_id, {})[event] = value
    return mon_data
