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

from unittest.mock import patch

from rdtctl.monitoring import get_mon_data, MonData, MBM_TOTAL, LLC_OCCUPANCY, MBM_LOCAL
from rdtctl.testing import create_open_mock


@patch('builtins.open', new=create_open_mock({
    '/sys/fs/resctrl/g/mon_data/mon_L3_00/mbm_total_bytes': '1\n',
    '/sys/fs/resctrl/g/mon_data/mon_L3_00/llc_occupancy': '2\n',
    '/sys/fs/resctrl/g/mon_data/mon_L3_01/mbm_total_bytes': '3\n',
    '/sys/fs/resctrl/g/mon_data/mon_L3_01/llc_occupancy': '4\n',
}))
def test_get_mon_data():
    mon_data = get_mon_data('/sys/fs/resctrl/g', [0, 1], [MBM_TOTAL, LLC_OCCUPANCY])
    assert mon_data == MonData(l3={
        0: {MBM_TOTAL: 1, LLC_OCCUPANCY: 2},
        1: {MBM_TOTAL: 3, LLC_OCCUPANCY: 4},
    })
    assert mon_data.sum(MBM_TOTAL) == 4
    assert mon_data.sum(LLC_OCCUPANCY) == 6


@patch('builtins.open', new=create_open_mock({
    '/sys/fs/resctrl/mon_data/mon_L3_00/mbm_total_bytes': '10\n',
    '/sys/fs/resctrl/mon_data/mon_L3_00/mbm_local_bytes': 'Unavailable\n',
    '/sys/fs/resctrl/mon_data/mon_L3_01/mbm_local_bytes': '7\n',
}))
def test_get_mon_data_skips_unreadable_counters():
    mon_data = get_mon_data('/sys/fs/resctrl', [0, 1, 2], [MBM_TOTAL, MBM_LOCAL])
    assert mon_data == MonData(l3={
        0: {MBM_TOTAL: 10},
        1: {MBM_LOCAL: 7},
    })
    assert mon_data.sum(MBM_TOTAL) == 10


def test_get_mon_data_no_events():
    assert get_mon_data('/sys/fs/resctrl', [0, 1], []) == MonData()
