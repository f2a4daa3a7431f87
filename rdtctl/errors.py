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


class RdtError(Exception):
    pass


class ConfigError(RdtError, ValueError):
    """Configuration is structurally or semantically invalid."""


class OverCommitError(ConfigError):
    """Partitions allocate more than 100% of a resource in some domain."""


class FormatError(RdtError, ValueError):
    """Malformed bitmask, range list or schemata text."""


class UnsupportedError(RdtError):
    """Required feature is not provided by hardware or by the resctrl mount."""


class NotFoundError(RdtError, LookupError):
    pass


class AlreadyExistsError(RdtError):
    pass


class GroupLimitError(RdtError, OSError):
    """Kernel refused to create a group because CLOSIDs or RMIDs are exhausted."""
