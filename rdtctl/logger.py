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
import sys
from functools import wraps
from typing import Dict, List

# Level more verbose than DEBUG, used for every read and write on resctrl filesystem.
TRACE = 9

DEFAULT_MODULE = 'rdtctl'

log = logging.getLogger(__name__)


def parse_loggers_from_list(log_levels_list: List[str]) -> Dict[str, str]:
    """Parse list of strings in a form '[module:]level' into module->level mapping.

    Level without module applies to the whole package.
    """
    log_levels_dict = {}
    for log_level in log_levels_list:
        if ':' in log_level:
            if len(log_level.split(':')) != 2:
                raise ValueError('Logger level from command line must be in form module:level! '
                                 '(got %r)' % log_level)
            module, log_level = log_level.split(':')
        else:
            module = DEFAULT_MODULE
        log_levels_dict[module] = log_level
    return log_levels_dict


def configure_loggers_from_dict(loggers: Dict[str, str]):
    """Set levels for given modules. Handler is attached only to the package logger."""
    for module, log_level in loggers.items():
        init_logging(log_level, package_name=module)


def init_logging(level: str, package_name: str):
    level = level.upper()
    logging.captureWarnings(True)
    logging.addLevelName(TRACE, 'TRACE')
    if level == 'TRACE':
        level = TRACE

    package_logger = logging.getLogger(package_name)
    package_logger.setLevel(level)

    # Only package root logger gets the handler, submodules propagate to it.
    if package_name == DEFAULT_MODULE and not package_logger.handlers:
        formatter = logging.Formatter('%(asctime)-15s %(levelname)s [%(name)s] %(message)s')
        handler = logging.StreamHandler(stream=sys.stderr)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
        package_logger.propagate = False

    log.debug('level=%s for %r logger', logging.getLevelName(package_logger.level),
              package_name)


def trace(log: logging.Logger, verbose=True):
    """Decorator to trace calling of given function reporting arguments and returned value."""

    def _trace(func):
        @wraps(func)
        def __trace(*args, **kwargs):
            if verbose:
                log.log(TRACE, '-> %s(args=%r, kwargs=%r)', func.__name__, args, kwargs)
            else:
                log.log(TRACE, '-> %s()', func.__name__)
            rv = func(*args, **kwargs)
            if verbose:
                log.log(TRACE, '<- %s(...) = %r', func.__name__, rv)
            else:
                log.log(TRACE, '<- %s()', func.__name__)
            return rv

        return __trace

    return _trace
