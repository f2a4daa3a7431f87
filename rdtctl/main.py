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
"""
Main entry point.

Applies configuration of RDT classes once and prints resulting classes.
"""
import argparse
import logging
import sys

from rdtctl import logger
from rdtctl.config import load_config
from rdtctl.errors import RdtError
from rdtctl.info import read_resctrl_info
from rdtctl.rdt import Rdt

log = logging.getLogger('rdtctl.main')

DEFAULT_PREFIX = 'rdtctl.'


def print_classes(rdt: Rdt, out=sys.stdout):
    for cls in rdt.get_classes():
        out.write('%s (%s)\n' % (cls.name, cls.path()))
        for line in cls.get_schemata().lines():
            out.write('    %s\n' % line)
        for mon_group in cls.get_mon_groups():
            out.write('    mon_group: %s\n' % mon_group.name)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Configure cache and memory bandwidth classes with resctrl filesystem.')
    parser.add_argument(
        '-c', '--config',
        help="Configuration file (yaml) with partitions and classes. "
             "When not given only existing classes are shown.", default=None)
    parser.add_argument(
        '-p', '--prefix',
        help="Prefix of resctrl directories managed by this tool "
             "(default: %(default)r).", default=DEFAULT_PREFIX)
    parser.add_argument(
        '-r', '--root',
        help="resctrl mount point (default: found in /proc/mounts).", default=None)
    parser.add_argument(
        '-l', '--log-level',
        help='Log level for modules (by default for rdtctl) in [module:]level form, '
             'where level can be one of: CRITICAL,ERROR,WARNING,INFO,DEBUG,TRACE. '
             'Example -l debug -l rdtctl.resctrl:trace. Defaults to rdtctl:INFO.',
        default=[],
        action='append',
        dest='levels',
    )
    args = parser.parse_args(argv)

    # Initialize logging subsystem from command line options.
    log_levels = logger.parse_loggers_from_list(args.levels)
    log_levels.setdefault(logger.DEFAULT_MODULE, 'info')
    logger.configure_loggers_from_dict(log_levels)

    rdt = Rdt()
    try:
        info = read_resctrl_info(args.root) if args.root else None
        rdt.initialize(args.prefix, info)
        if args.config:
            rdt.set_config(load_config(args.config))
        print_classes(rdt, sys.stdout)
    except (RdtError, OSError) as e:
        log.error('Cannot configure RDT: %s', e)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
