"""
Command-line interface for table mirroring.

Available commands:
- run: Mirror tables once
- schedule: Mirror tables periodically
- report: Generate reports from previous runs
- validate: Check a table mapping descriptor file
"""

import sys

from utils.logging import setup_logging

from .commands import cmd_report, cmd_run, cmd_schedule, cmd_validate
from .credentials import get_connection_configs
from .parser import create_parser

COMMANDS = {
    'run': cmd_run,
    'schedule': cmd_schedule,
    'report': cmd_report,
    'validate': cmd_validate,
}


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the table-mirror CLI"""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level, log_file=args.log_file, json_format=args.log_json)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)
    sys.exit(command(args))


__all__ = [
    'main',
    'get_connection_configs',
    'cmd_run',
    'cmd_schedule',
    'cmd_report',
    'cmd_validate',
    'create_parser',
]


if __name__ == '__main__':
    main()
