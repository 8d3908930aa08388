"""
Command-line argument parser configuration.

This module sets up the argument parser for the table-mirror CLI tool,
defining all commands and their options.
"""

import argparse


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--config',
        required=True,
        help='Table mapping descriptor file (JSON or YAML)'
    )
    parser.add_argument(
        '--tables',
        help='Comma-separated list of tables to mirror (default: every mapping)'
    )


def _add_run_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--chunk-size',
        type=int,
        help='Source rows per committed chunk (default: 100, or MIRROR_CHUNK_SIZE)'
    )
    parser.add_argument(
        '--page-size',
        type=int,
        help='Rows per page fetched from source and target (default: 5000, or MIRROR_PAGE_SIZE)'
    )
    parser.add_argument(
        '--no-cleanup',
        action='store_true',
        help='Do not delete target rows missing from the source'
    )
    parser.add_argument(
        '--parallel',
        action='store_true',
        help='Mirror several tables concurrently'
    )
    parser.add_argument(
        '--parallel-workers',
        type=int,
        default=4,
        help='Number of parallel workers (default: 4)'
    )
    parser.add_argument(
        '--fail-fast',
        action='store_true',
        help='Cancel remaining tables after the first failure'
    )
    parser.add_argument(
        '--metrics-port',
        type=int,
        help='Serve Prometheus metrics on this port'
    )


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--use-vault',
        action='store_true',
        help='Fetch credentials from HashiCorp Vault'
    )
    # Source database options
    parser.add_argument(
        '--source-db-type',
        choices=['sqlserver', 'postgresql'],
        help='Source database type (default: sqlserver)'
    )
    parser.add_argument('--source-host', help='Source database host')
    parser.add_argument('--source-port', type=int, help='Source database port')
    parser.add_argument('--source-database', help='Source database name')
    parser.add_argument('--source-user', help='Source database username')
    parser.add_argument('--source-password', help='Source database password')
    # Target database options (SQL Server)
    parser.add_argument('--target-host', help='Target SQL Server host')
    parser.add_argument('--target-port', type=int, help='Target SQL Server port')
    parser.add_argument('--target-database', help='Target SQL Server database name')
    parser.add_argument('--target-user', help='Target SQL Server username')
    parser.add_argument('--target-password', help='Target SQL Server password')


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog='table-mirror',
        description='Mirror source tables into SQL Server target tables',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Mirror every table in a descriptor file
  table-mirror run --config table-update.json

  # Mirror two tables, four at a time, and save a JSON report
  table-mirror run --config tables.yaml --tables customers,orders \\
      --parallel --parallel-workers 4 --output report.json --format json

  # Upsert only, keep target rows that are missing from the source
  table-mirror run --config tables.yaml --no-cleanup

  # Use Vault for credentials
  table-mirror run --config tables.yaml --use-vault

  # Mirror every 6 hours
  table-mirror schedule --config tables.yaml --cron "0 */6 * * *"

  # Print a previous report
  table-mirror report --input reports/mirror_20260101_000000.json

  # Check a descriptor file
  table-mirror validate --config tables.yaml
        """
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default='INFO',
        help='Logging level (default: INFO)'
    )
    parser.add_argument(
        '--log-json',
        action='store_true',
        help='Emit log records as JSON'
    )
    parser.add_argument(
        '--log-file',
        help='Also write logs to this rotating file'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # ========== Run command ==========
    run_parser = subparsers.add_parser('run', help='Mirror tables once')
    _add_config_args(run_parser)
    _add_run_args(run_parser)
    run_parser.add_argument(
        '--output',
        help='Output file path for report'
    )
    run_parser.add_argument(
        '--format',
        choices=['console', 'json', 'csv'],
        default='console',
        help='Output format (default: console)'
    )
    _add_connection_args(run_parser)

    # ========== Schedule command ==========
    schedule_parser = subparsers.add_parser('schedule', help='Mirror tables periodically')
    _add_config_args(schedule_parser)
    _add_run_args(schedule_parser)
    trigger = schedule_parser.add_mutually_exclusive_group(required=True)
    trigger.add_argument(
        '--cron',
        help='Cron expression (e.g., "0 */6 * * *" for every 6 hours)'
    )
    trigger.add_argument(
        '--interval',
        type=int,
        help='Interval in seconds'
    )
    schedule_parser.add_argument(
        '--output-dir',
        default='./mirror_reports',
        help='Directory to save run reports (default: ./mirror_reports)'
    )
    _add_connection_args(schedule_parser)

    # ========== Report command ==========
    report_parser = subparsers.add_parser('report', help='Generate report from previous run')
    report_parser.add_argument(
        '--input',
        required=True,
        help='Input JSON report file'
    )
    report_parser.add_argument(
        '--format',
        choices=['console', 'json', 'csv'],
        default='console',
        help='Output format (default: console)'
    )
    report_parser.add_argument(
        '--output',
        help='Output file path (required for json and csv formats)'
    )

    # ========== Validate command ==========
    validate_parser = subparsers.add_parser('validate', help='Validate a mapping descriptor file')
    validate_parser.add_argument(
        '--config',
        required=True,
        help='Table mapping descriptor file (JSON or YAML)'
    )

    return parser
