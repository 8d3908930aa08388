"""
Command implementations for the table-mirror CLI.

Each command returns the process exit code: 0 when every run succeeded
(or the command had nothing to run), 1 otherwise.
"""

import argparse
import logging
import signal
from pathlib import Path

from utils import db_pool
from utils.metrics import MetricsPublisher, MirrorMetrics
from utils.tracing import initialize_tracing, shutdown_tracing

from ..errors import ConfigurationError
from ..mapping import MirrorSettings, TableMapping, load_table_mappings, select_mappings
from ..report import (
    export_report_csv,
    export_report_json,
    format_report_console,
    generate_report,
    load_report,
)
from ..scheduler import MirrorScheduler, mirror_job
from ..service import MirrorService, PooledEndpointFactory
from .credentials import get_connection_configs

logger = logging.getLogger(__name__)


def _load_mappings(args: argparse.Namespace) -> list[TableMapping]:
    names = [name.strip() for name in args.tables.split(',')] if args.tables else None
    return select_mappings(load_table_mappings(args.config), names)


def _workers(args: argparse.Namespace) -> int:
    if not args.parallel:
        return 1
    if args.parallel_workers < 1:
        raise ConfigurationError(f"--parallel-workers must be positive, got {args.parallel_workers}")
    return args.parallel_workers


def _build_service(args: argparse.Namespace) -> MirrorService:
    """Settings, connection pools, metrics and the service shared by run and schedule."""
    settings = MirrorSettings.from_env(
        chunk_size=args.chunk_size,
        page_size=args.page_size,
        cleanup=False if args.no_cleanup else None,
    )
    workers = _workers(args)

    source_config, target_config = get_connection_configs(args)
    db_pool.initialize_pools(source_config, target_config, min_size=1, max_size=max(2, workers))

    metrics = MirrorMetrics()
    if args.metrics_port:
        MetricsPublisher(port=args.metrics_port).start()

    return MirrorService(
        PooledEndpointFactory(source_db_type=source_config["db_type"]),
        settings=settings,
        max_workers=workers,
        fail_fast=args.fail_fast,
        metrics=metrics,
    )


def _install_cancel_handlers(service: MirrorService) -> None:
    """SIGINT / SIGTERM stop the runs at the next chunk boundary."""

    def handler(signum, frame):
        logger.warning(f"Received signal {signum}, finishing the current chunk")
        service.cancel()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def _emit_report(report: dict, output: str | None, fmt: str) -> None:
    if output and fmt != "console":
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if fmt == "json":
            export_report_json(report, str(output_path))
        else:
            export_report_csv(report, str(output_path))
        logger.info(f"Report saved to {output_path}")
    else:
        print(format_report_console(report))


def cmd_run(args: argparse.Namespace) -> int:
    """
    Mirror the selected tables once

    Args:
        args: Parsed command-line arguments
    """
    try:
        mappings = _load_mappings(args)
        service = _build_service(args)
    except (ConfigurationError, RuntimeError) as e:
        logger.error(f"Cannot start: {e}")
        return 1

    initialize_tracing()
    _install_cancel_handlers(service)
    try:
        results = service.run_all(mappings)
    finally:
        db_pool.close_pools()
        shutdown_tracing()

    report = generate_report(results)
    _emit_report(report, args.output, args.format)

    if all(result.success for result in results):
        logger.info("Mirror completed successfully")
        return 0
    logger.warning(f"{report['tables_failed']} table(s) failed")
    return 1


def cmd_schedule(args: argparse.Namespace) -> int:
    """
    Schedule periodic mirror runs; blocks until interrupted

    Args:
        args: Parsed command-line arguments
    """
    logger.info("Setting up mirror scheduler")

    try:
        mappings = _load_mappings(args)
        service = _build_service(args)
        scheduler = MirrorScheduler()
        job_kwargs = {"service": service, "mappings": mappings, "output_dir": args.output_dir}
        if args.cron:
            scheduler.add_cron_job(mirror_job, args.cron, "mirror_job", **job_kwargs)
        else:
            scheduler.add_interval_job(mirror_job, args.interval, "mirror_job", **job_kwargs)
    except (ConfigurationError, RuntimeError, ValueError) as e:
        logger.error(f"Cannot schedule: {e}")
        return 1

    Path(args.output_dir).mkdir(parents=True, exist_ok=True)
    initialize_tracing()

    logger.info("Starting scheduler (press Ctrl+C to stop)")
    try:
        scheduler.start()
    finally:
        service.cancel()
        db_pool.close_pools()
        shutdown_tracing()
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    """
    Generate a report from a previous run's JSON file

    Args:
        args: Parsed command-line arguments
    """
    logger.info(f"Loading mirror report from {args.input}")

    if args.format in ("json", "csv") and not args.output:
        logger.error(f"Output file required for {args.format.upper()} format")
        return 1

    try:
        report = load_report(args.input)
    except ConfigurationError as e:
        logger.error(f"Failed to process report: {e}")
        return 1

    _emit_report(report, args.output, args.format)
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """
    Load and validate a mapping descriptor file, then print its mappings

    Args:
        args: Parsed command-line arguments
    """
    try:
        mappings = load_table_mappings(args.config)
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    for mapping in mappings:
        database = f" [{mapping.source_database} -> {mapping.target_database}]" if mapping.source_database else ""
        print(
            f"{mapping.source_label} -> {mapping.label}{database} "
            f"key=({', '.join(mapping.primary_key)}) strategy={mapping.strategy} "
            f"delete_orphans={mapping.delete_orphans}"
        )
    print(f"{len(mappings)} mapping(s) OK")
    return 0
