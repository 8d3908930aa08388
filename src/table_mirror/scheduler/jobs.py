"""
Scheduled job: mirror every mapping and write a timestamped report.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..mapping import TableMapping
from ..report import export_report_json, generate_report
from ..service import MirrorService

logger = logging.getLogger(__name__)


def mirror_job(
    service: MirrorService,
    mappings: list[TableMapping],
    output_dir: str,
) -> dict[str, Any]:
    """
    Run all mappings and save the report as ``mirror_<timestamp>.json``.

    Run failures are reported, not raised, so the scheduler keeps firing.

    Returns:
        The generated report
    """
    timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    output = Path(output_dir)
    output.mkdir(parents=True, exist_ok=True)
    output_path = output / f"mirror_{timestamp}.json"

    logger.info(f"Starting scheduled mirror run at {timestamp}")

    results = service.run_all(mappings)
    report = generate_report(results)
    export_report_json(report, str(output_path))

    logger.info(f"Scheduled run complete: status={report['status']}, report={output_path}")
    if report["tables_failed"]:
        failed = [run["mapping"] for run in report["runs"] if not run["success"]]
        logger.warning(f"{len(failed)} table(s) failed: {', '.join(failed)}")
    return report
