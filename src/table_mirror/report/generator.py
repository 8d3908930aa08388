"""
Aggregates run results into a report with issues and recommendations.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..engine import RunResult
from ..errors import ConfigurationError


class IssueType:
    RUN_FAILED = "RUN_FAILED"
    DUPLICATE_KEYS = "DUPLICATE_KEYS"


# Severity of a failed run by the error that ended it
FAILURE_SEVERITY = {
    "ConfigurationError": "CRITICAL",
    "DataShapeError": "CRITICAL",
    "ChunkWriteError": "HIGH",
    "TransientIOError": "MEDIUM",
    "CleanupError": "MEDIUM",
    "RunCancelled": "LOW",
}

RECOMMENDATIONS = {
    "ConfigurationError": "Fix the mapping file or table names, then run `table-mirror validate`.",
    "DataShapeError": (
        "Source and target columns or keys disagree. Align the target table "
        "definition with the source (schema changes are not replicated)."
    ),
    "ChunkWriteError": (
        "A merge statement was rejected by the target. Check constraints, "
        "triggers and column types on the target table."
    ),
    "TransientIOError": (
        "Connection or timeout errors occurred. The next run will resume "
        "safely; merges are idempotent."
    ),
    "CleanupError": (
        "Orphan deletion failed. Rows were merged but the target may still "
        "contain rows deleted from the source; rerun to finish cleanup."
    ),
    "RunCancelled": "Runs were cancelled; rerun the affected tables.",
}


def _duplicate_severity(duplicates: int) -> str:
    return "LOW" if duplicates < 10 else "MEDIUM"


def _issues_for(result: RunResult) -> list[dict[str, Any]]:
    issues = []
    if not result.success:
        issues.append({
            "table": result.mapping,
            "issue_type": IssueType.RUN_FAILED,
            "severity": FAILURE_SEVERITY.get(result.error_type, "HIGH"),
            "details": {
                "state": result.state.value,
                "error_type": result.error_type,
                "error": result.error,
                "chunks_committed": result.chunks_committed,
            },
        })
    if result.duplicates:
        issues.append({
            "table": result.mapping,
            "issue_type": IssueType.DUPLICATE_KEYS,
            "severity": _duplicate_severity(result.duplicates),
            "details": {
                "duplicates": result.duplicates,
                "keys": [list(anomaly.key) for anomaly in result.anomalies[:20]],
            },
        })
    return issues


def _summary(total: int, succeeded: int, rows_written: int, deleted: int) -> str:
    if succeeded == total:
        return (
            f"All {total} table(s) mirrored. {rows_written} row(s) written, "
            f"{deleted} orphan row(s) deleted."
        )
    return (
        f"{total - succeeded} of {total} table run(s) failed. "
        f"{rows_written} row(s) written and {deleted} deleted by the successful "
        "and partially committed runs."
    )


def _recommendations(results: list[RunResult]) -> list[str]:
    recommendations = []
    error_types = sorted({r.error_type for r in results if not r.success and r.error_type})
    for error_type in error_types:
        recommendations.append(
            RECOMMENDATIONS.get(error_type, f"Investigate {error_type} in the run logs.")
        )
    if any(r.duplicates for r in results):
        recommendations.append(
            "The source produced repeated primary keys. Verify the declared primary "
            "key actually identifies rows uniquely."
        )
    if not recommendations:
        recommendations.append("Target tables match their sources. No action needed.")
    return recommendations


def generate_report(results: list[RunResult]) -> dict[str, Any]:
    """
    Build a report from run results.

    Returns:
        Dict with status (PASS, FAIL or NO_DATA), table counts, row totals,
        issues, per-run details, summary and recommendations
    """
    timestamp = datetime.now(UTC).isoformat()
    if not results:
        return {
            "status": "NO_DATA",
            "timestamp": timestamp,
            "total_tables": 0,
            "tables_succeeded": 0,
            "tables_failed": 0,
            "totals": {},
            "issues": [],
            "runs": [],
            "summary": "No runs to report",
            "recommendations": [],
        }

    succeeded = sum(1 for r in results if r.success)
    totals = {
        name: sum(getattr(r, name) for r in results)
        for name in (
            "rows_read", "inserted", "updated", "unchanged", "deleted",
            "duplicates", "chunks_committed",
        )
    }
    totals["duration_seconds"] = round(sum(r.duration_seconds for r in results), 3)

    issues = [issue for result in results for issue in _issues_for(result)]

    return {
        "status": "PASS" if succeeded == len(results) else "FAIL",
        "timestamp": timestamp,
        "total_tables": len(results),
        "tables_succeeded": succeeded,
        "tables_failed": len(results) - succeeded,
        "totals": totals,
        "issues": issues,
        "runs": [r.to_dict() for r in results],
        "summary": _summary(
            len(results), succeeded, totals["inserted"] + totals["updated"], totals["deleted"]
        ),
        "recommendations": _recommendations(results),
    }


def load_report(path: str | Path) -> dict[str, Any]:
    """
    Rebuild a report from a saved JSON file.

    Accepts an exported report or a plain list of run results.

    Raises:
        ConfigurationError: If the file is missing or not a report
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read report {path}: {e}") from e

    runs = data.get("runs") if isinstance(data, dict) else data
    if not isinstance(runs, list):
        raise ConfigurationError(f"{path} holds neither a report nor a list of runs")
    try:
        return generate_report([RunResult.from_dict(item) for item in runs])
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed run entry in {path}: {e}") from e
