"""
Report export: JSON file, CSV file, console text.
"""

import csv
import json
from typing import Any

CSV_COLUMNS = [
    "mapping", "success", "state", "strategy", "rows_read", "inserted", "updated",
    "unchanged", "deleted", "duplicates", "chunks_committed", "duration_seconds",
    "error_type", "error",
]


def export_report_json(report: dict[str, Any], output_path: str) -> None:
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, default=str)


def export_report_csv(report: dict[str, Any], output_path: str) -> None:
    """One CSV line per run."""
    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for run in report.get("runs", []):
            writer.writerow({column: run.get(column, "") for column in CSV_COLUMNS})


def format_report_console(report: dict[str, Any]) -> str:
    lines = [
        "=" * 80,
        "TABLE MIRROR REPORT",
        "=" * 80,
        f"Status: {report['status']}",
        f"Timestamp: {report['timestamp']}",
        f"Tables: {report['total_tables']} "
        f"({report['tables_succeeded']} succeeded, {report['tables_failed']} failed)",
    ]

    totals = report.get("totals") or {}
    if totals:
        lines.append(
            f"Rows: {totals['rows_read']:,} read, {totals['inserted']:,} inserted, "
            f"{totals['updated']:,} updated, {totals['unchanged']:,} unchanged, "
            f"{totals['deleted']:,} deleted"
        )
    lines.append("")

    if report["runs"]:
        lines.append("RUNS")
        lines.append("-" * 80)
        for run in report["runs"]:
            outcome = "OK" if run["success"] else f"FAILED ({run['error_type']})"
            lines.append(
                f"{run['mapping']:<40} {outcome:<28} "
                f"+{run['inserted']} ~{run['updated']} -{run['deleted']} "
                f"{run['duration_seconds']:.1f}s"
            )
        lines.append("")

    lines.append("SUMMARY")
    lines.append("-" * 80)
    lines.append(report["summary"])
    lines.append("")

    if report["issues"]:
        lines.append("ISSUES")
        lines.append("-" * 80)
        for issue in report["issues"]:
            lines.append(f"Table: {issue['table']}")
            lines.append(f"  Issue: {issue['issue_type']}")
            lines.append(f"  Severity: {issue['severity']}")
            lines.append(f"  Details: {issue['details']}")
            lines.append("")

    if report["recommendations"]:
        lines.append("RECOMMENDATIONS")
        lines.append("-" * 80)
        for i, recommendation in enumerate(report["recommendations"], 1):
            lines.append(f"{i}. {recommendation}")
        lines.append("")

    lines.append("=" * 80)
    return "\n".join(lines)
