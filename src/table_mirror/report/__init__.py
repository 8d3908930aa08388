"""
Run reports: aggregate ``RunResult``s and export them.
"""

from .formatters import export_report_csv, export_report_json, format_report_console
from .generator import IssueType, generate_report, load_report

__all__ = [
    "IssueType",
    "generate_report",
    "load_report",
    "export_report_json",
    "export_report_csv",
    "format_report_console",
]
