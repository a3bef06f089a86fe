"""Reporting sink, Allure helpers and execution metrics."""

from .allure_helpers import (
    AllureReportingSink,
    ReportingSink,
    ResultRecord,
    attach_file,
    attach_image,
    attach_json,
    attach_text,
    write_allure_environment,
)
from .metrics import ExecutionMetrics

__all__ = [
    "AllureReportingSink",
    "ReportingSink",
    "ResultRecord",
    "attach_file",
    "attach_image",
    "attach_json",
    "attach_text",
    "write_allure_environment",
    "ExecutionMetrics",
]
