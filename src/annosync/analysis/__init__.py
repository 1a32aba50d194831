"""External analysis collaborators: the static analyzer and the diagram tool."""

from .diagram import extract_image_paths, rewrite_image_paths, run_diagram_tool
from .report import (
    AnalysisReport,
    AnalysisResult,
    Diagnostic,
    finding_from_result,
    load_report_file,
    parse_report,
    run_analysis,
)

__all__ = [
    "AnalysisReport",
    "AnalysisResult",
    "Diagnostic",
    "extract_image_paths",
    "finding_from_result",
    "load_report_file",
    "parse_report",
    "rewrite_image_paths",
    "run_analysis",
    "run_diagram_tool",
]
