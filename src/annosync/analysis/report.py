"""Static-analysis reports (semgrep ``--json`` output) and their findings.

Only the fields the findings engine needs are modelled; everything else
in the report is ignored.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, Field, ValidationError

from ..anchor import ANCHOR_LINES, Anchor, capture, encode
from ..errors import AnalysisError
from ..sync.models import FindingFlag, FindingRecord

logger = logging.getLogger(__name__)

# semgrep exits with 1 when findings are reported and ``--error`` is set
_ACCEPTED_EXIT_CODES = (0, 1)


class Position(BaseModel):
    line: int
    col: int = 1


class ResultMetadata(BaseModel):
    source: str = ""
    severity: str | None = None
    references: list[str] = Field(default_factory=list)


class ResultExtra(BaseModel):
    message: str
    severity: str | None = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)


class AnalysisResult(BaseModel):
    """One reported match."""

    path: str
    start: Position
    end: Position
    extra: ResultExtra
    check_id: str | None = None

    @property
    def severity(self) -> str:
        return self.extra.metadata.severity or self.extra.severity or "INFO"


class AnalysisReport(BaseModel):
    results: list[AnalysisResult] = Field(default_factory=list)


class Diagnostic(BaseModel):
    """Serialized payload of a finding (``FindingRecord.diagnostic``)."""

    message: str
    severity: str = "INFO"
    source: str = ""
    related_information: list[str] = Field(
        default_factory=list, alias="relatedInformation"
    )

    model_config = {"populate_by_name": True}

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def parse_report(text: str | bytes) -> AnalysisReport:
    """Parse a JSON report.

    Raises:
        AnalysisError: If *text* is not a valid report.
    """
    try:
        return AnalysisReport.model_validate_json(text)
    except ValidationError as exc:
        raise AnalysisError(f"Invalid analysis report: {exc}") from exc


def load_report_file(path: Path | str) -> AnalysisReport:
    """Read and parse a report previously written to disk."""
    try:
        text = Path(path).read_bytes()
    except OSError as exc:
        raise AnalysisError(f"Cannot read analysis report {path}: {exc}") from exc
    return parse_report(text)


def finding_from_result(
    result: AnalysisResult,
    finding_id: str,
    document: str | None,
    created_at: float,
    anchor_lines: int = ANCHOR_LINES,
) -> FindingRecord:
    """Map a report entry to an unflagged finding.

    The anchor is captured at the reported start line (1-based in the
    report) against *document*; without a document only the line is kept.
    """
    line = max(0, result.start.line - 1)
    if document is None:
        anchor = Anchor(line=line, text="", lines_before_anchor=0)
    else:
        anchor = capture(document, line, anchor_lines)
    diagnostic = Diagnostic(
        message=result.extra.message,
        severity=result.severity,
        source=result.extra.metadata.source,
        related_information=result.extra.metadata.references,
    )
    return FindingRecord(
        id=finding_id,
        diagnostic=diagnostic.to_json(),
        flag=FindingFlag.UNFLAGGED,
        flag_timestamp=created_at,
        anchor=encode(anchor),
        file_path=normalize_report_path(result.path),
        timestamp_created=created_at,
    )


def normalize_report_path(path: str) -> str:
    """Return *path* in wire form: POSIX separators, no leading ``./``."""
    return PurePosixPath(path.replace("\\", "/")).as_posix()


def run_analysis(
    directory: Path | str,
    rules: str,
    executable: str = "semgrep",
    timeout: float = 600,
    extra_args: Sequence[str] = (),
) -> AnalysisReport:
    """Run the analyzer over *directory* and parse its report.

    Paths in the report are relative to *directory*.

    Raises:
        AnalysisError: If the tool is missing, times out, fails, or prints
            something that is not a report.
    """
    command = [
        executable,
        "--json",
        "--quiet",
        "--config",
        rules,
        *extra_args,
        "./",
    ]
    logger.info("Running analysis in %s: %s", directory, " ".join(command))
    try:
        completed = subprocess.run(
            command,
            cwd=str(directory),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise AnalysisError(f"Analyzer not installed: {executable}") from exc
    except subprocess.TimeoutExpired as exc:
        raise AnalysisError(f"Analysis timed out after {timeout}s") from exc

    if completed.returncode not in _ACCEPTED_EXIT_CODES:
        raise AnalysisError(
            f"Analyzer exited with {completed.returncode}: "
            f"{completed.stderr.strip()}"
        )
    if completed.stderr.strip():
        logger.warning("Analyzer stderr: %s", completed.stderr.strip())
    report = parse_report(completed.stdout)
    logger.info("Analysis reported %d results", len(report.results))
    return report
