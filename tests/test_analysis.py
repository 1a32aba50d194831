"""
Tests for analysis report parsing and the external tool wrappers.
"""

import json

import pytest

from annosync.analysis.diagram import (
    extract_image_paths,
    rewrite_image_paths,
    run_diagram_tool,
)
from annosync.analysis.report import (
    Diagnostic,
    finding_from_result,
    load_report_file,
    normalize_report_path,
    parse_report,
    run_analysis,
)
from annosync.anchor import decode
from annosync.errors import AnalysisError
from annosync.sync.models import FindingFlag

REPORT = {
    "results": [
        {
            "check_id": "terraform.aws.security.open-ingress",
            "path": "./network/main.tf",
            "start": {"line": 4, "col": 3, "offset": 41},
            "end": {"line": 4, "col": 30, "offset": 68},
            "extra": {
                "message": "Security group allows ingress from 0.0.0.0/0",
                "severity": "WARNING",
                "metadata": {
                    "source": "https://semgrep.dev/r/open-ingress",
                    "severity": "HIGH",
                    "references": ["https://cwe.mitre.org/data/definitions/284"],
                },
                "lines": "cidr_blocks = [\"0.0.0.0/0\"]",
            },
        }
    ],
    "errors": [],
    "version": "1.60.0",
}

DOCUMENT = "".join(f"row {i}\n" for i in range(12))


class TestParseReport:
    def test_parses_results(self):
        report = parse_report(json.dumps(REPORT))
        (result,) = report.results
        assert result.path == "./network/main.tf"
        assert result.start.line == 4
        assert result.check_id == "terraform.aws.security.open-ingress"

    def test_metadata_severity_wins(self):
        (result,) = parse_report(json.dumps(REPORT)).results
        assert result.severity == "HIGH"

    def test_severity_defaults_to_info(self):
        data = {
            "results": [
                {
                    "path": "a.tf",
                    "start": {"line": 1},
                    "end": {"line": 1},
                    "extra": {"message": "m"},
                }
            ]
        }
        (result,) = parse_report(json.dumps(data)).results
        assert result.severity == "INFO"

    def test_invalid_report_raises(self):
        with pytest.raises(AnalysisError, match="Invalid analysis report"):
            parse_report('{"results": [{"path": 1}]}')

    def test_load_report_file(self, tmp_path):
        path = tmp_path / "report.json"
        path.write_text(json.dumps(REPORT))
        assert len(load_report_file(path).results) == 1

    def test_load_missing_report_file(self, tmp_path):
        with pytest.raises(AnalysisError, match="Cannot read"):
            load_report_file(tmp_path / "missing.json")


class TestFindingFromResult:
    def test_maps_result(self):
        """Lines become 0-based; the diagnostic keeps the report details."""
        (result,) = parse_report(json.dumps(REPORT)).results
        finding = finding_from_result(result, "f1", DOCUMENT, 123.0)
        assert finding.id == "f1"
        assert finding.file_path == "network/main.tf"
        assert finding.flag is FindingFlag.UNFLAGGED
        assert finding.flag_timestamp == finding.timestamp_created == 123.0
        assert decode(finding.anchor).line == 3
        diagnostic = Diagnostic.model_validate_json(finding.diagnostic)
        assert diagnostic.severity == "HIGH"
        assert diagnostic.source == "https://semgrep.dev/r/open-ingress"
        assert diagnostic.related_information == [
            "https://cwe.mitre.org/data/definitions/284"
        ]

    def test_diagnostic_uses_wire_field_names(self):
        (result,) = parse_report(json.dumps(REPORT)).results
        payload = json.loads(finding_from_result(result, "f1", None, 1.0).diagnostic)
        assert set(payload) == {
            "message",
            "severity",
            "source",
            "relatedInformation",
        }

    def test_without_document_keeps_line_only(self):
        (result,) = parse_report(json.dumps(REPORT)).results
        anchor = decode(finding_from_result(result, "f1", None, 1.0).anchor)
        assert anchor.line == 3
        assert anchor.text == ""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("./main.tf", "main.tf"),
            ("modules\\net\\main.tf", "modules/net/main.tf"),
            ("a/b.tf", "a/b.tf"),
        ],
    )
    def test_normalize_report_path(self, raw, expected):
        assert normalize_report_path(raw) == expected


class TestTools:
    def test_missing_analyzer(self, tmp_path):
        with pytest.raises(AnalysisError, match="not installed"):
            run_analysis(tmp_path, "rules.yml", executable="no-such-analyzer-xyz")

    def test_missing_diagram_tool(self, tmp_path):
        with pytest.raises(AnalysisError, match="not installed"):
            run_diagram_tool("no-such-diagram-tool-xyz", tmp_path)


class TestDiagramImages:
    GRAPH = (
        'digraph { a [image="icons/aws/ec2.png"]; '
        'b [label="db", image="/opt/icons/rds.png"]; c [label="x"] }'
    )

    def test_extract_image_paths(self):
        assert extract_image_paths(self.GRAPH) == [
            "icons/aws/ec2.png",
            "/opt/icons/rds.png",
        ]

    def test_rewrite_image_paths(self):
        rewritten = rewrite_image_paths(self.GRAPH, lambda p: "file://" + p)
        assert 'image="file://icons/aws/ec2.png"' in rewritten
        assert 'image="file:///opt/icons/rds.png"' in rewritten
        assert 'c [label="x"]' in rewritten
