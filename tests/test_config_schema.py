"""Tests for the unified config schema and its adapter functions.

Covers the Pydantic section models in config_schema.py, the build_config()
factory, and the yaml_fallbacks() adapter that feeds
the flat Config dataclass.
"""

import pytest
from pydantic import ValidationError

from annosync.config import Config
from annosync.config_schema import (
    AnalysisConfig,
    LoggingConfig,
    RemoteConfig,
    UnifiedConfig,
    WorkspaceConfig,
    build_config,
    yaml_fallbacks,
)

# ---------------------------------------------------------------------------
# UnifiedConfig tests
# ---------------------------------------------------------------------------


class TestUnifiedConfig:
    """Tests for the top-level UnifiedConfig model."""

    def test_zero_config_is_valid(self):
        config = UnifiedConfig()
        assert config.remote.enabled is False
        assert config.remote.uri is None
        assert config.workspace.full_resync is True
        assert config.analysis.executable == "semgrep"
        assert config.logging.level == "INFO"

    def test_full_config_with_all_sections(self):
        config = UnifiedConfig(
            remote=RemoteConfig(
                enabled=True,
                uri="mongodb://db.example.com",
                database="reviews",
                expire_after_seconds=0,
            ),
            workspace=WorkspaceConfig(root="/ws", author_name="alice"),
            analysis=AnalysisConfig(rules="p/terraform", extra_args=["--metrics=off"]),
            logging=LoggingConfig(level="DEBUG", file="/tmp/a.log"),
        )
        assert config.remote.database == "reviews"
        assert config.workspace.author_name == "alice"
        assert config.analysis.extra_args == ["--metrics=off"]
        assert config.logging.file == "/tmp/a.log"

    def test_frozen(self):
        config = UnifiedConfig()
        with pytest.raises(ValidationError):
            config.remote = RemoteConfig(enabled=True)


class TestSectionValidation:
    @pytest.mark.parametrize("value", [0, 101])
    def test_max_parallel_range(self, value):
        with pytest.raises(ValidationError):
            RemoteConfig(max_parallel_requests=value)

    def test_server_timeout_minimum(self):
        with pytest.raises(ValidationError):
            RemoteConfig(server_timeout_ms=10)

    @pytest.mark.parametrize("value", [0, 51])
    def test_anchor_lines_range(self, value):
        with pytest.raises(ValidationError):
            WorkspaceConfig(anchor_lines=value)

    def test_analysis_timeout_positive(self):
        with pytest.raises(ValidationError):
            AnalysisConfig(timeout_seconds=0)


# ---------------------------------------------------------------------------
# build_config()
# ---------------------------------------------------------------------------


class TestBuildConfig:
    def test_empty_dict(self):
        assert build_config({}) == UnifiedConfig()

    def test_partial_sections(self):
        config = build_config({"remote": {"uri": "mongodb://h"}})
        assert config.remote.uri == "mongodb://h"
        assert config.workspace == WorkspaceConfig()

    def test_invalid_value_raises(self):
        with pytest.raises(ValidationError):
            build_config({"workspace": {"anchor_lines": "many"}})


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class TestYamlFallbacks:
    def test_none_values_dropped(self):
        flat = yaml_fallbacks(UnifiedConfig())
        assert "remote_uri" not in flat
        assert "author_name" not in flat
        assert flat["remote_database"] == "annosync"
        assert flat["full_resync"] is True

    def test_keys_are_config_fields(self):
        """Every fallback key names a field of the flat Config."""
        flat = yaml_fallbacks(
            UnifiedConfig(
                remote=RemoteConfig(uri="mongodb://h"),
                workspace=WorkspaceConfig(root="/ws", author_name="a"),
                analysis=AnalysisConfig(rules="r", diagram_executable="dia"),
            )
        )
        assert set(flat) <= set(Config.__dataclass_fields__)
