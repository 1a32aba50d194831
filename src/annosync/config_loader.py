"""
Hierarchical configuration loader for annosync.

Discovers config files by convention, resolves ``!include`` directives and
``${VAR}`` interpolation, and merges files so that project-level settings
win over user-level ones.

Usage:
    from annosync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "ANNOSYNC_CONFIG"

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in *value*.

    An unset or empty variable expands to its default, or to ``""`` when
    no default is given.
    """

    def _replace(match: re.Match) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val:
            return env_val
        return match.group(2) or ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. YAML !include support
# ---------------------------------------------------------------------------


class IncludeLoader(yaml.SafeLoader):
    """SafeLoader with an ``!include`` tag.

    Each loader carries the chain of files currently being loaded so that
    circular includes are reported instead of recursing forever.
    """

    include_chain: tuple[Path, ...] = ()

    def construct_include(self, node: yaml.ScalarNode) -> Any:
        target = Path(self.construct_scalar(node))
        if not target.is_absolute():
            target = Path(self.name).resolve().parent / target
        target = target.resolve()

        if target in self.include_chain:
            chain = " -> ".join(str(p) for p in (*self.include_chain, target))
            raise ValueError(f"Circular include detected: {chain}")
        if not target.exists():
            raise FileNotFoundError(
                f"Include file not found: {target} "
                f"(referenced from {Path(self.name).resolve()})"
            )
        return load_yaml_file(target, _chain=self.include_chain)


IncludeLoader.add_constructor("!include", IncludeLoader.construct_include)


def load_yaml_file(path: Path, *, _chain: tuple[Path, ...] = ()) -> Any:
    """Load one YAML file, following ``!include`` directives."""
    path = path.resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = IncludeLoader(fh)
        loader.include_chain = (*_chain, path)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# 3. Convention-based file discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config file paths in precedence order (highest first).

    Search order:
        1. ``ANNOSYNC_CONFIG`` env var (explicit single path)
        2. ``.annosync/config.yml`` in CWD (project-level)
        3. ``.annosync/config.yaml`` in CWD
        4. ``~/.config/annosync/config.yml`` (XDG global)
        5. ``~/.annosync/config.yaml`` (home directory)

    Only paths that exist on disk are returned.
    """
    candidates: list[Path] = []

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    cwd = Path.cwd()
    candidates.append(cwd / ".annosync" / "config.yml")
    candidates.append(cwd / ".annosync" / "config.yaml")
    candidates.append(Path.home() / ".config" / "annosync" / "config.yml")
    candidates.append(Path.home() / ".annosync" / "config.yaml")

    return [p for p in candidates if p.exists()]


# ---------------------------------------------------------------------------
# 4. Hierarchical merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load and merge all discovered config files.

    Files are applied from lowest to highest precedence; a top-level
    section in a higher-precedence file replaces the whole section from
    lower ones.  Env var interpolation runs after the merge.

    Returns an empty dict when no config files exist (zero-config).
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using zero-config defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = load_yaml_file(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged)
