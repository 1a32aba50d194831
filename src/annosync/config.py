"""Runtime configuration for annosync.

Reads remote-store and workspace settings from CLI overrides, environment
variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    ANNOSYNC_REMOTE_URI: MongoDB connection URI (required when remote is enabled)
    ANNOSYNC_REMOTE_DATABASE: Database name (optional, default: annosync)
    ANNOSYNC_REMOTE_ENABLED: Enable the shared remote store (optional, default: false)
    ANNOSYNC_EXPIRE_AFTER: Remote retention window in seconds, <= 0 disables expiry
    ANNOSYNC_MAX_PARALLEL_REQUESTS: Max concurrent remote calls (optional, default: 4)
    ANNOSYNC_WORKSPACE: Workspace root directory (optional, default: CWD)
    ANNOSYNC_STORAGE_DIR: Directory for project stores and secrets
    ANNOSYNC_AUTHOR: Author name stamped on new comments
    ANNOSYNC_FULL_RESYNC: Re-pull everything on every pass (optional, default: true)
"""

import getpass
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_EXPIRE_AFTER = 30 * 24 * 3600


@dataclass
class Config:
    remote_uri: str = ""
    remote_database: str = "annosync"
    remote_enabled: bool = False
    expire_after_seconds: int = DEFAULT_EXPIRE_AFTER
    server_timeout_ms: int = 5000
    max_parallel_requests: int = 4
    workspace_root: str = "."
    storage_dir: str = "~/.annosync"
    author_name: str = ""
    anchor_lines: int = 5
    full_resync: bool = True
    analysis_executable: str = "semgrep"
    analysis_rules: str | None = None
    analysis_timeout: int = 600
    analysis_extra_args: list[str] = field(default_factory=list)
    diagram_executable: str | None = None
    debug: bool = False

    @property
    def storage_path(self) -> Path:
        return Path(self.storage_dir).expanduser()


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the remote URI is missing or malformed while the
            remote is enabled, or a numeric setting is out of range.
    """
    config.remote_uri = config.remote_uri.strip()

    if config.remote_enabled:
        if not config.remote_uri:
            raise ValueError(
                "Remote store enabled but no URI configured. "
                "Set ANNOSYNC_REMOTE_URI or remote.uri in config.yml."
            )
        if not config.remote_uri.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError(
                f"Invalid remote URI '{config.remote_uri}': "
                "must start with mongodb:// or mongodb+srv://"
            )

    if not config.remote_database.strip():
        raise ValueError("Remote database name cannot be empty.")

    if not (1 <= config.anchor_lines <= 50):
        raise ValueError(
            f"Invalid anchor_lines {config.anchor_lines}: must be between 1 and 50"
        )

    if not config.author_name.strip():
        config.author_name = getpass.getuser()

    if not config.full_resync:
        logger.warning(
            "full_resync disabled: remote clock skew can hide changes "
            "older than the last watermark."
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_int_env(key: str, low: int, high: int) -> int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    remote_uri: str | None = None,
    workspace_root: str | None = None,
    author_name: str | None = None,
    remote_enabled: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        remote_uri: Override remote URI.
        workspace_root: Override workspace root.
        author_name: Override comment author name.
        remote_enabled: Force the remote store on (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict of ``Config`` field values taken from the
            YAML config (see ``config_schema.yaml_fallbacks``).

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If a value is malformed or the remote is enabled
            without a URI.
    """
    fb = yaml_fallbacks or {}
    defaults = Config()

    # --- String fields: CLI > env > YAML > default ---

    final_uri = (
        remote_uri
        or os.getenv("ANNOSYNC_REMOTE_URI")
        or fb.get("remote_uri")
        or defaults.remote_uri
    )
    final_database = (
        os.getenv("ANNOSYNC_REMOTE_DATABASE")
        or fb.get("remote_database")
        or defaults.remote_database
    )
    final_workspace = (
        workspace_root
        or os.getenv("ANNOSYNC_WORKSPACE")
        or fb.get("workspace_root")
        or os.getcwd()
    )
    final_storage = (
        os.getenv("ANNOSYNC_STORAGE_DIR")
        or fb.get("storage_dir")
        or defaults.storage_dir
    )
    final_author = (
        author_name
        or os.getenv("ANNOSYNC_AUTHOR")
        or fb.get("author_name")
        or ""
    )

    # --- Boolean fields: CLI > env > YAML > default ---

    if remote_enabled:
        final_enabled = True
    else:
        env_enabled = _get_bool_env("ANNOSYNC_REMOTE_ENABLED")
        final_enabled = (
            env_enabled
            if env_enabled is not None
            else bool(fb.get("remote_enabled", False))
        )

    env_resync = _get_bool_env("ANNOSYNC_FULL_RESYNC")
    final_resync = (
        env_resync
        if env_resync is not None
        else bool(fb.get("full_resync", True))
    )

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("ANNOSYNC_DEBUG")
        final_debug = (
            env_debug
            if env_debug is not None
            else bool(fb.get("debug", False))
        )

    # --- Numeric fields: env > YAML > default ---

    expire_after = _get_int_env("ANNOSYNC_EXPIRE_AFTER", -1, 10**9)
    if expire_after is None:
        expire_after = int(
            fb.get("expire_after_seconds", defaults.expire_after_seconds)
        )

    max_parallel = _get_int_env("ANNOSYNC_MAX_PARALLEL_REQUESTS", 1, 100)
    if max_parallel is None:
        max_parallel = int(
            fb.get("max_parallel_requests", defaults.max_parallel_requests)
        )

    config = Config(
        remote_uri=final_uri,
        remote_database=final_database,
        remote_enabled=final_enabled,
        expire_after_seconds=expire_after,
        server_timeout_ms=int(
            fb.get("server_timeout_ms", defaults.server_timeout_ms)
        ),
        max_parallel_requests=max_parallel,
        workspace_root=final_workspace,
        storage_dir=final_storage,
        author_name=final_author,
        anchor_lines=int(fb.get("anchor_lines", defaults.anchor_lines)),
        full_resync=final_resync,
        analysis_executable=fb.get(
            "analysis_executable", defaults.analysis_executable
        ),
        analysis_rules=fb.get("analysis_rules"),
        analysis_timeout=int(
            fb.get("analysis_timeout", defaults.analysis_timeout)
        ),
        analysis_extra_args=list(fb.get("analysis_extra_args", [])),
        diagram_executable=fb.get("diagram_executable"),
        debug=final_debug,
    )

    validate_config(config)

    return config
