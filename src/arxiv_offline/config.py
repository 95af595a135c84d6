"""Configuration persistence: load and save."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from platformdirs import user_config_dir, user_data_dir

from arxiv_offline.models import (
    AUTO_REFRESH_INTERVAL_SECONDS,
    CONFIG_APP_NAME,
    DEFAULT_CATEGORIES,
    DEFAULT_MAX_RESULTS,
    MAX_RESULTS_LIMIT,
    FeedQuery,
)
from arxiv_offline.services.arxiv_feed_service import ARXIV_API_TIMEOUT, ARXIV_API_USER_AGENT

logger = logging.getLogger(__name__)

# ============================================================================
# Configuration Persistence
# ============================================================================
#
# Validation contract: _dict_to_config() guarantees valid output for any input.
#
#   Field                     Rule                         Handler
#   ────────────────────────  ───────────────────────────  ─────────────────────
#   categories                list[str], may be empty      _parse_categories
#   max_results               1 ≤ x ≤ 200                  _coerce_max_results
#   refresh_interval_minutes  x ≥ 1                        _dict_to_config
#   document_cache_max_bytes  x ≥ 0 (0 = unbounded)        _dict_to_config
#   scalar fields             type-checked via _safe_get() _dict_to_config
#
CONFIG_FILENAME = "config.json"
DEFAULT_DOCUMENT_CACHE_MAX_BYTES = 512 * 1024 * 1024


@dataclass(slots=True)
class SyncConfig:
    """User configuration for the feed engine and document cache."""

    categories: list[str] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    keywords: str = ""
    max_results: int = DEFAULT_MAX_RESULTS
    refresh_interval_minutes: int = AUTO_REFRESH_INTERVAL_SECONDS // 60
    request_timeout_seconds: int = ARXIV_API_TIMEOUT
    user_agent: str = ARXIV_API_USER_AGENT
    document_cache_max_bytes: int = DEFAULT_DOCUMENT_CACHE_MAX_BYTES
    data_dir: str = ""  # Empty = platformdirs user data dir
    version: int = 1

    def feed_query(self) -> FeedQuery:
        return FeedQuery(
            categories=tuple(self.categories),
            keywords=self.keywords,
            max_results=self.max_results,
        )

    def resolved_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        return Path(user_data_dir(CONFIG_APP_NAME))


def get_config_path() -> Path:
    """Get the path to the configuration file.

    Uses platformdirs for cross-platform config directory:
    - Linux: ~/.config/arxiv-offline/config.json
    - macOS: ~/Library/Application Support/arxiv-offline/config.json
    - Windows: %APPDATA%/arxiv-offline/config.json
    """
    return Path(user_config_dir(CONFIG_APP_NAME)) / CONFIG_FILENAME


def _config_to_dict(config: SyncConfig) -> dict[str, Any]:
    """Serialize SyncConfig to a JSON-compatible dictionary."""
    return {
        "version": config.version,
        "categories": list(config.categories),
        "keywords": config.keywords,
        "max_results": _coerce_max_results(config.max_results),
        "refresh_interval_minutes": max(1, config.refresh_interval_minutes),
        "request_timeout_seconds": config.request_timeout_seconds,
        "user_agent": config.user_agent,
        "document_cache_max_bytes": max(0, config.document_cache_max_bytes),
        "data_dir": config.data_dir,
    }


def _safe_get(data: dict, key: str, default: Any, expected_type: type) -> Any:
    """Safely get a value from dict with type validation.

    Returns the default if key is missing or value has wrong type.
    """
    value = data.get(key, default)
    if not isinstance(value, expected_type) or (
        expected_type is int and isinstance(value, bool)
    ):
        return default
    return value


def _coerce_max_results(value: Any) -> int:
    """Validate and clamp the configured page size."""
    if not isinstance(value, int) or isinstance(value, bool):
        return DEFAULT_MAX_RESULTS
    return max(1, min(value, MAX_RESULTS_LIMIT))


def _parse_categories(data: dict[str, Any]) -> list[str]:
    raw = data.get("categories")
    if not isinstance(raw, list):
        return list(DEFAULT_CATEGORIES)
    return list(dict.fromkeys(c.strip() for c in raw if isinstance(c, str) and c.strip()))


def _dict_to_config(data: dict[str, Any]) -> SyncConfig:
    """Deserialize a dictionary to SyncConfig with type validation."""
    interval = _safe_get(data, "refresh_interval_minutes", 15, int)
    cache_cap = _safe_get(
        data, "document_cache_max_bytes", DEFAULT_DOCUMENT_CACHE_MAX_BYTES, int
    )
    timeout = _safe_get(data, "request_timeout_seconds", ARXIV_API_TIMEOUT, int)
    return SyncConfig(
        categories=_parse_categories(data),
        keywords=_safe_get(data, "keywords", "", str),
        max_results=_coerce_max_results(data.get("max_results", DEFAULT_MAX_RESULTS)),
        refresh_interval_minutes=max(1, interval),
        request_timeout_seconds=timeout if timeout > 0 else ARXIV_API_TIMEOUT,
        user_agent=_safe_get(data, "user_agent", ARXIV_API_USER_AGENT, str)
        or ARXIV_API_USER_AGENT,
        document_cache_max_bytes=max(0, cache_cap),
        data_dir=_safe_get(data, "data_dir", "", str),
        version=_safe_get(data, "version", 1, int),
    )


def load_config(config_path: Path | None = None) -> SyncConfig:
    """Load configuration from disk.

    Returns default config if file doesn't exist or is corrupted.
    Logs specific errors to help diagnose config issues.
    """
    path = config_path or get_config_path()

    if not path.exists():
        return SyncConfig()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            logger.warning("Config file is not a JSON object, using defaults")
            return SyncConfig()
        return _dict_to_config(data)
    except json.JSONDecodeError as e:
        logger.warning("Config file has invalid JSON, using defaults: %s", e)
        return SyncConfig()
    except OSError as e:
        logger.warning("Could not read config file, using defaults: %s", e)
        return SyncConfig()


def save_config(config: SyncConfig, config_path: Path | None = None) -> bool:
    """Save configuration to disk atomically.

    Uses write-to-tempfile + os.replace() so an interrupted write never
    leaves a truncated config behind. Returns True on success.
    """
    path = config_path or get_config_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        json_str = json.dumps(_config_to_dict(config), indent=2, ensure_ascii=False)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=".config-")
        closed = False
        try:
            os.write(fd, json_str.encode("utf-8"))
            os.close(fd)
            closed = True
            os.replace(tmp_path, path)
        except BaseException:
            if not closed:
                os.close(fd)
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        return True
    except OSError as e:
        logger.error("Failed to save config: %s", e)
        return False


__all__ = [
    "CONFIG_APP_NAME",
    "CONFIG_FILENAME",
    "DEFAULT_DOCUMENT_CACHE_MAX_BYTES",
    "SyncConfig",
    "get_config_path",
    "load_config",
    "save_config",
]
