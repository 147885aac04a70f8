"""trawl configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (TRAWL_DB, TRAWL_TRACKER_URL, TRAWL_CHAT_URL)
  3. Per-project trawl.yaml  (current directory)
  4. Global ~/.trawl/config.yaml  (no credentials)
  5. Hardcoded defaults

Credentials (session cookies, API keys) never live in the global config; they
come from TRAWL_* environment variables or credential files named on the
command line. All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from trawl.transform.transformer import (
    DEFAULT_ISSUE_TABLES,
    DEFAULT_MESSAGE_TABLES,
    TransformTables,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".trawl"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "trawl.yaml"

# Fields that suggest a credential; forbidden in global config.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential"
    r"|cookie",
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(["database", "tracker", "chat", "fetch", "search"])

# Fields requested from the tracker search API.
DEFAULT_TRACKER_FIELDS: tuple[str, ...] = (
    "key", "summary", "description", "issuetype", "status", "resolution",
    "priority", "created", "updated", "resolutiondate",
    "reporter", "assignee", "labels", "components", "comment", "issuelinks",
    "customfield_11302", "customfield_11808", "customfield_11300",
    "customfield_11400", "customfield_11807", "customfield_10618",
    "customfield_10510", "customfield_10511", "customfield_10512",
    "customfield_10525", "customfield_10612", "customfield_11301",
    "customfield_10518", "customfield_10702", "customfield_10704",
    "customfield_11810",
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class TrackerCfg:
    """Issue tracker source (trawl.yaml: tracker:)."""

    base_url: str = "https://jira.hl7.org"
    jql: str = "project=FHIR ORDER BY key ASC"
    fields: list[str] = field(default_factory=lambda: list(DEFAULT_TRACKER_FIELDS))
    batch_size: int = 100
    delay: float = 0.15
    renames: dict[str, str] = field(default_factory=dict)
    exclude: list[str] = field(default_factory=list)
    duplicate_relation: str = "duplicates"


@dataclass
class ChatCfg:
    """Chat source (trawl.yaml: chat:).

    Attributes:
        public_only: Mirror web-public streams only.
        streams: Restrict ingestion to these stream names (empty = all).
    """

    base_url: str = "https://chat.fhir.org"
    batch_size: int = 1000
    delay: float = 0.1
    public_only: bool = True
    streams: list[str] = field(default_factory=list)
    renames: dict[str, str] = field(default_factory=dict)
    exclude: list[str] = field(default_factory=list)


@dataclass
class FetchCfg:
    """Retry policy shared by both sources (trawl.yaml: fetch:)."""

    backoff_initial: float = 2.0
    backoff_max: float = 60.0
    timeout: float = 30.0


@dataclass
class SearchCfg:
    """Query defaults (trawl.yaml: search:)."""

    default_limit: int = 20


@dataclass
class TrawlConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: str = ".trawl.db"
    tracker: TrackerCfg = field(default_factory=TrackerCfg)
    chat: ChatCfg = field(default_factory=ChatCfg)
    fetch: FetchCfg = field(default_factory=FetchCfg)
    search: SearchCfg = field(default_factory=SearchCfg)

    def issue_tables(self) -> TransformTables:
        """Default issue field tables with this config's renames/exclusions applied."""
        return DEFAULT_ISSUE_TABLES.with_overrides(self.tracker.renames, set(self.tracker.exclude))

    def message_tables(self) -> TransformTables:
        return DEFAULT_MESSAGE_TABLES.with_overrides(self.chat.renames, set(self.chat.exclude))


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any credential-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  Credentials must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export TRAWL_{str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' (ignored).",
                UserWarning,
                stacklevel=4,
            )


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be > 0, got {value}")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any]) -> TrawlConfig:
    """Build a *TrawlConfig* from a merged raw YAML dict."""
    cfg = TrawlConfig()

    if "database" in data:
        cfg.database = str(data["database"])

    if "tracker" in data:
        t = data["tracker"] or {}
        d = cfg.tracker
        cfg.tracker = TrackerCfg(
            base_url=str(t.get("base_url", d.base_url)).rstrip("/"),
            jql=str(t.get("jql", d.jql)),
            fields=[str(f) for f in t.get("fields", d.fields)],
            batch_size=int(t.get("batch_size", d.batch_size)),
            delay=float(t.get("delay", d.delay)),
            renames={str(k): str(v) for k, v in (t.get("renames") or {}).items()},
            exclude=[str(x) for x in t.get("exclude") or []],
            duplicate_relation=str(t.get("duplicate_relation", d.duplicate_relation)),
        )

    if "chat" in data:
        c = data["chat"] or {}
        d = cfg.chat
        cfg.chat = ChatCfg(
            base_url=str(c.get("base_url", d.base_url)).rstrip("/"),
            batch_size=int(c.get("batch_size", d.batch_size)),
            delay=float(c.get("delay", d.delay)),
            public_only=bool(c.get("public_only", d.public_only)),
            streams=[str(s) for s in c.get("streams") or []],
            renames={str(k): str(v) for k, v in (c.get("renames") or {}).items()},
            exclude=[str(x) for x in c.get("exclude") or []],
        )

    if "fetch" in data:
        f = data["fetch"] or {}
        cfg.fetch = FetchCfg(
            backoff_initial=float(f.get("backoff_initial", cfg.fetch.backoff_initial)),
            backoff_max=float(f.get("backoff_max", cfg.fetch.backoff_max)),
            timeout=float(f.get("timeout", cfg.fetch.timeout)),
        )

    if "search" in data:
        s = data["search"] or {}
        cfg.search = SearchCfg(
            default_limit=int(s.get("default_limit", cfg.search.default_limit)),
        )

    _require_positive("tracker.batch_size", cfg.tracker.batch_size)
    _require_positive("chat.batch_size", cfg.chat.batch_size)
    _require_positive("fetch.backoff_initial", cfg.fetch.backoff_initial)
    _require_positive("search.default_limit", cfg.search.default_limit)
    if cfg.fetch.backoff_max < cfg.fetch.backoff_initial:
        raise ConfigError("fetch.backoff_max must be >= fetch.backoff_initial")

    return cfg


def _apply_env_overrides(cfg: TrawlConfig) -> TrawlConfig:
    """Apply TRAWL_* environment variable overrides (layer 2)."""
    if db := os.environ.get("TRAWL_DB"):
        cfg.database = db
    if url := os.environ.get("TRAWL_TRACKER_URL"):
        cfg.tracker.base_url = url.rstrip("/")
    if url := os.environ.get("TRAWL_CHAT_URL"):
        cfg.chat.base_url = url.rstrip("/")
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> TrawlConfig:
    """Load and return a merged *TrawlConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *trawl.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains credential-like fields, or a
            numeric setting is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)
    return _apply_env_overrides(cfg)


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.trawl/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# trawl global configuration: server defaults only.\n"
            "# NEVER store cookies or API keys here. Use environment variables:\n"
            "#   export TRAWL_TRACKER_COOKIE='JSESSIONID=...'\n"
            "#   export TRAWL_CHAT_EMAIL=you@example.org TRAWL_CHAT_API_KEY=...\n"
            "\n"
            "tracker:\n"
            f"  base_url: {TrackerCfg.base_url}\n"
            "\n"
            "chat:\n"
            f"  base_url: {ChatCfg.base_url}\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
