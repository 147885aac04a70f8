"""CLI fixtures: isolate every command from the user's real config and credentials."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run in an empty tmp dir with a throwaway global config path and no TRAWL_* env."""
    global_cfg = tmp_path / "home" / ".trawl" / "config.yaml"
    monkeypatch.setattr("trawl.config._GLOBAL_CONFIG_PATH", global_cfg)
    for name in (
        "TRAWL_DB",
        "TRAWL_TRACKER_URL",
        "TRAWL_CHAT_URL",
        "TRAWL_TRACKER_COOKIE",
        "TRAWL_TRACKER_USER",
        "TRAWL_TRACKER_TOKEN",
        "TRAWL_CHAT_EMAIL",
        "TRAWL_CHAT_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return global_cfg
