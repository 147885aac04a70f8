"""Tests for trawl rich error messages."""

from __future__ import annotations

import pytest

from trawl.cli.errors import (
    err_auth_expired,
    err_bad_filter,
    err_config,
    err_fetch_failed,
    err_malformed_record,
    err_no_chat_credentials,
    err_no_db,
    err_no_tracker_credentials,
    err_not_found,
    err_query_syntax,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _has_what_and_action(msg: str) -> bool:
    """Every error must contain a cause AND an actionable instruction."""
    lower = msg.lower()
    return any(kw in lower for kw in ["run:", "set:", "use ", "export ", "pass", "trawl ", "check "])


# ---------------------------------------------------------------------------
# Every message is actionable
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "msg",
    [
        err_no_tracker_credentials(),
        err_no_chat_credentials(),
        err_auth_expired("issues", 400, "tracker-ingest"),
        err_fetch_failed("HTTP 400"),
        err_malformed_record("missing key", "tracker-ingest"),
        err_no_db(".trawl.db"),
        err_query_syntax("unterminated string"),
        err_bad_filter("status"),
        err_not_found("Issue FHIR-1", "Run:  trawl search"),
    ],
)
def test_error_is_actionable(msg: str) -> None:
    assert _has_what_and_action(msg)


def test_auth_expired_names_position_and_resume_command() -> None:
    msg = err_auth_expired("stream:implementers", 12345, "chat-ingest")
    assert "stream:implementers" in msg
    assert "12345" in msg
    assert "trawl chat-ingest --resume" in msg


def test_auth_expired_without_partition() -> None:
    msg = err_auth_expired(None, 0, "tracker-ingest")
    assert "while fetching" not in msg


def test_no_tracker_credentials_mentions_env_vars() -> None:
    msg = err_no_tracker_credentials()
    assert "TRAWL_TRACKER_COOKIE" in msg
    assert "--cookie-file" in msg


def test_no_chat_credentials_mentions_cred_file() -> None:
    msg = err_no_chat_credentials()
    assert "--cred-file" in msg
    assert "TRAWL_CHAT_API_KEY" in msg


def test_no_db_includes_path() -> None:
    assert "/tmp/mirror.db" in err_no_db("/tmp/mirror.db")


def test_bad_filter_shows_syntax() -> None:
    msg = err_bad_filter("oops")
    assert "oops" in msg
    assert "field==exact" in msg


def test_config_error_carries_message() -> None:
    assert "forbidden key 'cookie'" in err_config("forbidden key 'cookie'")


def test_not_found_is_warning_style() -> None:
    assert err_not_found("x", "y").startswith("[yellow]")
