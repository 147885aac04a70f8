"""Tests for the tracker/chat HTTP clients: status mapping, pagination params, credentials."""

from __future__ import annotations

import base64
import json
import socket
from io import BytesIO
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlparse
from unittest.mock import MagicMock

import pytest

from trawl.errors import AuthExpiredError, FetchError, TransientFetchError
from trawl.ingest.client import (
    ChatClient,
    TrackerClient,
    read_chat_credentials,
    read_cookie_file,
)


def _response(payload) -> MagicMock:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    resp = MagicMock()
    resp.read.return_value = body
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


def _opener(*responses) -> MagicMock:
    return MagicMock(side_effect=list(responses))


def _http_error(code: int, body: bytes = b"denied") -> HTTPError:
    return HTTPError("https://x", code, "error", hdrs={}, fp=BytesIO(body))


def _tracker(opener, **kwargs) -> TrackerClient:
    return TrackerClient(
        "https://jira.example.org/",
        jql="project=FHIR ORDER BY key ASC",
        fields=["summary", "status"],
        cookie=kwargs.pop("cookie", "JSESSIONID=abc"),
        urlopen_impl=opener,
        **kwargs,
    )


def _chat(opener) -> ChatClient:
    return ChatClient("https://chat.example.org", email="me@x", api_key="k", urlopen_impl=opener)


def _sent_request(opener: MagicMock):
    return opener.call_args[0][0]


def _query(request) -> dict[str, list[str]]:
    return parse_qs(urlparse(request.full_url).query)


# ------------------------------------------------------------------
# Tracker
# ------------------------------------------------------------------


def test_tracker_fetch_batch_parses_page():
    opener = _opener(_response({"startAt": 0, "maxResults": 2, "total": 5, "issues": [{"key": "FHIR-1"}]}))
    batch = _tracker(opener).fetch_batch(0, 2)
    assert batch.records == [{"key": "FHIR-1"}]
    assert batch.total == 5


def test_tracker_sends_offset_and_fields():
    opener = _opener(_response({"total": 0, "issues": []}))
    _tracker(opener).fetch_batch(200, 100)
    request = _sent_request(opener)
    assert request.full_url.startswith("https://jira.example.org/rest/api/2/search?")
    q = _query(request)
    assert q["startAt"] == ["200"]
    assert q["maxResults"] == ["100"]
    assert q["fields"] == ["summary,status"]
    assert q["jql"] == ["project=FHIR ORDER BY key ASC"]


def test_tracker_sends_cookie():
    opener = _opener(_response({"issues": []}))
    _tracker(opener, cookie=" JSESSIONID=abc \n").fetch_batch(0, 1)
    assert _sent_request(opener).get_header("Cookie") == "JSESSIONID=abc"


def test_tracker_basic_auth_without_cookie():
    opener = _opener(_response({"issues": []}))
    _tracker(opener, cookie=None, user="u", token="t").fetch_batch(0, 1)
    expected = "Basic " + base64.b64encode(b"u:t").decode()
    assert _sent_request(opener).get_header("Authorization") == expected


@pytest.mark.parametrize("code", [401, 403])
def test_tracker_auth_errors(code):
    opener = MagicMock(side_effect=_http_error(code))
    with pytest.raises(AuthExpiredError) as exc_info:
        _tracker(opener).fetch_batch(0, 1)
    assert exc_info.value.status == code


@pytest.mark.parametrize("code", [429, 500, 502, 503])
def test_tracker_transient_statuses(code):
    opener = MagicMock(side_effect=_http_error(code))
    with pytest.raises(TransientFetchError):
        _tracker(opener).fetch_batch(0, 1)


@pytest.mark.parametrize("code", [400, 404])
def test_tracker_other_client_errors_are_terminal(code):
    opener = MagicMock(side_effect=_http_error(code, b"bad jql"))
    with pytest.raises(FetchError) as exc_info:
        _tracker(opener).fetch_batch(0, 1)
    assert not isinstance(exc_info.value, (TransientFetchError, AuthExpiredError))
    assert "bad jql" in str(exc_info.value)


@pytest.mark.parametrize("exc", [URLError("unreachable"), socket.timeout("timed out"), ConnectionResetError()])
def test_tracker_network_errors_are_transient(exc):
    opener = MagicMock(side_effect=exc)
    with pytest.raises(TransientFetchError):
        _tracker(opener).fetch_batch(0, 1)


def test_tracker_undecodable_body_is_transient():
    opener = _opener(_response(b"<html>maintenance</html>"))
    with pytest.raises(TransientFetchError):
        _tracker(opener).fetch_batch(0, 1)


def test_tracker_shape_invalid_body_is_transient():
    opener = _opener(_response({"errorMessages": []}))
    with pytest.raises(TransientFetchError):
        _tracker(opener).fetch_batch(0, 1)


# ------------------------------------------------------------------
# Chat
# ------------------------------------------------------------------


def test_chat_list_streams():
    opener = _opener(_response({"result": "success", "streams": [
        {"stream_id": 1, "name": "implementers", "description": "d", "is_web_public": True},
        {"stream_id": 2, "name": "private", "description": None, "is_web_public": False},
        {"name": "broken"},
    ]}))
    streams = _chat(opener).list_streams()
    assert [(s.id, s.name, s.is_web_public) for s in streams] == [
        (1, "implementers", True),
        (2, "private", False),
    ]
    assert streams[1].description == ""
    assert _query(_sent_request(opener))["include_web_public"] == ["true"]


def test_chat_fetch_messages_from_oldest():
    opener = _opener(_response({"messages": [{"id": 1}], "found_newest": False}))
    batch = _chat(opener).fetch_messages(7, "oldest", 1000)
    assert batch.records == [{"id": 1}]
    assert batch.found_newest is False
    q = _query(_sent_request(opener))
    assert q["anchor"] == ["oldest"]
    assert q["num_after"] == ["1000"]
    assert q["num_before"] == ["0"]
    assert "include_anchor" not in q
    assert json.loads(q["narrow"][0]) == [{"operator": "stream", "operand": 7}]


def test_chat_fetch_messages_after_anchor_excludes_anchor():
    opener = _opener(_response({"messages": [], "found_newest": True}))
    batch = _chat(opener).fetch_messages(7, 1234, 1000)
    assert batch.found_newest is True
    q = _query(_sent_request(opener))
    assert q["anchor"] == ["1234"]
    assert q["include_anchor"] == ["false"]


def test_chat_uses_api_prefix_and_basic_auth():
    opener = _opener(_response({"streams": []}))
    _chat(opener).list_streams()
    request = _sent_request(opener)
    assert request.full_url.startswith("https://chat.example.org/api/v1/streams")
    assert request.get_header("Authorization") == "Basic " + base64.b64encode(b"me@x:k").decode()


def test_chat_auth_error():
    opener = MagicMock(side_effect=_http_error(401))
    with pytest.raises(AuthExpiredError):
        _chat(opener).fetch_messages(7, "oldest", 10)


def test_chat_missing_messages_is_transient():
    opener = _opener(_response({"result": "success"}))
    with pytest.raises(TransientFetchError):
        _chat(opener).fetch_messages(7, "oldest", 10)


# ------------------------------------------------------------------
# Credentials
# ------------------------------------------------------------------


def test_read_chat_credentials(tmp_path):
    path = tmp_path / "zuliprc"
    path.write_text("[api]\nemail = me@example.org\nkey = s3cret\nsite=https://chat\n", encoding="utf-8")
    creds = read_chat_credentials(path)
    assert creds.email == "me@example.org"
    assert creds.api_key == "s3cret"


def test_read_chat_credentials_incomplete(tmp_path):
    path = tmp_path / "zuliprc"
    path.write_text("email=me@example.org\n", encoding="utf-8")
    with pytest.raises(ValueError, match="email= and key="):
        read_chat_credentials(path)


def test_read_cookie_file(tmp_path):
    path = tmp_path / "cookies.txt"
    path.write_text("JSESSIONID=abc; atlassian.xsrf.token=def\n", encoding="utf-8")
    assert read_cookie_file(path) == "JSESSIONID=abc; atlassian.xsrf.token=def"


def test_read_cookie_file_empty(tmp_path):
    path = tmp_path / "cookies.txt"
    path.write_text("\n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_cookie_file(path)
