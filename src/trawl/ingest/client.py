"""HTTP clients for the issue tracker (Jira) and chat (Zulip) APIs.

Both clients speak JSON over urllib and map failures onto the fetch error
taxonomy:

  401 / 403                            AuthExpiredError     (stop the run)
  429 / 5xx / network / timeout        TransientFetchError  (retry same position)
  undecodable or shape-invalid JSON    TransientFetchError
  any other HTTP error                 FetchError           (terminal)

The ``urlopen_impl`` constructor argument lets tests substitute the transport.
"""

from __future__ import annotations

import base64
import json
import logging
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from trawl.db.models import Stream
from trawl.errors import AuthExpiredError, FetchError, TransientFetchError

logger = logging.getLogger(__name__)

_USER_AGENT = "trawl/0.1"
_AUTH_STATUSES = frozenset({401, 403})
_ERROR_SNIPPET = 200


@dataclass
class Batch:
    """One page of raw records as returned by a remote API.

    Attributes:
        records: Raw JSON records, untransformed.
        total: Total records available, when the API reports it (tracker only).
        found_newest: The chat API reached the newest message of the stream.
    """

    records: list[Any] = field(default_factory=list)
    total: int | None = None
    found_newest: bool = False


class ApiClient:
    """JSON-over-HTTP transport shared by the tracker and chat clients."""

    def __init__(
        self,
        base_url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float = 30.0,
        urlopen_impl: Callable[..., Any] = urlopen,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Accept": "application/json", "User-Agent": _USER_AGENT}
        self._headers.update(headers or {})
        self._timeout = timeout
        self._urlopen = urlopen_impl

    def _build_url(self, path: str, query: Mapping[str, Any] | None) -> str:
        url = f"{self._base_url}{path}"
        if not query:
            return url
        qs = urlencode({k: v for k, v in query.items() if v is not None})
        return f"{url}?{qs}" if qs else url

    def get_json(self, path: str, query: Mapping[str, Any] | None = None) -> Any:
        """GET *path* and return the decoded JSON body.

        Raises:
            AuthExpiredError: on 401/403.
            TransientFetchError: on 429, 5xx, network failure, or a bad body.
            FetchError: on any other HTTP error status.
        """
        url = self._build_url(path, query)
        request = Request(url, headers=dict(self._headers))
        try:
            with self._urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
        except HTTPError as exc:
            raise _http_error(exc, url) from exc
        except (URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
            raise TransientFetchError(f"Network error for {url}: {exc}", url=url) from exc

        try:
            return json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransientFetchError(f"Undecodable JSON from {url}: {exc}", url=url) from exc


def _http_error(exc: HTTPError, url: str) -> FetchError:
    try:
        body = (exc.read() or b"").decode("utf-8", errors="replace")
    except OSError:
        body = ""
    message = f"HTTP {exc.code} from {url}"
    if body.strip():
        message += f": {body[:_ERROR_SNIPPET]}"
    if exc.code in _AUTH_STATUSES:
        return AuthExpiredError(message, status=exc.code, url=url)
    if exc.code == 429 or exc.code >= 500:
        return TransientFetchError(message, status=exc.code, url=url)
    return FetchError(message, status=exc.code, url=url)


# ---------------------------------------------------------------------------
# Issue tracker
# ---------------------------------------------------------------------------


class TrackerClient(ApiClient):
    """Jira REST search client (``/rest/api/2/search``, offset pagination).

    Authenticates with a browser session cookie, or with basic auth when
    *user* and *token* are given.
    """

    SEARCH_PATH = "/rest/api/2/search"

    def __init__(
        self,
        base_url: str,
        *,
        jql: str,
        fields: list[str],
        cookie: str | None = None,
        user: str | None = None,
        token: str | None = None,
        timeout: float = 30.0,
        urlopen_impl: Callable[..., Any] = urlopen,
    ) -> None:
        headers: dict[str, str] = {}
        if cookie:
            headers["Cookie"] = cookie.strip()
        elif user and token:
            headers["Authorization"] = _basic_auth(user, token)
        super().__init__(base_url, headers=headers, timeout=timeout, urlopen_impl=urlopen_impl)
        self.jql = jql
        self.fields = list(fields)

    def fetch_batch(self, start_at: int, max_results: int) -> Batch:
        """Fetch up to *max_results* issues starting at offset *start_at*."""
        payload = self.get_json(
            self.SEARCH_PATH,
            {
                "jql": self.jql,
                "startAt": start_at,
                "maxResults": max_results,
                "fields": ",".join(self.fields),
            },
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("issues"), list):
            raise TransientFetchError(
                f"Tracker search response at startAt={start_at} has no 'issues' list",
                url=self._base_url + self.SEARCH_PATH,
            )
        total = payload.get("total")
        return Batch(
            records=payload["issues"],
            total=total if isinstance(total, int) else None,
        )


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatClient(ApiClient):
    """Zulip REST client (``/api/v1``, anchor pagination), basic auth email:api_key."""

    def __init__(
        self,
        base_url: str,
        *,
        email: str,
        api_key: str,
        timeout: float = 30.0,
        urlopen_impl: Callable[..., Any] = urlopen,
    ) -> None:
        super().__init__(
            base_url.rstrip("/") + "/api/v1",
            headers={"Authorization": _basic_auth(email, api_key)},
            timeout=timeout,
            urlopen_impl=urlopen_impl,
        )

    def list_streams(self, *, include_web_public: bool = True) -> list[Stream]:
        payload = self.get_json(
            "/streams", {"include_web_public": "true" if include_web_public else "false"}
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("streams"), list):
            raise TransientFetchError("Chat /streams response has no 'streams' list")
        streams = []
        for raw in payload["streams"]:
            if not isinstance(raw, dict) or not isinstance(raw.get("stream_id"), int):
                logger.warning("Skipping stream entry without an id: %r", raw)
                continue
            streams.append(
                Stream(
                    id=raw["stream_id"],
                    name=str(raw.get("name") or ""),
                    description=str(raw.get("description") or ""),
                    is_web_public=bool(raw.get("is_web_public")),
                )
            )
        return streams

    def fetch_messages(self, stream_id: int, anchor: int | str, num_after: int) -> Batch:
        """Fetch up to *num_after* messages of *stream_id* after *anchor*.

        *anchor* is a message id (exclusive) or the ``"oldest"`` sentinel.
        """
        narrow = json.dumps([{"operator": "stream", "operand": stream_id}])
        payload = self.get_json(
            "/messages",
            {
                "anchor": str(anchor),
                "include_anchor": "false" if isinstance(anchor, int) else None,
                "num_before": 0,
                "num_after": num_after,
                "narrow": narrow,
                "apply_markdown": "true",
            },
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("messages"), list):
            raise TransientFetchError(
                f"Chat /messages response for stream {stream_id} has no 'messages' list"
            )
        return Batch(
            records=payload["messages"],
            found_newest=bool(payload.get("found_newest")),
        )


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatCredentials:
    email: str
    api_key: str


def read_chat_credentials(path: Path) -> ChatCredentials:
    """Parse a zuliprc-style file holding ``email=`` and ``key=`` lines.

    Raises:
        ValueError: If either value is missing.
    """
    email = api_key = ""
    for line in path.read_text(encoding="utf-8").splitlines():
        name, sep, value = line.partition("=")
        if not sep:
            continue
        name, value = name.strip(), value.strip()
        if name == "email":
            email = value
        elif name == "key":
            api_key = value
    if not email or not api_key:
        raise ValueError(f"Credentials file '{path}' must contain email= and key= lines")
    return ChatCredentials(email=email, api_key=api_key)


def read_cookie_file(path: Path) -> str:
    """Return the session cookie header value stored in *path*."""
    cookie = path.read_text(encoding="utf-8").strip()
    if not cookie:
        raise ValueError(f"Cookie file '{path}' is empty")
    return cookie


def _basic_auth(user: str, secret: str) -> str:
    token = base64.b64encode(f"{user}:{secret}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"
