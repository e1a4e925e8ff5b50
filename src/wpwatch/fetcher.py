from __future__ import annotations

import re
import time
from http.client import HTTPException
from dataclasses import dataclass, field
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

DEFAULT_MAX_BYTES = 2 * 1024 * 1024
# failures that mean the exchange itself broke, as opposed to an HTTP error status
_NETWORK_ERRORS = (URLError, OSError, HTTPException, ValueError)
RETRY_DELAY_SECONDS = 0.15
_CHUNK_SIZE = 64 * 1024
_CHARSET_RE = re.compile(r"charset=[\"']?([\w.:-]+)", re.IGNORECASE)


class FetchError(Exception):
    """Network-level failure after all attempts were used."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"fetch failed for {url}: {message}")
        self.url = url


@dataclass(frozen=True)
class FetchResult:
    ok: bool
    status: int
    final_url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    ttfb_ms: int | None = None


def fetch_text(
    url: str,
    *,
    timeout_seconds: float,
    user_agent: str,
    retries: int = 1,
    retry_delay_seconds: float = RETRY_DELAY_SECONDS,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> FetchResult:
    """GET ``url`` following redirects.

    HTTP error statuses come back as a normal result with ``ok=False``. Only
    failures of the exchange itself (DNS, connect, reset, timeout, a malformed
    response) are retried, ``retries`` extra times with a fixed delay, before
    the last one is raised as :class:`FetchError`. The body read of each
    attempt stops at ``timeout_seconds`` however slowly the server sends.
    """
    headers = {
        "User-Agent": user_agent,
        "Accept": "text/html,application/json;q=0.9,*/*;q=0.8",
    }
    last_error: Exception | None = None
    for attempt in range(max(0, retries) + 1):
        try:
            return _request(url, "GET", headers, timeout_seconds, max_bytes)
        except _NETWORK_ERRORS as exc:
            last_error = exc
            if attempt < retries:
                time.sleep(retry_delay_seconds)
    raise FetchError(url, _describe(last_error))


def fetch_head(url: str, *, timeout_seconds: float, user_agent: str) -> FetchResult:
    headers = {"User-Agent": user_agent, "Accept": "*/*"}
    try:
        return _request(url, "HEAD", headers, timeout_seconds, 0)
    except _NETWORK_ERRORS as exc:
        raise FetchError(url, _describe(exc)) from exc


def _request(
    url: str,
    method: str,
    headers: dict[str, str],
    timeout_seconds: float,
    max_bytes: int,
) -> FetchResult:
    started = time.monotonic()
    deadline = started + timeout_seconds
    request = Request(url, headers=headers, method=method)
    try:
        response = urlopen(request, timeout=timeout_seconds)
    except HTTPError as exc:
        ttfb_ms = int(round((time.monotonic() - started) * 1000))
        with exc:
            response_headers = _headers_to_dict(exc.headers)
            body = _read_body(exc, deadline, max_bytes) if max_bytes else b""
            final_url = exc.geturl() or url
        return FetchResult(
            ok=False,
            status=exc.code,
            final_url=final_url,
            headers=response_headers,
            body=_decode(body, response_headers),
            ttfb_ms=ttfb_ms,
        )
    ttfb_ms = int(round((time.monotonic() - started) * 1000))
    with response:
        status = response.getcode() or 0
        response_headers = _headers_to_dict(response.headers)
        body = _read_body(response, deadline, max_bytes) if max_bytes else b""
        final_url = response.geturl() or url
    return FetchResult(
        ok=200 <= status < 300,
        status=status,
        final_url=final_url,
        headers=response_headers,
        body=_decode(body, response_headers),
        ttfb_ms=ttfb_ms,
    )


def _read_body(response: Any, deadline: float, max_bytes: int) -> bytes:
    """Read up to ``max_bytes`` before ``deadline``, whatever pace the server sends at.

    The socket timeout is shrunk to the time left before every read and
    ``read1`` returns whatever has arrived, so a slow trickle cannot stretch
    the attempt past its deadline.
    """
    sock = _socket_of(response)
    read = getattr(response, "read1", response.read)
    chunks: list[bytes] = []
    total = 0
    while total < max_bytes:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("read deadline exceeded")
        if sock is not None and sock.fileno() != -1:
            sock.settimeout(remaining)
        chunk = read(min(_CHUNK_SIZE, max_bytes - total))
        if not chunk:
            break
        chunks.append(chunk)
        total += len(chunk)
    return b"".join(chunks)


def _socket_of(stream: Any) -> Any:
    # HTTPError -> HTTPResponse -> BufferedReader -> SocketIO._sock
    for _ in range(3):
        sock = getattr(getattr(stream, "raw", None), "_sock", None)
        if sock is not None:
            return sock
        stream = getattr(stream, "fp", None)
        if stream is None:
            return None
    return None


def _headers_to_dict(headers: Any) -> dict[str, str]:
    if headers is None:
        return {}
    result: dict[str, str] = {}
    for key, value in headers.items():
        name = key.lower()
        # repeated headers are joined the way browsers expose them
        result[name] = f"{result[name]}, {value}" if name in result else value
    return result


def _decode(body: bytes, headers: dict[str, str]) -> str:
    charset = "utf-8"
    match = _CHARSET_RE.search(headers.get("content-type", ""))
    if match:
        charset = match.group(1)
    try:
        return body.decode(charset, errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def _describe(exc: Exception | None) -> str:
    if exc is None:
        return "unknown error"
    if isinstance(exc, URLError) and not isinstance(exc, HTTPError):
        return str(exc.reason)
    return str(exc) or exc.__class__.__name__
