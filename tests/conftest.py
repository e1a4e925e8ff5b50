from __future__ import annotations

import io
from email.message import Message
from urllib.error import HTTPError

import pytest

from wpwatch import fetcher
from wpwatch.db import connect_db


class FakeResponse(io.BytesIO):
    def __init__(self, body: bytes, status: int = 200, url: str = "", headers: dict | None = None):
        super().__init__(body)
        self.status = status
        self._url = url
        self.headers = _message(headers or {})

    def getcode(self) -> int:
        return self.status

    def geturl(self) -> str:
        return self._url


def _message(headers: dict) -> Message:
    message = Message()
    for key, value in headers.items():
        message[key] = value
    return message


class FakeWeb:
    """Routes ``urlopen`` calls by URL; unknown URLs answer 404."""

    def __init__(self) -> None:
        self.routes: dict[str, object] = {}
        self.requests: list[tuple[str, str]] = []

    def add(self, url: str, body: str = "", status: int = 200, headers: dict | None = None,
            final_url: str | None = None) -> None:
        self.routes[url] = (status, body.encode("utf-8"), headers or {}, final_url or url)

    def fail(self, url: str, exc: Exception) -> None:
        self.routes[url] = exc

    def urlopen(self, request, timeout=None):
        url = request.full_url
        self.requests.append((request.get_method(), url))
        route = self.routes.get(url)
        if isinstance(route, Exception):
            raise route
        if route is None:
            route = (404, b"not found", {}, url)
        status, body, headers, final_url = route
        if status >= 400:
            raise HTTPError(final_url, status, "error", _message(headers), io.BytesIO(body))
        return FakeResponse(body, status=status, url=final_url, headers=headers)


@pytest.fixture
def fake_web(monkeypatch):
    web = FakeWeb()
    monkeypatch.setattr(fetcher, "urlopen", web.urlopen)
    return web


@pytest.fixture
def conn(tmp_path):
    connection = connect_db(str(tmp_path / "state.sqlite3"))
    yield connection
    connection.close()
