import io
import socket
import threading
import time
from email.message import Message
from http.client import BadStatusLine, IncompleteRead
from urllib.error import HTTPError, URLError

import pytest

from wpwatch import fetcher
from wpwatch.fetcher import FetchError, fetch_head, fetch_text


def test_fetch_text_returns_body_headers_and_final_url(fake_web):
    fake_web.add(
        "https://example.com/",
        "<html>héllo</html>",
        headers={"Content-Type": "text/html; charset=utf-8", "Server": "nginx"},
        final_url="https://www.example.com/",
    )
    result = fetch_text("https://example.com/", timeout_seconds=5, user_agent="test")
    assert result.ok is True
    assert result.status == 200
    assert result.final_url == "https://www.example.com/"
    assert result.body == "<html>héllo</html>"
    assert result.headers["server"] == "nginx"
    assert result.ttfb_ms is not None


def test_http_error_status_is_returned_not_raised(fake_web):
    fake_web.add("https://example.com/missing", "gone", status=404)
    result = fetch_text("https://example.com/missing", timeout_seconds=5, user_agent="test", retries=3)
    assert result.ok is False
    assert result.status == 404
    assert result.body == "gone"
    assert len(fake_web.requests) == 1


def test_network_failure_retries_then_raises(fake_web, monkeypatch):
    sleeps = []
    monkeypatch.setattr(fetcher.time, "sleep", sleeps.append)
    fake_web.fail("https://example.com/", URLError("connection refused"))
    with pytest.raises(FetchError) as excinfo:
        fetch_text("https://example.com/", timeout_seconds=5, user_agent="test", retries=2)
    assert "connection refused" in str(excinfo.value)
    assert len(fake_web.requests) == 3
    assert sleeps == [fetcher.RETRY_DELAY_SECONDS, fetcher.RETRY_DELAY_SECONDS]


def test_retry_recovers_after_transient_timeout(fake_web, monkeypatch):
    fake_web.add("https://example.com/", "ok")
    calls = []

    def flaky_urlopen(request, timeout=None):
        calls.append(request.full_url)
        if len(calls) == 1:
            raise socket.timeout("timed out")
        return fake_web.urlopen(request, timeout)

    monkeypatch.setattr(fetcher, "urlopen", flaky_urlopen)
    monkeypatch.setattr(fetcher.time, "sleep", lambda _: None)
    result = fetch_text("https://example.com/", timeout_seconds=5, user_agent="test", retries=1)
    assert result.body == "ok"
    assert len(calls) == 2


def test_body_is_capped_at_max_bytes(fake_web):
    fake_web.add("https://example.com/big", "x" * 5000)
    result = fetch_text("https://example.com/big", timeout_seconds=5, user_agent="test", max_bytes=1000)
    assert len(result.body) == 1000


def test_fetch_head_never_retries(fake_web):
    fake_web.fail("https://example.com/wp-login.php", URLError("reset"))
    with pytest.raises(FetchError):
        fetch_head("https://example.com/wp-login.php", timeout_seconds=5, user_agent="test")
    assert fake_web.requests == [("HEAD", "https://example.com/wp-login.php")]


def test_fetch_head_reports_status(fake_web):
    fake_web.add("https://example.com/xmlrpc.php", status=405)
    result = fetch_head("https://example.com/xmlrpc.php", timeout_seconds=5, user_agent="test")
    assert result.status == 405
    assert result.body == ""


def test_malformed_response_is_retried_then_raised_as_fetch_error(fake_web, monkeypatch):
    monkeypatch.setattr(fetcher.time, "sleep", lambda _: None)
    fake_web.fail("https://example.com/", BadStatusLine("garbage"))
    with pytest.raises(FetchError):
        fetch_text("https://example.com/", timeout_seconds=5, user_agent="test", retries=1)
    assert len(fake_web.requests) == 2


def test_fetch_head_wraps_protocol_errors(fake_web):
    fake_web.fail("https://example.com/wp-login.php", IncompleteRead(b"par"))
    with pytest.raises(FetchError):
        fetch_head("https://example.com/wp-login.php", timeout_seconds=5, user_agent="test")


def _trickle_server(total_bytes: int, pause_seconds: float) -> socket.socket:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)

    def serve() -> None:
        conn, _ = listener.accept()
        with conn:
            conn.recv(65536)
            conn.sendall(
                b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\n"
                + f"Content-Length: {total_bytes}\r\n\r\n".encode("ascii")
            )
            try:
                for _ in range(total_bytes):
                    conn.sendall(b"x")
                    time.sleep(pause_seconds)
            except OSError:
                pass

    threading.Thread(target=serve, daemon=True).start()
    return listener


def test_slow_body_is_cut_off_at_the_deadline(monkeypatch):
    monkeypatch.setenv("no_proxy", "*")
    monkeypatch.setenv("NO_PROXY", "*")
    listener = _trickle_server(total_bytes=40, pause_seconds=0.2)
    port = listener.getsockname()[1]
    started = time.monotonic()
    try:
        with pytest.raises(FetchError):
            fetch_text(f"http://127.0.0.1:{port}/", timeout_seconds=1, user_agent="test", retries=0)
        elapsed = time.monotonic() - started
    finally:
        listener.close()
    assert elapsed < 2.5


def test_error_response_body_is_closed(monkeypatch):
    body = io.BytesIO(b"gone")

    def not_found(request, timeout=None):
        raise HTTPError(request.full_url, 410, "Gone", Message(), body)

    monkeypatch.setattr(fetcher, "urlopen", not_found)
    result = fetch_text("https://example.com/old", timeout_seconds=5, user_agent="test")
    assert result.status == 410
    assert result.body == "gone"
    assert body.closed
