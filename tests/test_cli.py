import json
import logging

import pytest

from wpwatch import cli
from wpwatch.db import connect_db
from wpwatch.models import ComponentRef, ComponentSet
from wpwatch.storage import upsert_watch


@pytest.fixture
def state_db(tmp_path, monkeypatch):
    path = str(tmp_path / "state.sqlite3")
    monkeypatch.setenv("WPW_STATE_DB", path)
    for name in ("WPW_CONFIG", "WPW_FEED_API_KEY", "WPW_BOT_TOKEN", "WPW_ADMIN_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda name: logging.getLogger(name))
    return path


def _output(capsys):
    return json.loads(capsys.readouterr().out)


def test_settings_toggle(state_db, capsys):
    assert cli.main(["settings", "--user-id", "3", "--toggle", "notify_vulns"]) == 0
    body = _output(capsys)
    assert body["user_id"] == 3
    assert body["notify_vulns"] is False


def test_sync_vulns_without_key(state_db, capsys):
    assert cli.main(["sync-vulns"]) == 0
    assert _output(capsys) == {"status": "skipped_no_key"}


def test_watch_list_and_remove(state_db, capsys):
    conn = connect_db(state_db)
    try:
        upsert_watch(conn, 9, 90, "https://example.com", ComponentSet(theme=ComponentRef("astra")))
    finally:
        conn.close()
    assert cli.main(["watch", "list", "--user-id", "9"]) == 0
    listed = _output(capsys)
    assert listed[0]["origin"] == "https://example.com"
    assert listed[0]["theme"] == "astra"

    assert cli.main(["watch", "remove", "https://Example.com/some/page", "--user-id", "9"]) == 0
    assert _output(capsys) == {"removed": True, "origin": "https://example.com"}
    assert cli.main(["watch", "remove", "https://example.com", "--user-id", "9"]) == 2


def test_invalid_config_exits_nonzero(state_db, tmp_path):
    bad = tmp_path / "bad.yml"
    bad.write_text("analysis:\n  concurrency: 0\n", encoding="utf-8")
    assert cli.main(["--config", str(bad), "stats"]) == 1
