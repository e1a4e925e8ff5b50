import pytest

from wpwatch.config import ConfigError, default_config, load_config


def _write(tmp_path, text):
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_defaults_without_file():
    config = load_config(env={})
    assert config.analysis.cache_ttl_seconds == 600
    assert config.feed.feed_type == "production"
    assert config.watch.recent_days == 30
    assert config.secrets.feed_api_key == ""


def test_yaml_overrides_merge_into_defaults(tmp_path):
    path = _write(tmp_path, "analysis:\n  concurrency: 2\nfeed:\n  feed_type: scanner\n")
    config = load_config(path, env={})
    assert config.analysis.concurrency == 2
    assert config.analysis.max_pending == 100
    assert config.feed.feed_type == "scanner"


def test_config_path_from_env(tmp_path):
    path = _write(tmp_path, "watch:\n  enabled: false\n")
    config = load_config(env={"WPW_CONFIG": path})
    assert config.watch.enabled is False


def test_secrets_and_state_db_come_from_env(tmp_path):
    config = load_config(
        env={
            "WPW_FEED_API_KEY": " key ",
            "WPW_BOT_TOKEN": "bot",
            "WPW_ADMIN_TOKEN": "admin",
            "WPW_STATE_DB": str(tmp_path / "x.sqlite3"),
        }
    )
    assert config.secrets.feed_api_key == "key"
    assert config.secrets.bot_token == "bot"
    assert config.secrets.admin_token == "admin"
    assert config.paths.state_db == str(tmp_path / "x.sqlite3")


@pytest.mark.parametrize(
    "text, fragment",
    [
        ("analysis:\n  bogus: 1\n", "unknown config.analysis.bogus"),
        ("analysis:\n  concurrency: 0\n", "config.analysis.concurrency must be between"),
        ("feed:\n  feed_type: firehose\n", "feed_type must be one of"),
        ("watch:\n  enabled: 'yes'\n", "config.watch.enabled must be a boolean"),
        ("- just\n- a list\n", "must contain a mapping"),
    ],
)
def test_invalid_config_rejected(tmp_path, text, fragment):
    with pytest.raises(ConfigError) as excinfo:
        load_config(_write(tmp_path, text), env={})
    message = str(excinfo.value)
    assert message.startswith("Invalid config")
    assert fragment in message


def test_default_config_accepts_secrets():
    config = default_config(admin_token="t")
    assert config.secrets.admin_token == "t"
    assert config.notifier.telegram_api_base == "https://api.telegram.org"
