"""Tests for configuration loading."""

from zotesync.config import DEFAULT_PORT, DEV_TOKEN, Config, load_config


def test_defaults():
    config = load_config()

    assert config.server.port == DEFAULT_PORT
    assert config.server.effective_token == DEV_TOKEN
    assert config.sync.effective_token == DEV_TOKEN
    assert config.sync.tables == []


def test_missing_file_uses_defaults(tmp_path):
    config = load_config(tmp_path / "nope.yaml")

    assert config.server.host == Config().server.host


def test_load_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        """
server:
  port: 6000
  token: s3cret
  build_id: "1.2.3"
store:
  db_path: /tmp/zote.db
sync:
  remote_url: http://10.0.0.2:54577
  batch_size: 50
  tables: [notes, moments]
"""
    )

    config = load_config(path)

    assert config.server.port == 6000
    assert config.server.effective_token == "s3cret"
    assert config.server.build_id == "1.2.3"
    assert config.store.db_path == "/tmp/zote.db"
    assert config.sync.remote_url == "http://10.0.0.2:54577"
    assert config.sync.batch_size == 50
    assert config.sync.tables == ["notes", "moments"]
    # One secret per pairing
    assert config.sync.token == "s3cret"


def test_blank_token_falls_back_to_dev(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("server:\n  token: '   '\n")

    config = load_config(path)

    assert config.server.effective_token == DEV_TOKEN


def test_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("server:\n  port: 6000\n")

    monkeypatch.setenv("ZOTESYNC_SERVER_PORT", "7000")
    monkeypatch.setenv("ZOTESYNC_SYNC_TOKEN", "from-env")
    monkeypatch.setenv("ZOTESYNC_DB_PATH", "/data/zote.db")
    monkeypatch.setenv("ZOTESYNC_REMOTE_URL", "http://peer:54577")

    config = load_config(path)

    assert config.server.port == 7000
    assert config.server.token == "from-env"
    assert config.sync.token == "from-env"
    assert config.store.db_path == "/data/zote.db"
    assert config.sync.remote_url == "http://peer:54577"
