import os
from pathlib import Path

from relaytrade.config import DEFAULT_RELAYS, RelayTradeConfig


def _clear(monkeypatch):
    for name in list(os.environ):
        if name.startswith("RELAYTRADE_"):
            monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    _clear(monkeypatch)
    cfg = RelayTradeConfig.from_env()
    assert cfg.relays == DEFAULT_RELAYS
    assert cfg.privacy_mode == "reputation"
    assert not cfg.full_privacy
    assert cfg.chat_window_days == 7
    assert cfg.database_path == cfg.data_dir / "relaytrade.db"


def test_env_overrides_and_clamping(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.setenv("RELAYTRADE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("RELAYTRADE_RELAYS", "wss://a.example, ,wss://b.example")
    monkeypatch.setenv("RELAYTRADE_PRIVACY_MODE", "PRIVACY")
    monkeypatch.setenv("RELAYTRADE_DAEMON_PUBKEY", "ABCDEF")
    monkeypatch.setenv("RELAYTRADE_REQUEST_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("RELAYTRADE_CHAT_WINDOW_DAYS", "1000")
    monkeypatch.setenv("RELAYTRADE_FETCH_TIMEOUT_SECONDS", "not a number")

    cfg = RelayTradeConfig.from_env()

    assert cfg.data_dir == Path(tmp_path)
    assert cfg.downloads_dir == Path(tmp_path) / "downloads"
    assert cfg.relays == ("wss://a.example", "wss://b.example")
    assert cfg.full_privacy
    assert cfg.daemon_pubkey == "abcdef"
    assert cfg.request_timeout_seconds == 1.0
    assert cfg.chat_window_days == 90
    assert cfg.fetch_timeout_seconds == 15.0


def test_unknown_privacy_mode_falls_back(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("RELAYTRADE_PRIVACY_MODE", "stealth")
    assert RelayTradeConfig.from_env().privacy_mode == "reputation"


def test_explicit_db_path(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.setenv("RELAYTRADE_DB_PATH", str(tmp_path / "x.db"))
    assert RelayTradeConfig.from_env().database_path == tmp_path / "x.db"
