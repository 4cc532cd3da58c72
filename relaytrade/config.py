"""Runtime configuration for relaytrade.

All knobs come from the environment so the engine can be embedded without a
config file format of its own.

Env:
- RELAYTRADE_DATA_DIR (default: ~/.relaytrade)
- RELAYTRADE_DB_PATH (default: <data_dir>/relaytrade.db)
- RELAYTRADE_RELAYS (comma separated, default: wss://relay.mostro.network)
- RELAYTRADE_DAEMON_PUBKEY (hex, the trade daemon's public key)
- RELAYTRADE_ADMIN_SECRET (hex, only for dispute solvers)
- RELAYTRADE_PRIVACY_MODE (reputation|privacy, default: reputation)
- RELAYTRADE_REQUEST_TIMEOUT_SECONDS (default: 15)
- RELAYTRADE_FETCH_TIMEOUT_SECONDS (default: 15)
- RELAYTRADE_LISTEN_INTERVAL_SECONDS (default: 5)
- RELAYTRADE_CHAT_POLL_SECONDS (default: 5)
- RELAYTRADE_LIST_REFRESH_SECONDS (default: 10)
- RELAYTRADE_CHAT_WINDOW_DAYS (default: 7)
- RELAYTRADE_MAX_ATTACHMENT_BYTES (default: 25 MiB)
- RELAYTRADE_LOG_LEVEL (default: INFO)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple


DEFAULT_RELAYS: Tuple[str, ...] = ("wss://relay.mostro.network",)

PRIVACY_MODE_REPUTATION = "reputation"
PRIVACY_MODE_PRIVACY = "privacy"


def _env_float(name: str, default: float, lo: float, hi: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        value = float(raw) if raw else float(default)
    except ValueError:
        value = float(default)
    return max(lo, min(value, hi))


def _env_int(name: str, default: int, lo: int, hi: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(lo, min(value, hi))


def default_data_dir() -> Path:
    return Path.home() / ".relaytrade"


@dataclass(frozen=True)
class RelayTradeConfig:
    data_dir: Path = field(default_factory=default_data_dir)
    db_path: Optional[Path] = None
    relays: Tuple[str, ...] = DEFAULT_RELAYS
    daemon_pubkey: str = ""
    admin_secret: str = ""
    privacy_mode: str = PRIVACY_MODE_REPUTATION
    request_timeout_seconds: float = 15.0
    fetch_timeout_seconds: float = 15.0
    listen_interval_seconds: float = 5.0
    chat_poll_seconds: float = 5.0
    list_refresh_seconds: float = 10.0
    chat_window_days: int = 7
    max_attachment_bytes: int = 25 * 1024 * 1024
    log_level: str = "INFO"

    @property
    def database_path(self) -> Path:
        return self.db_path or (self.data_dir / "relaytrade.db")

    @property
    def downloads_dir(self) -> Path:
        return self.data_dir / "downloads"

    @property
    def full_privacy(self) -> bool:
        return self.privacy_mode == PRIVACY_MODE_PRIVACY

    @classmethod
    def from_env(cls) -> "RelayTradeConfig":
        data_dir_raw = os.getenv("RELAYTRADE_DATA_DIR", "").strip()
        data_dir = Path(data_dir_raw).expanduser() if data_dir_raw else default_data_dir()
        db_raw = os.getenv("RELAYTRADE_DB_PATH", "").strip()

        relays = tuple(
            r.strip() for r in os.getenv("RELAYTRADE_RELAYS", "").split(",") if r.strip()
        ) or DEFAULT_RELAYS

        mode = os.getenv("RELAYTRADE_PRIVACY_MODE", PRIVACY_MODE_REPUTATION).strip().lower()
        if mode not in (PRIVACY_MODE_REPUTATION, PRIVACY_MODE_PRIVACY):
            mode = PRIVACY_MODE_REPUTATION

        return cls(
            data_dir=data_dir,
            db_path=Path(db_raw).expanduser() if db_raw else None,
            relays=relays,
            daemon_pubkey=os.getenv("RELAYTRADE_DAEMON_PUBKEY", "").strip().lower(),
            admin_secret=os.getenv("RELAYTRADE_ADMIN_SECRET", "").strip(),
            privacy_mode=mode,
            # Clamp to sensible bounds
            request_timeout_seconds=_env_float("RELAYTRADE_REQUEST_TIMEOUT_SECONDS", 15.0, 1.0, 300.0),
            fetch_timeout_seconds=_env_float("RELAYTRADE_FETCH_TIMEOUT_SECONDS", 15.0, 1.0, 300.0),
            listen_interval_seconds=_env_float("RELAYTRADE_LISTEN_INTERVAL_SECONDS", 5.0, 0.5, 3600.0),
            chat_poll_seconds=_env_float("RELAYTRADE_CHAT_POLL_SECONDS", 5.0, 0.5, 3600.0),
            list_refresh_seconds=_env_float("RELAYTRADE_LIST_REFRESH_SECONDS", 10.0, 1.0, 3600.0),
            chat_window_days=_env_int("RELAYTRADE_CHAT_WINDOW_DAYS", 7, 1, 90),
            max_attachment_bytes=_env_int(
                "RELAYTRADE_MAX_ATTACHMENT_BYTES", 25 * 1024 * 1024, 1024, 512 * 1024 * 1024
            ),
            log_level=(os.getenv("RELAYTRADE_LOG_LEVEL", "INFO").strip().upper() or "INFO"),
        )
