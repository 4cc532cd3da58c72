"""relaytrade: a P2P trade client over relay networks.

Keys are derived from one seed phrase; every request to the trade daemon is a
gift-wrapped envelope from a per-trade key, and trade state is rebuilt from
the relays rather than a local message log. Dispute solvers additionally get
per-party chat channels with plain-text transcripts.

Convenience imports
-------------------
The package avoids import-time side effects. These names are available at
the package root and are loaded lazily:

    from relaytrade import KeyDeriver, EnvelopeCodec, RequestCorrelator
    from relaytrade import RecoveryEngine, DisputeChatSync, RelayTradeError
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version lookup for source checkouts."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.4.0"

__all__ = [
    "__version__",
    "KeyDeriver",
    "KeyPair",
    "EnvelopeCodec",
    "PrivacyMode",
    "RequestCorrelator",
    "RecoveryEngine",
    "TradeMessageListener",
    "DisputeChatSync",
    "TranscriptStore",
    "TradeClient",
    "AdminClient",
    "WebSocketRelayPool",
    "SqliteTradeStore",
    "RelayTradeConfig",
    "RelayTradeError",
]

# name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "KeyDeriver": ("relaytrade.keys", "KeyDeriver"),
    "KeyPair": ("relaytrade.keys", "KeyPair"),
    "EnvelopeCodec": ("relaytrade.envelope", "EnvelopeCodec"),
    "PrivacyMode": ("relaytrade.envelope", "PrivacyMode"),
    "RequestCorrelator": ("relaytrade.correlator", "RequestCorrelator"),
    "RecoveryEngine": ("relaytrade.recovery", "RecoveryEngine"),
    "TradeMessageListener": ("relaytrade.recovery", "TradeMessageListener"),
    "DisputeChatSync": ("relaytrade.chat", "DisputeChatSync"),
    "TranscriptStore": ("relaytrade.transcript", "TranscriptStore"),
    "TradeClient": ("relaytrade.trades", "TradeClient"),
    "AdminClient": ("relaytrade.admin", "AdminClient"),
    "WebSocketRelayPool": ("relaytrade.relay", "WebSocketRelayPool"),
    "SqliteTradeStore": ("relaytrade.storage", "SqliteTradeStore"),
    "RelayTradeConfig": ("relaytrade.config", "RelayTradeConfig"),
    "RelayTradeError": ("relaytrade.errors", "RelayTradeError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'relaytrade' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
