"""Stable error taxonomy for relaytrade.

Every failure that crosses a component boundary is a ``RelayTradeError`` with a
machine-readable ``code`` and a ``kind`` that tells the caller how to react:

- ``fatal``: abort startup (unreadable or corrupt seed).
- ``recoverable``: log, skip, continue (one envelope, one relay query).
- ``protocol-mismatch``: an explicit rejected result (request id mismatch).
- ``integrity``: logged loudly, processing continues degraded.
- ``resource-limit``: rejected before any further work (oversized blob).

Per-event decode failures use ``EnvelopeDecodeError`` so listener loops can
catch exactly that and keep going.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


KIND_FATAL = "fatal"
KIND_RECOVERABLE = "recoverable"
KIND_PROTOCOL_MISMATCH = "protocol-mismatch"
KIND_INTEGRITY = "integrity"
KIND_RESOURCE_LIMIT = "resource-limit"
KIND_REJECTED = "rejected"

# Keys / seed
RT_E_SEED_INVALID = "RT_E_SEED_INVALID"
RT_E_SEED_MISSING = "RT_E_SEED_MISSING"
RT_E_INVALID_PUBKEY = "RT_E_INVALID_PUBKEY"
RT_E_INVALID_SECRET = "RT_E_INVALID_SECRET"
RT_E_INVALID_INDEX = "RT_E_INVALID_INDEX"

# Envelope
RT_E_DECODE = "RT_E_DECODE"
RT_E_DECRYPT = "RT_E_DECRYPT"
RT_E_BAD_SIGNATURE = "RT_E_BAD_SIGNATURE"
RT_E_PLAINTEXT_SIZE = "RT_E_PLAINTEXT_SIZE"
RT_E_MESSAGE_FORMAT = "RT_E_MESSAGE_FORMAT"

# Request / response
RT_E_TIMEOUT = "RT_E_TIMEOUT"
RT_E_REQUEST_MISMATCH = "RT_E_REQUEST_MISMATCH"
RT_E_CANT_DO = "RT_E_CANT_DO"
RT_E_UNEXPECTED_ACTION = "RT_E_UNEXPECTED_ACTION"
RT_E_UNEXPECTED_SENDER = "RT_E_UNEXPECTED_SENDER"

# Relay transport
RT_E_RELAY_UNAVAILABLE = "RT_E_RELAY_UNAVAILABLE"
RT_E_PUBLISH_REJECTED = "RT_E_PUBLISH_REJECTED"

# Persistence
RT_E_STORAGE = "RT_E_STORAGE"
RT_E_NOT_FOUND = "RT_E_NOT_FOUND"
RT_E_INDEX_NOT_MONOTONIC = "RT_E_INDEX_NOT_MONOTONIC"
RT_E_DUPLICATE_TRADE_INDEX = "RT_E_DUPLICATE_TRADE_INDEX"
RT_E_TRADE_KEY_MISMATCH = "RT_E_TRADE_KEY_MISMATCH"

# Dispute chat
RT_E_SHARED_KEY_COLLISION = "RT_E_SHARED_KEY_COLLISION"
RT_E_DISPUTE_STATE = "RT_E_DISPUTE_STATE"
RT_E_ADMIN_KEY_MISSING = "RT_E_ADMIN_KEY_MISSING"

# Attachments
RT_E_ATTACHMENT_URL = "RT_E_ATTACHMENT_URL"
RT_E_ATTACHMENT_FETCH = "RT_E_ATTACHMENT_FETCH"
RT_E_ATTACHMENT_TOO_LARGE = "RT_E_ATTACHMENT_TOO_LARGE"
RT_E_ATTACHMENT_DECRYPT = "RT_E_ATTACHMENT_DECRYPT"
RT_E_ATTACHMENT_KEY = "RT_E_ATTACHMENT_KEY"

# Generic
RT_E_BAD_REQUEST = "RT_E_BAD_REQUEST"
RT_E_CONFIG = "RT_E_CONFIG"


@dataclass
class RelayTradeError(Exception):
    """Base relaytrade exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    kind: str = KIND_REJECTED
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "kind": self.kind,
        }
        if self.details:
            d["details"] = self.details
        return d

    @property
    def is_fatal(self) -> bool:
        return self.kind == KIND_FATAL

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class EnvelopeDecodeError(RelayTradeError):
    """A single event could not be unwrapped or parsed.

    Always recoverable: callers log it and move on to the next event.
    """

    code: str = RT_E_DECODE
    message: str = "envelope could not be decoded"
    kind: str = KIND_RECOVERABLE


def relaytrade_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    kind: str = KIND_REJECTED,
    **details: Any,
) -> RelayTradeError:
    return RelayTradeError(code=code, message=message, retryable=retryable, kind=kind, details=details)


def decode_error(code: str, message: str, **details: Any) -> EnvelopeDecodeError:
    return EnvelopeDecodeError(code=code, message=message, details=details)
