"""Signed relay events.

An event id is the SHA-256 of the compact JSON array
``[0, pubkey, created_at, kind, tags, content]``; the signature is a BIP-340
Schnorr signature of the id by ``pubkey``.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .keys import KeyPair, verify_schnorr


KIND_TEXT_NOTE = 1
KIND_SEAL = 13
KIND_PRIVATE_DIRECT_MESSAGE = 14
KIND_GIFT_WRAP = 1059
KIND_ORDER = 38383
KIND_DISPUTE = 38386

# Seal and wrap timestamps are shifted into the past by up to two days.
TIMESTAMP_TWEAK_SECONDS = 2 * 24 * 3600


def now_ts() -> int:
    return int(time.time())


def tweaked_timestamp(now: Optional[int] = None) -> int:
    base = now_ts() if now is None else int(now)
    return base - secrets.randbelow(TIMESTAMP_TWEAK_SECONDS)


def _int_field(data: Dict[str, Any], name: str) -> int:
    value = data[name]
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        return int(value)
    except OverflowError as e:
        raise ValueError(f"{name} is out of range") from e


def _compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


@dataclass
class Event:
    pubkey: str
    created_at: int
    kind: int
    tags: List[List[str]] = field(default_factory=list)
    content: str = ""
    id: str = ""
    sig: str = ""

    def compute_id(self) -> str:
        serialized = _compact([0, self.pubkey, self.created_at, self.kind, self.tags, self.content])
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()

    def verify(self) -> bool:
        if not self.id or self.id != self.compute_id():
            return False
        try:
            sig = bytes.fromhex(self.sig)
        except ValueError:
            return False
        return verify_schnorr(self.pubkey, sig, bytes.fromhex(self.id))

    def tag_values(self, name: str) -> List[str]:
        return [t[1] for t in self.tags if len(t) >= 2 and t[0] == name]

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
        }
        if self.sig:
            d["sig"] = self.sig
        return d

    def to_json(self) -> str:
        return _compact(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Raises ValueError, KeyError or TypeError on anything that is not an event object."""
        if not isinstance(data, dict):
            raise ValueError(f"event must be an object, got {type(data).__name__}")
        tags = data.get("tags", [])
        if not isinstance(tags, list) or not all(isinstance(t, list) for t in tags):
            raise ValueError("event tags must be a list of arrays")
        return cls(
            id=str(data.get("id", "")),
            pubkey=str(data["pubkey"]),
            created_at=_int_field(data, "created_at"),
            kind=_int_field(data, "kind"),
            tags=[[str(v) for v in t] for t in tags],
            content=str(data.get("content", "")),
            sig=str(data.get("sig", "") or ""),
        )

    @classmethod
    def from_json(cls, raw: str) -> "Event":
        return cls.from_dict(json.loads(raw))


def build_unsigned(
    pubkey: str,
    kind: int,
    content: str,
    tags: Optional[List[List[str]]] = None,
    created_at: Optional[int] = None,
) -> Event:
    """An event with its id set but no signature (a rumor)."""
    ev = Event(
        pubkey=pubkey,
        created_at=now_ts() if created_at is None else int(created_at),
        kind=kind,
        tags=list(tags or []),
        content=content,
    )
    ev.id = ev.compute_id()
    return ev


def sign_event(
    keys: KeyPair,
    kind: int,
    content: str,
    tags: Optional[List[List[str]]] = None,
    created_at: Optional[int] = None,
) -> Event:
    ev = build_unsigned(keys.public_key, kind, content, tags, created_at)
    ev.sig = keys.sign_schnorr(bytes.fromhex(ev.id)).hex()
    return ev
