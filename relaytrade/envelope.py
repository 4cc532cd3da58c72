"""Three-layer message envelope.

Outgoing protocol messages are wrapped as::

    gift wrap (kind 1059, signed by a one-time key, p-tagged to the recipient)
      └─ seal (kind 13, signed by the identity key or the trade key)
           └─ rumor (unsigned kind 1 by the trade key, content [message, sig])

Reputation mode signs the seal with the identity key and attaches a trade-key
signature of the message inside the rumor. Full-privacy mode uses the trade
key for both and leaves the message signature empty, so nothing links the
trade to a long-lived identity.

Dispute chat uses a lighter two-layer wrap addressed to a shared chat key:
a kind 1 event signed by the author, encrypted from a one-time key to the
shared public key.

Decoding never raises anything but ``EnvelopeDecodeError``; listener loops
rely on that to log and skip noise.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional

from . import nip44
from .errors import (
    EnvelopeDecodeError,
    RelayTradeError,
    RT_E_BAD_SIGNATURE,
    RT_E_DECODE,
    RT_E_MESSAGE_FORMAT,
    decode_error,
)
from .events import (
    KIND_GIFT_WRAP,
    KIND_PRIVATE_DIRECT_MESSAGE,
    KIND_SEAL,
    KIND_TEXT_NOTE,
    Event,
    build_unsigned,
    now_ts,
    sign_event,
    tweaked_timestamp,
)
from .keys import KeyPair, parse_public_key, verify_schnorr
from .protocol import Message


logger = logging.getLogger("relaytrade.envelope")

# Default look-back for direct-message parsing.
DEFAULT_DM_WINDOW_SECONDS = 30 * 60


class PrivacyMode(str, Enum):
    REPUTATION = "reputation"
    FULL_PRIVACY = "privacy"


@dataclass(frozen=True)
class SenderKeys:
    trade: KeyPair
    identity: Optional[KeyPair] = None

    def seal_signer(self, mode: PrivacyMode) -> KeyPair:
        if mode == PrivacyMode.REPUTATION and self.identity is not None:
            return self.identity
        return self.trade


@dataclass(frozen=True)
class DecodedMessage:
    message: Message
    timestamp: int
    sender: str
    event_id: str
    author: str
    signature_valid: Optional[bool] = None


@dataclass(frozen=True)
class ChatEnvelope:
    content: str
    author: str
    timestamp: int
    event_id: str


def _compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _expiration_tags(expiration: Optional[int]) -> List[List[str]]:
    return [["expiration", str(int(expiration))]] if expiration else []


def _rumor_content(message: Message, trade: KeyPair, mode: PrivacyMode) -> str:
    sig = None
    if mode == PrivacyMode.REPUTATION:
        sig = trade.sign_schnorr(message.digest()).hex()
    return _compact([message.to_wire(), sig])


def _parse_rumor_content(content: str, author: str) -> "tuple[Message, Optional[bool]]":
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise decode_error(RT_E_MESSAGE_FORMAT, f"rumor content is not JSON: {e}") from e

    signature: Optional[str] = None
    if isinstance(data, list):
        if len(data) != 2:
            raise decode_error(RT_E_MESSAGE_FORMAT, "rumor content must be [message, signature]")
        body, signature = data[0], data[1]
    else:
        body = data

    try:
        message = Message.from_wire(body)
    except RelayTradeError as e:
        raise decode_error(e.code, e.message, **e.details) from e
    except (KeyError, TypeError, ValueError) as e:
        raise decode_error(RT_E_MESSAGE_FORMAT, f"rumor message is malformed: {e}") from e

    signature_valid: Optional[bool] = None
    if signature:
        digest = hashlib.sha256(_compact(body).encode("utf-8")).digest()
        try:
            signature_valid = verify_schnorr(author, bytes.fromhex(str(signature)), digest)
        except ValueError:
            signature_valid = False
    return message, signature_valid


def _decrypt(payload: str, secret: bytes, remote_public: str) -> str:
    try:
        return nip44.decrypt(payload, secret, remote_public)
    except EnvelopeDecodeError:
        raise
    except RelayTradeError as e:
        raise decode_error(e.code, e.message) from e


def _addressed_elsewhere(event: Event, public_key: str) -> bool:
    recipients = event.tag_values("p")
    return bool(recipients) and public_key not in recipients


class EnvelopeCodec:
    """Builds and opens envelopes.

    ``expiration_seconds`` adds an expiration tag to outgoing wraps so relays
    may drop them once the exchange is stale.
    """

    def __init__(self, expiration_seconds: Optional[int] = None):
        self.expiration_seconds = expiration_seconds

    def _expiration(self) -> Optional[int]:
        if not self.expiration_seconds:
            return None
        return now_ts() + int(self.expiration_seconds)

    def encode(
        self,
        message: Message,
        sender: SenderKeys,
        recipient_public_key: str,
        mode: PrivacyMode = PrivacyMode.REPUTATION,
    ) -> Event:
        parse_public_key(recipient_public_key)
        trade = sender.trade
        rumor = build_unsigned(trade.public_key, KIND_TEXT_NOTE, _rumor_content(message, trade, mode))

        seal_signer = sender.seal_signer(mode)
        seal = sign_event(
            seal_signer,
            KIND_SEAL,
            nip44.encrypt(rumor.to_json(), seal_signer.secret, recipient_public_key),
            created_at=tweaked_timestamp(),
        )

        ephemeral = KeyPair.generate()
        tags = [["p", recipient_public_key]] + _expiration_tags(self._expiration())
        return sign_event(
            ephemeral,
            KIND_GIFT_WRAP,
            nip44.encrypt(seal.to_json(), ephemeral.secret, recipient_public_key),
            tags=tags,
            created_at=tweaked_timestamp(),
        )

    def encode_private_dm(self, message: Message, trade: KeyPair, recipient_public_key: str) -> Event:
        """Single-layer kind 14 message, used between trade counterparties."""
        parse_public_key(recipient_public_key)
        content = nip44.encrypt(
            _rumor_content(message, trade, PrivacyMode.FULL_PRIVACY), trade.secret, recipient_public_key
        )
        tags = [["p", recipient_public_key]] + _expiration_tags(self._expiration())
        return sign_event(trade, KIND_PRIVATE_DIRECT_MESSAGE, content, tags=tags)

    def decode(self, event: Event, keys: KeyPair) -> DecodedMessage:
        if event.kind == KIND_GIFT_WRAP:
            return self._decode_gift_wrap(event, keys)
        if event.kind == KIND_PRIVATE_DIRECT_MESSAGE:
            return self._decode_private_dm(event, keys)
        raise decode_error(RT_E_DECODE, f"unsupported event kind {event.kind}", event_id=event.id)

    def _decode_gift_wrap(self, event: Event, keys: KeyPair) -> DecodedMessage:
        if _addressed_elsewhere(event, keys.public_key):
            raise decode_error(RT_E_DECODE, "gift wrap addressed to another key", event_id=event.id)
        if not event.verify():
            raise decode_error(RT_E_BAD_SIGNATURE, "gift wrap signature invalid", event_id=event.id)

        try:
            seal = Event.from_json(_decrypt(event.content, keys.secret, event.pubkey))
        except (KeyError, TypeError, ValueError) as e:
            raise decode_error(RT_E_MESSAGE_FORMAT, f"seal is malformed: {e}", event_id=event.id) from e
        if seal.kind != KIND_SEAL:
            raise decode_error(RT_E_MESSAGE_FORMAT, "inner event is not a seal", event_id=event.id)
        if not seal.verify():
            raise decode_error(RT_E_BAD_SIGNATURE, "seal signature invalid", event_id=event.id)

        try:
            rumor = Event.from_json(_decrypt(seal.content, keys.secret, seal.pubkey))
        except (KeyError, TypeError, ValueError) as e:
            raise decode_error(RT_E_MESSAGE_FORMAT, f"rumor is malformed: {e}", event_id=event.id) from e

        message, signature_valid = _parse_rumor_content(rumor.content, rumor.pubkey)
        return DecodedMessage(
            message=message,
            timestamp=rumor.created_at,
            sender=seal.pubkey,
            event_id=event.id,
            author=rumor.pubkey,
            signature_valid=signature_valid,
        )

    def _decode_private_dm(self, event: Event, keys: KeyPair) -> DecodedMessage:
        if _addressed_elsewhere(event, keys.public_key):
            raise decode_error(RT_E_DECODE, "message addressed to another key", event_id=event.id)
        if not event.verify():
            raise decode_error(RT_E_BAD_SIGNATURE, "message signature invalid", event_id=event.id)
        message, signature_valid = _parse_rumor_content(
            _decrypt(event.content, keys.secret, event.pubkey), event.pubkey
        )
        return DecodedMessage(
            message=message,
            timestamp=event.created_at,
            sender=event.pubkey,
            event_id=event.id,
            author=event.pubkey,
            signature_valid=signature_valid,
        )

    def encode_chat(
        self, author: KeyPair, shared_public_key: str, content: str, created_at: Optional[int] = None
    ) -> Event:
        parse_public_key(shared_public_key)
        inner = sign_event(author, KIND_TEXT_NOTE, content, created_at=created_at)
        ephemeral = KeyPair.generate()
        return sign_event(
            ephemeral,
            KIND_GIFT_WRAP,
            nip44.encrypt(inner.to_json(), ephemeral.secret, shared_public_key),
            tags=[["p", shared_public_key]],
            created_at=tweaked_timestamp(),
        )

    def decode_chat(self, event: Event, shared: KeyPair) -> ChatEnvelope:
        if event.kind != KIND_GIFT_WRAP:
            raise decode_error(RT_E_DECODE, f"unsupported event kind {event.kind}", event_id=event.id)
        try:
            inner = Event.from_json(_decrypt(event.content, shared.secret, event.pubkey))
        except (KeyError, TypeError, ValueError) as e:
            raise decode_error(RT_E_MESSAGE_FORMAT, f"chat event is malformed: {e}", event_id=event.id) from e
        if not inner.verify():
            raise decode_error(RT_E_BAD_SIGNATURE, "chat event signature invalid", event_id=event.id)
        return ChatEnvelope(
            content=inner.content,
            author=inner.pubkey,
            timestamp=inner.created_at,
            event_id=event.id,
        )


def parse_dm_events(
    codec: EnvelopeCodec,
    events: Iterable[Event],
    keys: KeyPair,
    since: Optional[int] = None,
    *,
    now: Optional[int] = None,
) -> List[DecodedMessage]:
    """Decode a batch of relay events, skipping anything that does not open.

    Events are deduplicated by id. Messages older than ``since`` (default: the
    last 30 minutes) are dropped. The result is sorted oldest first.
    """
    cutoff = since if since is not None else (now if now is not None else now_ts()) - DEFAULT_DM_WINDOW_SECONDS
    seen: set = set()
    out: List[DecodedMessage] = []
    for event in events:
        if event.id in seen:
            continue
        seen.add(event.id)
        try:
            decoded = codec.decode(event, keys)
        except EnvelopeDecodeError as e:
            logger.warning("skipping event %s: %s", event.id[:16], e)
            continue
        if decoded.timestamp < cutoff:
            continue
        out.append(decoded)
    out.sort(key=lambda d: d.timestamp)
    return out
