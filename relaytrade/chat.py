"""Dispute chat synchronization for a solver.

Each (dispute, party) pair has a private channel addressed to a shared key,
the ECDH agreement between the solver's key and the party's trade key. The
sync loop fetches new envelopes for every channel, applies them to memory and
the transcript file, and only then advances the persisted cursor.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from .attachments import Attachment, parse_attachment
from .envelope import EnvelopeCodec
from .errors import (
    RT_E_DISPUTE_STATE,
    RT_E_SHARED_KEY_COLLISION,
    EnvelopeDecodeError,
    RelayTradeError,
    relaytrade_error,
)
from .events import KIND_GIFT_WRAP, TIMESTAMP_TWEAK_SECONDS, now_ts
from .keys import KeyPair, derive_shared_key
from .models import ChatParty, ChatSender, DisputeRecord
from .relay import Filter, RelayTransport
from .scheduler import PeriodicTask, SingleFlight, TaskOutcome
from .storage import SqliteTradeStore
from .transcript import TranscriptEntry, TranscriptStore, last_seen_by_party


logger = logging.getLogger("relaytrade.chat")

CHAT_FETCH_LIMIT = 20
DEFAULT_WINDOW_DAYS = 7
PARTIES = (ChatParty.BUYER, ChatParty.SELLER)


@dataclass(frozen=True)
class ChatMessage:
    dispute_id: str
    party: ChatParty
    sender: ChatSender
    content: str
    timestamp: int
    event_id: Optional[str] = None
    attachment: Optional[Attachment] = None

    def to_entry(self) -> TranscriptEntry:
        text = self.attachment.placeholder() if self.attachment is not None else self.content
        return TranscriptEntry(self.sender, self.timestamp, text, self.party)


@dataclass
class ChatBatch:
    dispute_id: str
    party: ChatParty
    messages: List[ChatMessage] = field(default_factory=list)

    @property
    def cursor_timestamp(self) -> Optional[int]:
        """Newest message the party sent. Admin-authored messages do not move the cursor."""
        return max((m.timestamp for m in self.messages if m.sender != ChatSender.ADMIN), default=None)


def chat_fetch_since(cursor: Optional[int], now: int, window_days: int = DEFAULT_WINDOW_DAYS) -> int:
    """Relay-side lower bound for a chat fetch.

    Outer wraps carry a randomized timestamp up to two days in the past, so
    the relay bound sits that far below the cursor. Exact filtering against
    the cursor happens on the inner timestamp after decoding.
    """
    floor = now - window_days * 86400
    if cursor is None:
        return floor
    return max(floor, cursor - TIMESTAMP_TWEAK_SECONDS)


def derive_chat_keys(admin_secret: bytes, dispute: DisputeRecord) -> Dict[ChatParty, KeyPair]:
    keys: Dict[ChatParty, KeyPair] = {}
    for party in PARTIES:
        pub = dispute.party_pubkey(party)
        if pub:
            keys[party] = derive_shared_key(admin_secret, pub)
    return keys


def check_chat_keys(dispute: DisputeRecord, keys: Dict[ChatParty, KeyPair]) -> Optional[RelayTradeError]:
    """Two distinct parties must never land on the same channel."""
    buyer, seller = keys.get(ChatParty.BUYER), keys.get(ChatParty.SELLER)
    if buyer is None or seller is None:
        return None
    if dispute.buyer_pubkey != dispute.seller_pubkey and buyer.public_key == seller.public_key:
        return relaytrade_error(
            RT_E_SHARED_KEY_COLLISION,
            "buyer and seller resolve to the same chat key",
            dispute_id=dispute.id,
        )
    return None


class DisputeChatSync:
    def __init__(
        self,
        store: SqliteTradeStore,
        relay: RelayTransport,
        codec: EnvelopeCodec,
        admin_keys: KeyPair,
        transcripts: TranscriptStore,
        *,
        window_days: int = DEFAULT_WINDOW_DAYS,
        fetch_timeout: float = 15.0,
        limit: int = CHAT_FETCH_LIMIT,
        clock: Callable[[], int] = now_ts,
    ):
        self.store = store
        self.relay = relay
        self.codec = codec
        self.admin_keys = admin_keys
        self.transcripts = transcripts
        self.window_days = window_days
        self.fetch_timeout = fetch_timeout
        self.limit = limit
        self.clock = clock
        self.guard = SingleFlight("dispute-chat")
        self.messages: Dict[str, List[ChatMessage]] = {}
        self._keys: Dict[Tuple[str, ChatParty], KeyPair] = {}
        self._seen: Dict[Tuple[str, ChatParty], Set[str]] = {}
        self._lock = threading.Lock()

    # ---------------------------
    # Shared keys
    # ---------------------------

    def chat_keys(self, dispute: DisputeRecord) -> Dict[ChatParty, KeyPair]:
        """Shared keys for both parties, loaded from the store or derived once and persisted."""
        out: Dict[ChatParty, KeyPair] = {}
        derived: Optional[Dict[ChatParty, KeyPair]] = None
        for party in PARTIES:
            cached = self._keys.get((dispute.id, party))
            if cached is not None:
                out[party] = cached
                continue
            stored = dispute.shared_key(party) or self.store.get_shared_key(dispute.id, party)
            if stored:
                out[party] = KeyPair.from_hex(stored)
                continue
            if derived is None:
                derived = derive_chat_keys(self.admin_keys.secret, dispute)
            if party in derived:
                out[party] = derived[party]
                self.store.set_shared_key(dispute.id, party, derived[party].secret_hex)

        collision = check_chat_keys(dispute, out)
        if collision is not None:
            logger.error("dispute %s: %s", dispute.id, collision.message)
        with self._lock:
            for party, kp in out.items():
                self._keys[(dispute.id, party)] = kp
        return out

    # ---------------------------
    # Fetch and apply
    # ---------------------------

    def _tag_sender(self, author: str, party: ChatParty) -> ChatSender:
        if author == self.admin_keys.public_key:
            return ChatSender.ADMIN
        return ChatSender.for_party(party)

    def _is_echo(self, msg: ChatMessage) -> bool:
        """An admin message already in memory, e.g. restored from the transcript."""
        with self._lock:
            return any(
                m.sender == ChatSender.ADMIN
                and m.party == msg.party
                and m.timestamp == msg.timestamp
                and m.content == msg.content
                for m in self.messages.get(msg.dispute_id, ())
            )

    async def fetch_party(self, dispute: DisputeRecord, party: ChatParty, shared: KeyPair) -> ChatBatch:
        cursor = self.store.get_chat_cursor(dispute.id, party)
        flt = Filter(
            kinds=[KIND_GIFT_WRAP],
            pubkeys=[shared.public_key],
            since=chat_fetch_since(cursor, self.clock(), self.window_days),
            limit=self.limit,
        )
        events = await self.relay.fetch([flt], timeout=self.fetch_timeout)

        batch = ChatBatch(dispute.id, party)
        with self._lock:
            seen = set(self._seen.get((dispute.id, party), ()))
        for event in events:
            if event.id in seen:
                continue
            try:
                env = self.codec.decode_chat(event, shared)
            except EnvelopeDecodeError as e:
                logger.debug("dispute %s/%s: skipping chat event: %s", dispute.id, party.value, e)
                continue
            if cursor is not None and env.timestamp <= cursor:
                continue
            msg = ChatMessage(
                dispute_id=dispute.id,
                party=party,
                sender=self._tag_sender(env.author, party),
                content=env.content,
                timestamp=env.timestamp,
                event_id=env.event_id,
                attachment=parse_attachment(env.content),
            )
            if msg.sender == ChatSender.ADMIN and self._is_echo(msg):
                continue
            batch.messages.append(msg)
        batch.messages.sort(key=lambda m: m.timestamp)
        return batch

    def apply_batch(self, batch: ChatBatch) -> int:
        """Write the transcript, then commit to memory, then advance the cursor.

        A failed transcript write leaves memory and the cursor untouched so the
        next cycle fetches the same messages again.
        """
        if not batch.messages:
            return 0
        key = (batch.dispute_id, batch.party)
        with self._lock:
            seen = set(self._seen.get(key, ()))
        fresh = [m for m in batch.messages if m.event_id is None or m.event_id not in seen]
        self.transcripts.append(batch.dispute_id, [m.to_entry() for m in fresh])
        with self._lock:
            self._seen.setdefault(key, set()).update(m.event_id for m in fresh if m.event_id)
            self.messages.setdefault(batch.dispute_id, []).extend(fresh)
            self.messages[batch.dispute_id].sort(key=lambda m: m.timestamp)
        top = batch.cursor_timestamp
        if top is not None:
            self.store.set_chat_cursor(batch.dispute_id, batch.party, top)
        return len(fresh)

    def active_disputes(self) -> List[DisputeRecord]:
        return [d for d in self.store.list_disputes() if not d.is_finalized]

    async def _sync_all(self) -> int:
        total = 0
        for dispute in self.active_disputes():
            keys = self.chat_keys(dispute)
            for party, shared in keys.items():
                try:
                    batch = await self.fetch_party(dispute, party, shared)
                    total += self.apply_batch(batch)
                except asyncio.CancelledError:
                    raise
                except RelayTradeError as e:
                    logger.warning("dispute %s/%s: chat fetch failed: %s", dispute.id, party.value, e)
        return total

    async def sync_once(self) -> Optional[int]:
        """One fetch cycle over every open dispute; None if a cycle is already running."""
        with self.guard.enter() as acquired:
            if not acquired:
                logger.debug("chat sync already in flight, skipping")
                return None
            return await self._sync_all()

    def as_task(
        self, interval: float = 5.0, results: Optional["asyncio.Queue[TaskOutcome]"] = None
    ) -> PeriodicTask:
        return PeriodicTask("dispute-chat", interval, self._sync_all, results=results, guard=self.guard)

    # ---------------------------
    # Sending
    # ---------------------------

    async def send_admin_message(self, dispute_id: str, party: ChatParty, content: str) -> ChatMessage:
        dispute = self.store.get_dispute(dispute_id)
        if dispute.is_finalized:
            raise relaytrade_error(RT_E_DISPUTE_STATE, "dispute is already resolved", dispute_id=dispute_id)
        shared = self.chat_keys(dispute).get(party)
        if shared is None:
            raise relaytrade_error(
                RT_E_DISPUTE_STATE, f"no {party.value} pubkey recorded for dispute", dispute_id=dispute_id
            )
        sent_at = self.clock()
        event = self.codec.encode_chat(self.admin_keys, shared.public_key, content, created_at=sent_at)
        await self.relay.publish(event)

        msg = ChatMessage(
            dispute_id=dispute_id,
            party=party,
            sender=ChatSender.ADMIN,
            content=content,
            timestamp=sent_at,
            event_id=event.id,
            attachment=parse_attachment(content),
        )
        with self._lock:
            self._seen.setdefault((dispute_id, party), set()).add(event.id)
            self.messages.setdefault(dispute_id, []).append(msg)
        self.transcripts.append(dispute_id, [msg.to_entry()])
        return msg

    # ---------------------------
    # Restart
    # ---------------------------

    def restore_from_transcripts(self) -> Dict[str, Dict[ChatParty, int]]:
        """Rebuild in-memory chat state from transcript files.

        The file-derived last-seen time seeds a missing cursor. When both exist
        and disagree the stored cursor is kept and the divergence is logged.
        """
        restored: Dict[str, Dict[ChatParty, int]] = {}
        known = {d.id: d for d in self.store.list_disputes()}
        for dispute_id in self.transcripts.dispute_ids():
            if dispute_id not in known:
                continue
            entries = self.transcripts.load(dispute_id)
            msgs = [
                ChatMessage(
                    dispute_id=dispute_id,
                    party=e.chat_party,
                    sender=e.sender,
                    content=e.content,
                    timestamp=e.timestamp,
                    attachment=parse_attachment(e.content),
                )
                for e in entries
                if e.chat_party is not None
            ]
            with self._lock:
                self.messages[dispute_id] = sorted(msgs, key=lambda m: m.timestamp)

            last_seen = last_seen_by_party(entries)
            for party, ts in last_seen.items():
                stored = self.store.get_chat_cursor(dispute_id, party)
                if stored is None:
                    self.store.set_chat_cursor(dispute_id, party, ts)
                elif stored != ts:
                    logger.warning(
                        "dispute %s/%s: transcript last-seen %d differs from stored cursor %d; keeping stored",
                        dispute_id,
                        party.value,
                        ts,
                        stored,
                    )
            restored[dispute_id] = last_seen
        return restored
