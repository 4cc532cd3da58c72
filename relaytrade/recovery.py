"""Stateless trade recovery.

No message log is kept locally. On startup each persisted trade's key is
re-derived from ``(seed, trade_index)``, recent envelopes addressed to it are
fetched from the relays, and the trade's state is rebuilt by folding the
decoded messages through ``reduce_trade_state``.

Each trade is recovered independently: a timeout or an undecodable history
for one trade is recorded in the report and does not hold up the others.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence

from .envelope import DecodedMessage, EnvelopeCodec, parse_dm_events
from .errors import (
    KIND_INTEGRITY,
    KIND_RECOVERABLE,
    RT_E_DECODE,
    RT_E_DUPLICATE_TRADE_INDEX,
    RT_E_TIMEOUT,
    RT_E_TRADE_KEY_MISMATCH,
    RelayTradeError,
    relaytrade_error,
)
from .events import KIND_GIFT_WRAP
from .keys import KeyDeriver
from .models import TradeRecord
from .protocol import (
    Action,
    OrderPayload,
    OrderStatus,
    PaymentRequestPayload,
    PeerPayload,
    SmallOrder,
    action_label,
)
from .relay import Filter, RelayTransport
from .scheduler import PeriodicTask
from .storage import SqliteTradeStore


logger = logging.getLogger("relaytrade.recovery")


# Status a trade is in after receiving each action. Actions missing here
# (informational or admin-only) leave the status untouched.
ACTION_STATUS: Dict[Action, OrderStatus] = {
    Action.NEW_ORDER: OrderStatus.PENDING,
    Action.TAKE_SELL: OrderStatus.WAITING_BUYER_INVOICE,
    Action.TAKE_BUY: OrderStatus.WAITING_PAYMENT,
    Action.ADD_INVOICE: OrderStatus.WAITING_BUYER_INVOICE,
    Action.WAITING_BUYER_INVOICE: OrderStatus.WAITING_BUYER_INVOICE,
    Action.PAY_INVOICE: OrderStatus.WAITING_PAYMENT,
    Action.WAITING_SELLER_TO_PAY: OrderStatus.WAITING_PAYMENT,
    Action.BUYER_TOOK_ORDER: OrderStatus.ACTIVE,
    Action.HOLD_INVOICE_PAYMENT_ACCEPTED: OrderStatus.ACTIVE,
    Action.FIAT_SENT: OrderStatus.FIAT_SENT,
    Action.FIAT_SENT_OK: OrderStatus.FIAT_SENT,
    Action.RELEASE: OrderStatus.SETTLED_HOLD_INVOICE,
    Action.RELEASED: OrderStatus.SETTLED_HOLD_INVOICE,
    Action.HOLD_INVOICE_PAYMENT_SETTLED: OrderStatus.SETTLED_HOLD_INVOICE,
    Action.PURCHASE_COMPLETED: OrderStatus.SUCCESS,
    Action.RATE: OrderStatus.SUCCESS,
    Action.RATE_RECEIVED: OrderStatus.SUCCESS,
    Action.CANCEL: OrderStatus.CANCELED,
    Action.CANCELED: OrderStatus.CANCELED,
    Action.HOLD_INVOICE_PAYMENT_CANCELED: OrderStatus.CANCELED,
    Action.COOPERATIVE_CANCEL_ACCEPTED: OrderStatus.COOPERATIVELY_CANCELED,
    Action.DISPUTE: OrderStatus.DISPUTE,
    Action.DISPUTE_INITIATED_BY_YOU: OrderStatus.DISPUTE,
    Action.DISPUTE_INITIATED_BY_PEER: OrderStatus.DISPUTE,
    Action.ADMIN_SETTLED: OrderStatus.SETTLED_BY_ADMIN,
    Action.ADMIN_CANCELED: OrderStatus.CANCELED_BY_ADMIN,
}

TERMINAL_STATUSES = frozenset(
    {
        OrderStatus.SUCCESS,
        OrderStatus.CANCELED,
        OrderStatus.COOPERATIVELY_CANCELED,
        OrderStatus.EXPIRED,
        OrderStatus.SETTLED_BY_ADMIN,
        OrderStatus.CANCELED_BY_ADMIN,
        OrderStatus.COMPLETED_BY_ADMIN,
    }
)


@dataclass(frozen=True)
class TradeState:
    order_id: str
    trade_index: int
    trade_pubkey: Optional[str] = None
    status: Optional[OrderStatus] = None
    last_action: Optional[Action] = None
    counterparty: Optional[str] = None
    pending_invoice: Optional[str] = None
    pending_amount: Optional[int] = None
    order: Optional[SmallOrder] = None
    timestamp: int = 0

    @classmethod
    def from_record(cls, record: TradeRecord) -> "TradeState":
        status: Optional[OrderStatus]
        try:
            status = OrderStatus(record.status) if record.status else None
        except ValueError:
            status = None
        return cls(
            order_id=record.id,
            trade_index=record.trade_index,
            trade_pubkey=record.trade_pubkey,
            status=status,
            counterparty=record.counterparty_pubkey,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _counterparty_from_order(order: SmallOrder, own_pubkey: Optional[str]) -> Optional[str]:
    for candidate in (order.buyer_trade_pubkey, order.seller_trade_pubkey):
        if candidate and candidate != own_pubkey:
            return candidate
    return None


def apply_message(state: TradeState, decoded: DecodedMessage) -> TradeState:
    """One transition. Stale, foreign or rejected messages return ``state``."""
    message = decoded.message
    if decoded.timestamp < state.timestamp:
        return state
    if message.kind.id is not None and message.kind.id != state.order_id:
        return state
    if message.is_cant_do:
        return state

    action = message.action
    payload = message.payload
    status = ACTION_STATUS.get(action, state.status)
    order = state.order
    counterparty = state.counterparty
    pending_invoice: Optional[str] = None
    pending_amount: Optional[int] = None

    if isinstance(payload, OrderPayload):
        order = payload.order
        if payload.order.status is not None and action not in ACTION_STATUS:
            status = payload.order.status
        counterparty = _counterparty_from_order(payload.order, state.trade_pubkey) or counterparty
        if action == Action.ADD_INVOICE:
            pending_amount = payload.order.amount
    elif isinstance(payload, PaymentRequestPayload):
        if payload.order is not None:
            order = payload.order
        if action == Action.PAY_INVOICE:
            pending_invoice = payload.invoice
    elif isinstance(payload, PeerPayload):
        counterparty = payload.peer.pubkey

    return replace(
        state,
        status=status,
        last_action=action,
        counterparty=counterparty,
        pending_invoice=pending_invoice,
        pending_amount=pending_amount,
        order=order,
        timestamp=decoded.timestamp,
    )


def reduce_trade_state(state: TradeState, messages: Iterable[DecodedMessage]) -> TradeState:
    """Fold decoded messages, oldest first, into the trade's current state."""
    for decoded in sorted(messages, key=lambda d: d.timestamp):
        state = apply_message(state, decoded)
    return state


def find_duplicate_indices(records: Sequence[TradeRecord]) -> Dict[int, List[str]]:
    by_index: Dict[int, List[str]] = defaultdict(list)
    for r in records:
        by_index[r.trade_index].append(r.id)
    return {idx: ids for idx, ids in by_index.items() if len(ids) > 1}


@dataclass
class RecoveryReport:
    recovered: Dict[str, TradeState] = field(default_factory=dict)
    failures: Dict[str, RelayTradeError] = field(default_factory=dict)
    rejected: Dict[str, str] = field(default_factory=dict)
    integrity_issues: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.rejected and not self.integrity_issues


class RecoveryEngine:
    def __init__(
        self,
        store: SqliteTradeStore,
        relay: RelayTransport,
        codec: EnvelopeCodec,
        deriver: KeyDeriver,
        *,
        fetch_timeout: float = 15.0,
        events_per_trade: int = 20,
    ):
        self.store = store
        self.relay = relay
        self.codec = codec
        self.deriver = deriver
        self.fetch_timeout = float(fetch_timeout)
        self.events_per_trade = int(events_per_trade)

    def _check_integrity(self, records: List[TradeRecord], report: RecoveryReport) -> List[TradeRecord]:
        duplicates = find_duplicate_indices(records)
        for idx, ids in sorted(duplicates.items()):
            issue = f"trade index {idx} is shared by orders {', '.join(sorted(ids))}"
            logger.error("integrity fault: %s; refusing to recover these trades", issue)
            report.integrity_issues.append(issue)
            for order_id in ids:
                report.rejected[order_id] = RT_E_DUPLICATE_TRADE_INDEX

        if records:
            top = max(r.trade_index for r in records)
            current = self.store.get_trade_index()
            if current < top:
                logger.warning("trade index counter %d behind persisted index %d; raising it", current, top)
                self.store.set_trade_index(top)
        return [r for r in records if r.trade_index not in duplicates]

    async def recover_trade(self, record: TradeRecord) -> TradeState:
        keys = self.deriver.trade_key(record.trade_index)
        if record.trade_pubkey and record.trade_pubkey != keys.public_key:
            raise relaytrade_error(
                RT_E_TRADE_KEY_MISMATCH,
                "stored trade pubkey does not match the key derived from its index",
                kind=KIND_INTEGRITY,
                order_id=record.id,
                trade_index=record.trade_index,
            )
        flt = Filter(kinds=[KIND_GIFT_WRAP], pubkeys=[keys.public_key], limit=self.events_per_trade)
        try:
            events = await asyncio.wait_for(self.relay.fetch([flt], self.fetch_timeout), self.fetch_timeout + 1.0)
        except asyncio.TimeoutError as e:
            raise relaytrade_error(
                RT_E_TIMEOUT, "relay query timed out", retryable=True, kind=KIND_RECOVERABLE, order_id=record.id
            ) from e

        decoded = parse_dm_events(self.codec, events, keys, since=0)
        if events and not decoded:
            raise relaytrade_error(
                RT_E_DECODE,
                "no event for this trade could be decoded",
                retryable=True,
                kind=KIND_RECOVERABLE,
                order_id=record.id,
                events=len(events),
            )
        base = replace(TradeState.from_record(record), trade_pubkey=keys.public_key)
        return reduce_trade_state(base, decoded)

    async def _guarded(self, record: TradeRecord) -> TradeState:
        try:
            return await self.recover_trade(record)
        except RelayTradeError:
            raise
        except Exception as e:
            raise relaytrade_error(
                RT_E_DECODE, f"recovery failed: {type(e).__name__}: {e}", kind=KIND_RECOVERABLE, order_id=record.id
            ) from e

    async def recover(self) -> RecoveryReport:
        report = RecoveryReport()
        records = self._check_integrity(self.store.list_orders(active_only=True), report)

        results = await asyncio.gather(*(self._guarded(r) for r in records), return_exceptions=True)
        for record, result in zip(records, results):
            if isinstance(result, RelayTradeError):
                logger.warning("could not recover order %s: %s", record.id, result)
                report.failures[record.id] = result
                continue
            if isinstance(result, BaseException):
                raise result
            report.recovered[record.id] = result
            self._persist(record, result)

        logger.info(
            "recovery finished: %d recovered, %d failed, %d rejected",
            len(report.recovered),
            len(report.failures),
            len(report.rejected),
        )
        return report

    def _persist(self, record: TradeRecord, state: TradeState) -> None:
        if state.status is None:
            return
        if state.status.value != record.status or state.is_terminal:
            self.store.update_order_status(record.id, state.status.value, active=not state.is_terminal)


@dataclass(frozen=True)
class OrderNotification:
    order_id: str
    trade_index: int
    action: Action
    label: str
    timestamp: int
    sender: str
    sat_amount: Optional[int] = None
    invoice: Optional[str] = None


class TradeMessageListener:
    """Polls the newest envelopes for every active trade.

    Only the latest message of each trade matters. A message counts as new
    when it is newer than the last one seen for that trade, or equally old
    with a different action.
    """

    def __init__(
        self,
        relay: RelayTransport,
        codec: EnvelopeCodec,
        deriver: KeyDeriver,
        *,
        fetch_timeout: float = 15.0,
        limit: int = 5,
        notifications: Optional["asyncio.Queue[OrderNotification]"] = None,
    ):
        self.relay = relay
        self.codec = codec
        self.deriver = deriver
        self.fetch_timeout = float(fetch_timeout)
        self.limit = int(limit)
        self.notifications = notifications if notifications is not None else asyncio.Queue()
        self._lock = threading.Lock()
        self._active: Dict[str, int] = {}
        self._latest: Dict[str, DecodedMessage] = {}
        self._pending = 0

    def track(self, order_id: str, trade_index: int) -> None:
        with self._lock:
            self._active[order_id] = int(trade_index)

    def untrack(self, order_id: str) -> None:
        with self._lock:
            self._active.pop(order_id, None)

    def active_trades(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._active)

    @property
    def pending_notifications(self) -> int:
        with self._lock:
            return self._pending

    def mark_all_read(self) -> None:
        with self._lock:
            self._pending = 0

    def latest(self, order_id: str) -> Optional[DecodedMessage]:
        with self._lock:
            return self._latest.get(order_id)

    async def _poll_trade(self, order_id: str, trade_index: int) -> Optional[OrderNotification]:
        keys = self.deriver.trade_key(trade_index)
        flt = Filter(kinds=[KIND_GIFT_WRAP], pubkeys=[keys.public_key], limit=self.limit)
        try:
            events = await self.relay.fetch([flt], self.fetch_timeout)
        except Exception as e:
            logger.warning("fetch for trade index %d failed: %s", trade_index, e)
            return None
        decoded = parse_dm_events(self.codec, events, keys)
        if not decoded:
            return None
        newest = max(decoded, key=lambda d: d.timestamp)

        with self._lock:
            existing = self._latest.get(order_id)
            is_new = (
                existing is None
                or newest.timestamp > existing.timestamp
                or (newest.timestamp == existing.timestamp and newest.message.action != existing.message.action)
            )
            if not is_new:
                return None
            self._latest[order_id] = newest
            self._pending += 1

        payload = newest.message.payload
        sat_amount = None
        invoice = None
        if newest.message.action == Action.PAY_INVOICE and isinstance(payload, PaymentRequestPayload):
            invoice = payload.invoice
        elif newest.message.action == Action.ADD_INVOICE and isinstance(payload, OrderPayload):
            sat_amount = payload.order.amount
        return OrderNotification(
            order_id=order_id,
            trade_index=trade_index,
            action=newest.message.action,
            label=action_label(newest.message.action),
            timestamp=newest.timestamp,
            sender=newest.sender,
            sat_amount=sat_amount,
            invoice=invoice,
        )

    async def poll_once(self) -> List[OrderNotification]:
        active = self.active_trades()
        results = await asyncio.gather(
            *(self._poll_trade(oid, idx) for oid, idx in active.items()), return_exceptions=True
        )
        out: List[OrderNotification] = []
        for (order_id, _), result in zip(active.items(), results):
            if isinstance(result, BaseException):
                logger.warning("listener failed for order %s: %s", order_id, result)
                continue
            if result is not None:
                out.append(result)
                self.notifications.put_nowait(result)
        return out

    def as_task(self, interval: float = 5.0) -> PeriodicTask:
        return PeriodicTask("trade-listener", interval, self.poll_once)
