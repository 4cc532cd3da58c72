"""Trade actions a user sends to the daemon.

Every action is a gift-wrapped request from a per-trade key; the reply is
awaited through the request correlator and its action is checked against
the set that makes sense for what was asked.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, FrozenSet, Optional

from .correlator import RequestCorrelator, new_request_id
from .envelope import EnvelopeCodec, PrivacyMode, SenderKeys
from .errors import RT_E_BAD_REQUEST, relaytrade_error
from .events import now_ts
from .keys import KeyDeriver, KeyPair
from .models import TradeRecord
from .protocol import (
    Action,
    AmountPayload,
    Message,
    NextTradePayload,
    OrderKind,
    OrderPayload,
    OrderStatus,
    Payload,
    PaymentRequestPayload,
    RatingPayload,
    SmallOrder,
)
from .recovery import ACTION_STATUS, TERMINAL_STATUSES
from .relay import RelayTransport
from .storage import SqliteTradeStore


logger = logging.getLogger("relaytrade.trades")

# Replies that acknowledge each user action.
EXPECTED_REPLIES: Dict[Action, FrozenSet[Action]] = {
    Action.NEW_ORDER: frozenset({Action.NEW_ORDER}),
    Action.TAKE_SELL: frozenset({Action.ADD_INVOICE, Action.WAITING_SELLER_TO_PAY, Action.PAY_INVOICE}),
    Action.TAKE_BUY: frozenset({Action.PAY_INVOICE, Action.WAITING_SELLER_TO_PAY, Action.ADD_INVOICE}),
    Action.ADD_INVOICE: frozenset({Action.WAITING_SELLER_TO_PAY, Action.BUYER_INVOICE_ACCEPTED}),
    Action.FIAT_SENT: frozenset({Action.FIAT_SENT_OK, Action.WAITING_SELLER_TO_PAY}),
    Action.RELEASE: frozenset(
        {Action.PURCHASE_COMPLETED, Action.RATE, Action.RELEASED, Action.HOLD_INVOICE_PAYMENT_SETTLED}
    ),
    Action.CANCEL: frozenset(
        {Action.CANCELED, Action.COOPERATIVE_CANCEL_INITIATED_BY_YOU, Action.COOPERATIVE_CANCEL_ACCEPTED}
    ),
    Action.DISPUTE: frozenset({Action.DISPUTE_INITIATED_BY_YOU}),
    Action.RATE_USER: frozenset({Action.RATE_RECEIVED}),
}

TRADE_ACTIONS = frozenset({Action.FIAT_SENT, Action.RELEASE, Action.CANCEL, Action.DISPUTE, Action.RATE_USER})

_BOLT11_RE = re.compile(r"^(lnbc|lntb|lntbs|lnbcrt)[0-9a-z]+$")
_LN_ADDRESS_RE = re.compile(r"^[a-z0-9._+-]+@[a-z0-9.-]+\.[a-z]{2,}$")


def validate_invoice(invoice: str) -> str:
    """Accept a bolt11 invoice or a lightning address; reject obvious garbage."""
    inv = (invoice or "").strip()
    lowered = inv.lower()
    if lowered.startswith("lightning:"):
        lowered = lowered[len("lightning:"):]
        inv = inv[len("lightning:"):]
    if _BOLT11_RE.match(lowered) or _LN_ADDRESS_RE.match(lowered):
        return inv
    raise relaytrade_error(RT_E_BAD_REQUEST, "not a lightning invoice or address")


def needs_next_trade(record: TradeRecord) -> bool:
    """A range order still has room for another trade after this one."""
    if not record.is_range:
        return False
    return record.max_amount - record.fiat_amount >= record.min_amount


def _record_from_order(
    order: SmallOrder, trade_index: int, trade_pubkey: str, *, is_mine: bool, counterparty: Optional[str] = None
) -> TradeRecord:
    if not order.id:
        raise relaytrade_error(RT_E_BAD_REQUEST, "daemon reply carries no order id")
    status = order.status.value if order.status else OrderStatus.PENDING.value
    return TradeRecord(
        id=order.id,
        trade_index=trade_index,
        kind=order.kind.value if order.kind else None,
        status=status,
        amount=order.amount,
        fiat_code=order.fiat_code,
        fiat_amount=order.fiat_amount,
        min_amount=order.min_amount,
        max_amount=order.max_amount,
        payment_method=order.payment_method,
        premium=order.premium,
        trade_pubkey=trade_pubkey,
        counterparty_pubkey=counterparty,
        buyer_invoice=order.buyer_invoice,
        is_mine=is_mine,
    )


class TradeClient:
    def __init__(
        self,
        store: SqliteTradeStore,
        relay: RelayTransport,
        codec: EnvelopeCodec,
        deriver: KeyDeriver,
        daemon_pubkey: str,
        *,
        correlator: Optional[RequestCorrelator] = None,
        mode: PrivacyMode = PrivacyMode.REPUTATION,
    ):
        self.store = store
        self.relay = relay
        self.codec = codec
        self.deriver = deriver
        self.daemon_pubkey = daemon_pubkey
        self.correlator = correlator or RequestCorrelator()
        self.mode = mode

    def _sender(self, trade_index: int) -> SenderKeys:
        identity = self.deriver.identity_key() if self.mode == PrivacyMode.REPUTATION else None
        return SenderKeys(trade=self.deriver.trade_key(trade_index), identity=identity)

    async def _request(
        self,
        order_id: Optional[str],
        action: Action,
        trade_index: int,
        payload: Optional[Payload] = None,
        *,
        send_index: bool = False,
    ) -> Message:
        sender = self._sender(trade_index)
        request_id = new_request_id()
        message = Message.new_order(order_id, request_id, trade_index if send_index else None, action, payload)
        event = self.codec.encode(message, sender, self.daemon_pubkey, self.mode)
        logger.info(
            "sending %s for order %s (trade index %d, request %d)", action.value, order_id, trade_index, request_id
        )
        expected = EXPECTED_REPLIES.get(action, frozenset())
        result = await self.correlator.exchange(
            self.relay, self.codec, event, sender.trade, request_id, expected_actions=expected
        )
        return result.raise_for_state(expected)

    def _order_record(self, order_id: str) -> TradeRecord:
        return self.store.get_order(order_id)

    # ---------------------------
    # New and taken orders
    # ---------------------------

    async def create_order(
        self,
        kind: OrderKind,
        fiat_code: str,
        fiat_amount: int = 0,
        *,
        amount: int = 0,
        min_amount: Optional[int] = None,
        max_amount: Optional[int] = None,
        payment_method: str = "",
        premium: int = 0,
        invoice: Optional[str] = None,
        expiration_days: int = 1,
    ) -> TradeRecord:
        if expiration_days < 1:
            raise relaytrade_error(RT_E_BAD_REQUEST, "minimum expiration time is 1 day")
        if (min_amount is None) != (max_amount is None):
            raise relaytrade_error(RT_E_BAD_REQUEST, "range orders need both a minimum and a maximum")
        if min_amount is not None and max_amount is not None:
            if min_amount <= 0 or max_amount <= min_amount:
                raise relaytrade_error(RT_E_BAD_REQUEST, "range minimum must be positive and below the maximum")
            fiat_amount = 0
        elif fiat_amount <= 0:
            raise relaytrade_error(RT_E_BAD_REQUEST, "fiat amount must be positive")
        if invoice:
            invoice = validate_invoice(invoice)

        order = SmallOrder(
            kind=kind,
            status=OrderStatus.PENDING,
            amount=amount,
            fiat_code=(fiat_code or "USD").strip().upper(),
            min_amount=min_amount,
            max_amount=max_amount,
            fiat_amount=fiat_amount,
            payment_method=payment_method.strip(),
            premium=premium,
            buyer_invoice=invoice,
            created_at=0,
            expires_at=now_ts() + expiration_days * 86400,
        )
        index = self.store.reserve_next_trade_index()
        trade = self.deriver.trade_key(index)
        reply = await self._request(None, Action.NEW_ORDER, index, OrderPayload(order), send_index=True)

        confirmed = reply.payload.order if isinstance(reply.payload, OrderPayload) else order
        if not confirmed.id and reply.kind.id:
            confirmed = confirmed.model_copy(update={"id": reply.kind.id})
        record = _record_from_order(confirmed, index, trade.public_key, is_mine=True)
        self.store.save_order(record)
        logger.info("order %s created with trade index %d", record.id, index)
        return record

    async def take_order(
        self, order: SmallOrder, *, amount: Optional[int] = None, invoice: Optional[str] = None
    ) -> TradeRecord:
        if order.kind is None:
            raise relaytrade_error(RT_E_BAD_REQUEST, "order kind is not specified")
        if not order.id:
            raise relaytrade_error(RT_E_BAD_REQUEST, "order id is missing")
        if order.is_range:
            if amount is None:
                raise relaytrade_error(RT_E_BAD_REQUEST, "range orders need a fiat amount")
            if not (order.min_amount <= amount <= order.max_amount):
                raise relaytrade_error(RT_E_BAD_REQUEST, "amount outside the order range")

        payload: Optional[Payload]
        if order.kind == OrderKind.SELL:
            action = Action.TAKE_SELL
            if invoice:
                payload = PaymentRequestPayload(None, validate_invoice(invoice), amount)
            else:
                payload = AmountPayload(amount or 0)
        else:
            action = Action.TAKE_BUY
            payload = AmountPayload(amount) if amount is not None else None

        index = self.store.reserve_next_trade_index()
        trade = self.deriver.trade_key(index)
        reply = await self._request(order.id, action, index, payload, send_index=True)

        returned: SmallOrder = order
        if isinstance(reply.payload, OrderPayload):
            returned = reply.payload.order
        elif isinstance(reply.payload, PaymentRequestPayload) and reply.payload.order is not None:
            returned = reply.payload.order
        if not returned.id:
            returned = returned.model_copy(update={"id": order.id})
        if amount is not None and order.is_range and not returned.fiat_amount:
            returned = returned.model_copy(update={"fiat_amount": amount})

        counterparty = order.buyer_trade_pubkey if order.kind == OrderKind.BUY else order.seller_trade_pubkey
        record = _record_from_order(returned, index, trade.public_key, is_mine=False, counterparty=counterparty)
        status = ACTION_STATUS.get(reply.action)
        if status is not None:
            record.status = status.value
        self.store.save_order(record)
        logger.info("took order %s with trade index %d (%s)", record.id, index, reply.action.value)
        return record

    # ---------------------------
    # Follow-up actions
    # ---------------------------

    def _next_trade_payload(self) -> NextTradePayload:
        index = self.store.reserve_next_trade_index()
        next_key: KeyPair = self.deriver.trade_key(index)
        return NextTradePayload(next_key.public_key, index)

    async def send_trade_action(self, order_id: str, action: Action, *, rating: Optional[int] = None) -> Message:
        if action not in TRADE_ACTIONS:
            raise relaytrade_error(RT_E_BAD_REQUEST, f"{action.value} is not a trade action")
        record = self._order_record(order_id)

        payload: Optional[Payload] = None
        if action in (Action.FIAT_SENT, Action.RELEASE) and needs_next_trade(record):
            payload = self._next_trade_payload()
        elif action == Action.RATE_USER:
            if rating is None or not 1 <= rating <= 5:
                raise relaytrade_error(RT_E_BAD_REQUEST, "rating must be between 1 and 5")
            payload = RatingPayload(rating)

        reply = await self._request(order_id, action, record.trade_index, payload)
        self._apply_reply(record, reply)
        return reply

    async def add_invoice(self, order_id: str, invoice: str) -> Message:
        record = self._order_record(order_id)
        payload = PaymentRequestPayload(None, validate_invoice(invoice), None)
        reply = await self._request(order_id, Action.ADD_INVOICE, record.trade_index, payload)
        self._apply_reply(record, reply)
        return reply

    def _apply_reply(self, record: TradeRecord, reply: Message) -> None:
        status = ACTION_STATUS.get(reply.action)
        if status is None:
            return
        self.store.update_order_status(record.id, status.value, active=status not in TERMINAL_STATUSES)
