"""Trade protocol message model.

A message on the wire is a single-key JSON object naming its family, holding
a ``MessageKind``::

    {"order": {"version": 1, "id": "...", "request_id": 42,
               "trade_index": 3, "action": "take-sell", "payload": null}}

``Action`` is closed: an unknown action string is a format error, never a
silently ignored string. Payloads are a closed set of variants, each a small
frozen dataclass with its own wire shape.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import RT_E_MESSAGE_FORMAT, relaytrade_error


PROTOCOL_VERSION = 1


class Action(str, Enum):
    NEW_ORDER = "new-order"
    TAKE_SELL = "take-sell"
    TAKE_BUY = "take-buy"
    PAY_INVOICE = "pay-invoice"
    FIAT_SENT = "fiat-sent"
    FIAT_SENT_OK = "fiat-sent-ok"
    RELEASE = "release"
    RELEASED = "released"
    CANCEL = "cancel"
    CANCELED = "canceled"
    COOPERATIVE_CANCEL_INITIATED_BY_YOU = "cooperative-cancel-initiated-by-you"
    COOPERATIVE_CANCEL_INITIATED_BY_PEER = "cooperative-cancel-initiated-by-peer"
    COOPERATIVE_CANCEL_ACCEPTED = "cooperative-cancel-accepted"
    DISPUTE = "dispute"
    DISPUTE_INITIATED_BY_YOU = "dispute-initiated-by-you"
    DISPUTE_INITIATED_BY_PEER = "dispute-initiated-by-peer"
    BUYER_INVOICE_ACCEPTED = "buyer-invoice-accepted"
    PURCHASE_COMPLETED = "purchase-completed"
    HOLD_INVOICE_PAYMENT_ACCEPTED = "hold-invoice-payment-accepted"
    HOLD_INVOICE_PAYMENT_SETTLED = "hold-invoice-payment-settled"
    HOLD_INVOICE_PAYMENT_CANCELED = "hold-invoice-payment-canceled"
    WAITING_SELLER_TO_PAY = "waiting-seller-to-pay"
    WAITING_BUYER_INVOICE = "waiting-buyer-invoice"
    ADD_INVOICE = "add-invoice"
    BUYER_TOOK_ORDER = "buyer-took-order"
    RATE = "rate"
    RATE_USER = "rate-user"
    RATE_RECEIVED = "rate-received"
    CANT_DO = "cant-do"
    ADMIN_CANCEL = "admin-cancel"
    ADMIN_CANCELED = "admin-canceled"
    ADMIN_SETTLE = "admin-settle"
    ADMIN_SETTLED = "admin-settled"
    ADMIN_ADD_SOLVER = "admin-add-solver"
    ADMIN_TAKE_DISPUTE = "admin-take-dispute"
    ADMIN_TOOK_DISPUTE = "admin-took-dispute"
    PAYMENT_FAILED = "payment-failed"
    INVOICE_UPDATED = "invoice-updated"
    SEND_DM = "send-dm"
    TRADE_PUBKEY = "trade-pubkey"
    RESTORE_SESSION = "restore-session"
    LAST_TRADE_INDEX = "last-trade-index"
    ORDERS = "orders"


# Responses the daemon may send without echoing a request id.
UNSOLICITED_ACTIONS = frozenset(
    {Action.NEW_ORDER, Action.ADD_INVOICE, Action.PAY_INVOICE, Action.RATE_RECEIVED}
)

_ACTION_LABELS: Dict[Action, str] = {
    Action.ADD_INVOICE: "Invoice Request",
    Action.PAY_INVOICE: "Payment Request",
    Action.TAKE_SELL: "Take Sell",
    Action.TAKE_BUY: "Take Buy",
    Action.FIAT_SENT: "Fiat Sent",
    Action.FIAT_SENT_OK: "Fiat Received",
    Action.RELEASE: "Release",
    Action.RELEASED: "Release",
    Action.DISPUTE: "Dispute",
    Action.DISPUTE_INITIATED_BY_YOU: "Dispute",
    Action.WAITING_SELLER_TO_PAY: "Waiting for Seller to Pay",
    Action.RATE: "Rate Counterparty",
    Action.RATE_RECEIVED: "Rate Counterparty received",
}


def action_label(action: Action) -> str:
    return _ACTION_LABELS.get(action, "New Message")


class OrderKind(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FIAT_SENT = "fiat-sent"
    SETTLED_HOLD_INVOICE = "settled-hold-invoice"
    WAITING_BUYER_INVOICE = "waiting-buyer-invoice"
    WAITING_PAYMENT = "waiting-payment"
    COOPERATIVELY_CANCELED = "cooperatively-canceled"
    CANCELED = "canceled"
    SUCCESS = "success"
    EXPIRED = "expired"
    DISPUTE = "dispute"
    IN_PROGRESS = "in-progress"
    CANCELED_BY_ADMIN = "canceled-by-admin"
    SETTLED_BY_ADMIN = "settled-by-admin"
    COMPLETED_BY_ADMIN = "completed-by-admin"


class DisputeStatus(str, Enum):
    INITIATED = "initiated"
    IN_PROGRESS = "in-progress"
    CANCELED = "canceled"
    SETTLED = "settled"
    SELLER_REFUNDED = "seller-refunded"
    RELEASED = "released"


FINAL_DISPUTE_STATUSES = frozenset(
    {DisputeStatus.SETTLED, DisputeStatus.SELLER_REFUNDED, DisputeStatus.RELEASED}
)


class CantDoReason(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_TRADE_INDEX = "invalid_trade_index"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_INVOICE = "invalid_invoice"
    INVALID_PAYMENT_REQUEST = "invalid_payment_request"
    INVALID_PEER = "invalid_peer"
    INVALID_RATING = "invalid_rating"
    INVALID_TEXT_MESSAGE = "invalid_text_message"
    INVALID_ORDER_KIND = "invalid_order_kind"
    INVALID_ORDER_STATUS = "invalid_order_status"
    INVALID_PUBKEY = "invalid_pubkey"
    INVALID_PARAMETERS = "invalid_parameters"
    ORDER_ALREADY_CANCELED = "order_already_canceled"
    CANT_CREATE_USER = "cant_create_user"
    IS_NOT_YOUR_ORDER = "is_not_your_order"
    NOT_ALLOWED_BY_STATUS = "not_allowed_by_status"
    OUT_OF_RANGE_FIAT_AMOUNT = "out_of_range_fiat_amount"
    OUT_OF_RANGE_SATS_AMOUNT = "out_of_range_sats_amount"
    IS_NOT_YOUR_DISPUTE = "is_not_your_dispute"
    DISPUTE_TAKEN_BY_ADMIN = "dispute_taken_by_admin"
    DISPUTE_CREATION_ERROR = "dispute_creation_error"
    NOT_FOUND = "not_found"
    INVALID_DISPUTE_STATUS = "invalid_dispute_status"
    INVALID_ACTION = "invalid_action"
    PENDING_ORDER_EXISTS = "pending_order_exists"
    INVALID_FIAT_CURRENCY = "invalid_fiat_currency"
    TOO_MANY_REQUESTS = "too_many_requests"

    @property
    def description(self) -> str:
        return _CANT_DO_DESCRIPTIONS[self]


_CANT_DO_DESCRIPTIONS: Dict[CantDoReason, str] = {
    CantDoReason.INVALID_SIGNATURE: "Invalid signature - authentication failed",
    CantDoReason.INVALID_TRADE_INDEX: "Invalid trade index - please try again",
    CantDoReason.INVALID_AMOUNT: "Invalid amount - check your order values",
    CantDoReason.INVALID_INVOICE: "Invalid invoice - please provide a valid lightning invoice",
    CantDoReason.INVALID_PAYMENT_REQUEST: "Invalid payment request",
    CantDoReason.INVALID_PEER: "Invalid peer information",
    CantDoReason.INVALID_RATING: "Invalid rating value",
    CantDoReason.INVALID_TEXT_MESSAGE: "Invalid text message",
    CantDoReason.INVALID_ORDER_KIND: "Invalid order kind - must be 'buy' or 'sell'",
    CantDoReason.INVALID_ORDER_STATUS: "Invalid order status",
    CantDoReason.INVALID_PUBKEY: "Invalid public key",
    CantDoReason.INVALID_PARAMETERS: "Invalid parameters - check your order details",
    CantDoReason.ORDER_ALREADY_CANCELED: "Order is already canceled",
    CantDoReason.CANT_CREATE_USER: "Cannot create user - please contact support",
    CantDoReason.IS_NOT_YOUR_ORDER: "This is not your order",
    CantDoReason.NOT_ALLOWED_BY_STATUS: "Action not allowed - order status prevents this operation",
    CantDoReason.OUT_OF_RANGE_FIAT_AMOUNT: "Fiat amount is out of acceptable range",
    CantDoReason.OUT_OF_RANGE_SATS_AMOUNT: "Satoshis amount is out of acceptable range",
    CantDoReason.IS_NOT_YOUR_DISPUTE: "This is not your dispute",
    CantDoReason.DISPUTE_TAKEN_BY_ADMIN: "Dispute has been taken over by an administrator",
    CantDoReason.DISPUTE_CREATION_ERROR: "Cannot create dispute for this order",
    CantDoReason.NOT_FOUND: "Resource not found",
    CantDoReason.INVALID_DISPUTE_STATUS: "Invalid dispute status",
    CantDoReason.INVALID_ACTION: "Invalid action for current state",
    CantDoReason.PENDING_ORDER_EXISTS: "You already have a pending order - please complete or cancel it first",
    CantDoReason.INVALID_FIAT_CURRENCY: "Invalid fiat currency - currency not supported or specify a fixed rate",
    CantDoReason.TOO_MANY_REQUESTS: "Too many requests - please wait and try again",
}


def cant_do_description(reason: Optional[CantDoReason]) -> str:
    if reason is None:
        return "Request rejected"
    return reason.description


class SmallOrder(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=False)

    id: Optional[str] = None
    kind: Optional[OrderKind] = None
    status: Optional[OrderStatus] = None
    amount: int = 0
    fiat_code: str = ""
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None
    fiat_amount: int = 0
    payment_method: str = ""
    premium: int = 0
    buyer_trade_pubkey: Optional[str] = None
    seller_trade_pubkey: Optional[str] = None
    buyer_invoice: Optional[str] = None
    created_at: Optional[int] = None
    expires_at: Optional[int] = None

    @property
    def is_range(self) -> bool:
        return self.min_amount is not None and self.max_amount is not None


class Peer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pubkey: str
    reputation: Optional[Dict[str, Any]] = None


class SolverDisputeInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    kind: Optional[str] = None
    status: Optional[str] = None
    hash: Optional[str] = None
    preimage: Optional[str] = None
    order_previous_status: Optional[str] = None
    initiator_pubkey: Optional[str] = None
    buyer_pubkey: Optional[str] = None
    seller_pubkey: Optional[str] = None
    initiator_full_privacy: bool = False
    counterpart_full_privacy: bool = False
    premium: int = 0
    payment_method: str = ""
    amount: int = 0
    fiat_amount: int = 0
    fee: int = 0
    routing_fee: int = 0
    buyer_invoice: Optional[str] = None
    invoice_held_at: int = 0
    taken_at: int = 0
    created_at: int = 0


def _model_wire(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", exclude_none=True)


@dataclass(frozen=True)
class OrderPayload:
    order: SmallOrder
    tag = "order"

    def to_wire(self) -> Any:
        return _model_wire(self.order)


@dataclass(frozen=True)
class PaymentRequestPayload:
    order: Optional[SmallOrder]
    invoice: str
    amount: Optional[int] = None
    tag = "payment_request"

    def to_wire(self) -> Any:
        return [_model_wire(self.order) if self.order else None, self.invoice, self.amount]


@dataclass(frozen=True)
class TextMessagePayload:
    text: str
    tag = "text_message"

    def to_wire(self) -> Any:
        return self.text


@dataclass(frozen=True)
class PeerPayload:
    peer: Peer
    tag = "peer"

    def to_wire(self) -> Any:
        return _model_wire(self.peer)


@dataclass(frozen=True)
class RatingPayload:
    rating: int
    tag = "rating_user"

    def to_wire(self) -> Any:
        return self.rating


@dataclass(frozen=True)
class AmountPayload:
    amount: int
    tag = "amount"

    def to_wire(self) -> Any:
        return self.amount


@dataclass(frozen=True)
class DisputePayload:
    dispute_id: str
    info: Optional[SolverDisputeInfo] = None
    tag = "dispute"

    def to_wire(self) -> Any:
        return [self.dispute_id, _model_wire(self.info) if self.info else None]


@dataclass(frozen=True)
class CantDoPayload:
    reason: Optional[CantDoReason] = None
    tag = "cant_do"

    def to_wire(self) -> Any:
        return self.reason.value if self.reason else None


@dataclass(frozen=True)
class NextTradePayload:
    pubkey: str
    index: int
    tag = "next_trade"

    def to_wire(self) -> Any:
        return [self.pubkey, self.index]


@dataclass(frozen=True)
class IdsPayload:
    ids: List[str] = field(default_factory=list)
    tag = "ids"

    def to_wire(self) -> Any:
        return list(self.ids)


@dataclass(frozen=True)
class OrdersPayload:
    orders: List[SmallOrder] = field(default_factory=list)
    tag = "orders"

    def to_wire(self) -> Any:
        return [_model_wire(o) for o in self.orders]


Payload = Union[
    OrderPayload,
    PaymentRequestPayload,
    TextMessagePayload,
    PeerPayload,
    RatingPayload,
    AmountPayload,
    DisputePayload,
    CantDoPayload,
    NextTradePayload,
    IdsPayload,
    OrdersPayload,
]


def _as_list(value: Any, n: int, tag: str) -> List[Any]:
    if not isinstance(value, list) or len(value) != n:
        raise ValueError(f"{tag} payload must be a {n}-element array")
    return value


def _cant_do_from_wire(value: Any) -> CantDoPayload:
    if value is None:
        return CantDoPayload(None)
    try:
        return CantDoPayload(CantDoReason(str(value)))
    except ValueError:
        # Newer daemons may send reasons this client does not know yet.
        return CantDoPayload(None)


def _payment_request_from_wire(value: Any) -> PaymentRequestPayload:
    order, invoice, amount = _as_list(value, 3, "payment_request")
    return PaymentRequestPayload(
        SmallOrder.model_validate(order) if order is not None else None,
        str(invoice),
        int(amount) if amount is not None else None,
    )


def _dispute_from_wire(value: Any) -> DisputePayload:
    dispute_id, info = _as_list(value, 2, "dispute")
    return DisputePayload(str(dispute_id), SolverDisputeInfo.model_validate(info) if info is not None else None)


_PAYLOAD_PARSERS: Dict[str, Callable[[Any], Payload]] = {
    "order": lambda v: OrderPayload(SmallOrder.model_validate(v)),
    "payment_request": _payment_request_from_wire,
    "text_message": lambda v: TextMessagePayload(str(v)),
    "peer": lambda v: PeerPayload(Peer.model_validate(v)),
    "rating_user": lambda v: RatingPayload(int(v)),
    "amount": lambda v: AmountPayload(int(v)),
    "dispute": _dispute_from_wire,
    "cant_do": _cant_do_from_wire,
    "next_trade": lambda v: NextTradePayload(str(_as_list(v, 2, "next_trade")[0]), int(v[1])),
    "ids": lambda v: IdsPayload([str(x) for x in v]),
    "orders": lambda v: OrdersPayload([SmallOrder.model_validate(o) for o in v]),
}


def payload_from_wire(obj: Any) -> Optional[Payload]:
    if obj is None:
        return None
    if not isinstance(obj, dict) or len(obj) != 1:
        raise relaytrade_error(RT_E_MESSAGE_FORMAT, "payload must be a single-key object")
    (tag, value), = obj.items()
    parser = _PAYLOAD_PARSERS.get(tag)
    if parser is None:
        raise relaytrade_error(RT_E_MESSAGE_FORMAT, f"unknown payload variant {tag!r}")
    try:
        return parser(value)
    except (ValidationError, ValueError, TypeError, IndexError) as e:
        raise relaytrade_error(RT_E_MESSAGE_FORMAT, f"invalid {tag} payload: {e}") from e


def payload_to_wire(payload: Optional[Payload]) -> Optional[Dict[str, Any]]:
    if payload is None:
        return None
    return {payload.tag: payload.to_wire()}


def _optional_int(data: Dict[str, Any], field_name: str) -> Optional[int]:
    value = data.get(field_name)
    if value is None:
        return None
    if isinstance(value, bool):
        raise relaytrade_error(RT_E_MESSAGE_FORMAT, f"{field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise relaytrade_error(RT_E_MESSAGE_FORMAT, f"{field_name} must be an integer, got {value!r}") from e


class MessageType(str, Enum):
    ORDER = "order"
    DISPUTE = "dispute"
    CANT_DO = "cant-do"
    RATE = "rate"
    DM = "dm"
    RESTORE = "restore"


@dataclass
class MessageKind:
    action: Action
    id: Optional[str] = None
    request_id: Optional[int] = None
    trade_index: Optional[int] = None
    payload: Optional[Payload] = None
    version: int = PROTOCOL_VERSION

    def to_wire(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "request_id": self.request_id,
            "trade_index": self.trade_index,
            "id": self.id,
            "action": self.action.value,
            "payload": payload_to_wire(self.payload),
        }

    @classmethod
    def from_wire(cls, data: Any) -> "MessageKind":
        if not isinstance(data, dict):
            raise relaytrade_error(RT_E_MESSAGE_FORMAT, "message kind must be an object")
        try:
            action = Action(data.get("action"))
        except ValueError as e:
            raise relaytrade_error(RT_E_MESSAGE_FORMAT, f"unknown action {data.get('action')!r}") from e
        request_id = _optional_int(data, "request_id")
        trade_index = _optional_int(data, "trade_index")
        version = _optional_int(data, "version")
        return cls(
            action=action,
            id=str(data["id"]) if data.get("id") is not None else None,
            request_id=request_id,
            trade_index=trade_index,
            payload=payload_from_wire(data.get("payload")),
            version=PROTOCOL_VERSION if version is None else version,
        )


@dataclass
class Message:
    type: MessageType
    kind: MessageKind

    @property
    def action(self) -> Action:
        return self.kind.action

    @property
    def request_id(self) -> Optional[int]:
        return self.kind.request_id

    @property
    def payload(self) -> Optional[Payload]:
        return self.kind.payload

    @property
    def cant_do_reason(self) -> Optional[CantDoReason]:
        if isinstance(self.kind.payload, CantDoPayload):
            return self.kind.payload.reason
        return None

    @property
    def is_cant_do(self) -> bool:
        return self.kind.action == Action.CANT_DO or isinstance(self.kind.payload, CantDoPayload)

    def to_wire(self) -> Dict[str, Any]:
        return {self.type.value: self.kind.to_wire()}

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), separators=(",", ":"), ensure_ascii=False)

    def digest(self) -> bytes:
        """SHA-256 of the compact JSON form; what a trade key signs."""
        return hashlib.sha256(self.to_json().encode("utf-8")).digest()

    @classmethod
    def from_wire(cls, data: Any) -> "Message":
        if not isinstance(data, dict) or len(data) != 1:
            raise relaytrade_error(RT_E_MESSAGE_FORMAT, "message must be a single-key object")
        (type_tag, body), = data.items()
        try:
            mtype = MessageType(type_tag)
        except ValueError as e:
            raise relaytrade_error(RT_E_MESSAGE_FORMAT, f"unknown message type {type_tag!r}") from e
        return cls(type=mtype, kind=MessageKind.from_wire(body))

    @classmethod
    def from_json(cls, raw: str) -> "Message":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise relaytrade_error(RT_E_MESSAGE_FORMAT, f"message is not JSON: {e}") from e
        return cls.from_wire(data)

    @classmethod
    def new_order(
        cls,
        order_id: Optional[str],
        request_id: Optional[int],
        trade_index: Optional[int],
        action: Action,
        payload: Optional[Payload] = None,
    ) -> "Message":
        return cls(MessageType.ORDER, MessageKind(action, order_id, request_id, trade_index, payload))

    @classmethod
    def new_dispute(
        cls,
        dispute_id: Optional[str],
        request_id: Optional[int],
        trade_index: Optional[int],
        action: Action,
        payload: Optional[Payload] = None,
    ) -> "Message":
        return cls(MessageType.DISPUTE, MessageKind(action, dispute_id, request_id, trade_index, payload))

    @classmethod
    def new_cant_do(
        cls, target_id: Optional[str], request_id: Optional[int], reason: Optional[CantDoReason]
    ) -> "Message":
        return cls(
            MessageType.CANT_DO,
            MessageKind(Action.CANT_DO, target_id, request_id, None, CantDoPayload(reason)),
        )
