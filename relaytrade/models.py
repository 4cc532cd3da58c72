"""Persistent records and the small enums shared across components."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .protocol import FINAL_DISPUTE_STATUSES, DisputeStatus


class ChatParty(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class ChatSender(str, Enum):
    ADMIN = "admin"
    BUYER = "buyer"
    SELLER = "seller"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @classmethod
    def for_party(cls, party: ChatParty) -> "ChatSender":
        return cls.BUYER if party == ChatParty.BUYER else cls.SELLER


@dataclass
class User:
    identity_pubkey: str
    seed_phrase: str
    last_trade_index: int = 0
    created_at: int = 0

    def __repr__(self) -> str:
        return f"User(identity_pubkey={self.identity_pubkey!r}, last_trade_index={self.last_trade_index})"


@dataclass
class TradeRecord:
    """One order this client created or took.

    ``trade_index`` is the derivation index of the order's trade key.
    """

    id: str
    trade_index: int
    kind: Optional[str] = None
    status: Optional[str] = None
    amount: int = 0
    fiat_code: str = ""
    fiat_amount: int = 0
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None
    payment_method: str = ""
    premium: int = 0
    trade_pubkey: Optional[str] = None
    counterparty_pubkey: Optional[str] = None
    buyer_invoice: Optional[str] = None
    is_mine: bool = True
    active: bool = True
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_range(self) -> bool:
        return self.min_amount is not None and self.max_amount is not None


@dataclass
class DisputeRecord:
    """A dispute taken by this solver."""

    id: str
    order_id: Optional[str] = None
    status: str = DisputeStatus.IN_PROGRESS.value
    kind: Optional[str] = None
    initiator_pubkey: Optional[str] = None
    buyer_pubkey: Optional[str] = None
    seller_pubkey: Optional[str] = None
    amount: int = 0
    fiat_amount: int = 0
    premium: int = 0
    payment_method: str = ""
    buyer_shared_key: Optional[str] = None
    seller_shared_key: Optional[str] = None
    buyer_chat_last_seen: Optional[int] = None
    seller_chat_last_seen: Optional[int] = None
    taken_at: int = 0
    created_at: int = 0

    @property
    def is_finalized(self) -> bool:
        try:
            return DisputeStatus(self.status) in FINAL_DISPUTE_STATUSES
        except ValueError:
            return False

    def party_pubkey(self, party: ChatParty) -> Optional[str]:
        return self.buyer_pubkey if party == ChatParty.BUYER else self.seller_pubkey

    def last_seen(self, party: ChatParty) -> Optional[int]:
        return self.buyer_chat_last_seen if party == ChatParty.BUYER else self.seller_chat_last_seen

    def shared_key(self, party: ChatParty) -> Optional[str]:
        return self.buyer_shared_key if party == ChatParty.BUYER else self.seller_shared_key
