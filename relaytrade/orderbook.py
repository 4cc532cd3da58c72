"""Public order book and dispute list.

The daemon publishes one replaceable event per order (kind 38383) and per
dispute (kind 38386). Everything a list needs is in the tags; the newest
event for an id wins.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from .events import KIND_DISPUTE, KIND_ORDER, Event
from .protocol import DisputeStatus, OrderKind, OrderStatus, SmallOrder
from .relay import Filter, RelayTransport
from .scheduler import PeriodicTask


logger = logging.getLogger("relaytrade.orderbook")

LIST_FETCH_LIMIT = 50


@dataclass(frozen=True)
class DisputeListing:
    id: str
    status: str
    created_at: int = 0


def _int(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _uuid(value: str) -> Optional[str]:
    try:
        return str(uuid.UUID(value))
    except (TypeError, ValueError):
        return None


def order_from_tags(tags: Sequence[Sequence[str]]) -> SmallOrder:
    fields: Dict[str, Any] = {}
    for tag in tags:
        if not tag:
            continue
        key, values = tag[0], list(tag[1:])
        v = values[0] if values else ""
        if key == "d":
            fields["id"] = _uuid(v)
        elif key == "k":
            try:
                fields["kind"] = OrderKind(v)
            except ValueError:
                fields["kind"] = None
        elif key == "f":
            fields["fiat_code"] = v
        elif key == "s":
            try:
                fields["status"] = OrderStatus(v)
            except ValueError:
                fields["status"] = OrderStatus.PENDING
        elif key == "amt":
            fields["amount"] = _int(v) or 0
        elif key == "fa":
            # Fractional fiat amounts are not representable; skip the tag.
            if "." in v:
                continue
            if len(values) > 1:
                fields["min_amount"] = _int(v)
                fields["max_amount"] = _int(values[1])
            else:
                fields["fiat_amount"] = _int(v) or 0
        elif key == "pm":
            fields["payment_method"] = ",".join(values)
        elif key == "premium":
            fields["premium"] = _int(v) or 0
    return SmallOrder(**fields)


def dispute_from_tags(tags: Sequence[Sequence[str]]) -> Optional[DisputeListing]:
    """None when the id or status tag is missing or invalid."""
    dispute_id: Optional[str] = None
    status: Optional[str] = None
    for tag in tags:
        if len(tag) < 2:
            continue
        if tag[0] == "d":
            dispute_id = _uuid(tag[1])
            if dispute_id is None:
                return None
        elif tag[0] == "s":
            try:
                status = DisputeStatus(tag[1]).value
            except ValueError:
                return None
    if dispute_id is None or status is None:
        return None
    return DisputeListing(dispute_id, status)


def parse_orders_events(
    events: Iterable[Event],
    *,
    currencies: Optional[Sequence[str]] = None,
    status: Optional[OrderStatus] = None,
    kind: Optional[OrderKind] = None,
) -> List[SmallOrder]:
    latest: Dict[str, SmallOrder] = {}
    for event in events:
        if event.kind != KIND_ORDER:
            continue
        try:
            order = order_from_tags(event.tags)
        except ValidationError as e:
            logger.warning("unparseable order event %s: %s", event.id[:16], e)
            continue
        if order.id is None or order.kind is None:
            logger.debug("order event %s has no id or kind", event.id[:16])
            continue
        order = order.model_copy(update={"created_at": event.created_at})
        current = latest.get(order.id)
        if current is None or (order.created_at or 0) > (current.created_at or 0):
            latest[order.id] = order

    out = [
        o
        for o in latest.values()
        if (status is None or o.status == status)
        and (not currencies or o.fiat_code in currencies)
        and (kind is None or o.kind == kind)
    ]
    out.sort(key=lambda o: o.created_at or 0, reverse=True)
    return out


def parse_disputes_events(events: Iterable[Event]) -> List[DisputeListing]:
    latest: Dict[str, DisputeListing] = {}
    for event in events:
        if event.kind != KIND_DISPUTE:
            continue
        listing = dispute_from_tags(event.tags)
        if listing is None:
            logger.warning("unparseable dispute event %s", event.id[:16])
            continue
        listing = DisputeListing(listing.id, listing.status, event.created_at)
        current = latest.get(listing.id)
        if current is None or listing.created_at > current.created_at:
            latest[listing.id] = listing
    return sorted(latest.values(), key=lambda d: d.created_at, reverse=True)


def list_filter(kind: int, daemon_pubkey: str, limit: int = LIST_FETCH_LIMIT) -> Filter:
    return Filter(authors=[daemon_pubkey], kinds=[kind], limit=limit)


async def fetch_orders(
    relay: RelayTransport,
    daemon_pubkey: str,
    *,
    timeout: float = 15.0,
    currencies: Optional[Sequence[str]] = None,
    status: Optional[OrderStatus] = OrderStatus.PENDING,
    kind: Optional[OrderKind] = None,
) -> List[SmallOrder]:
    events = await relay.fetch([list_filter(KIND_ORDER, daemon_pubkey)], timeout=timeout)
    return parse_orders_events(events, currencies=currencies, status=status, kind=kind)


async def fetch_disputes(relay: RelayTransport, daemon_pubkey: str, *, timeout: float = 15.0) -> List[DisputeListing]:
    events = await relay.fetch([list_filter(KIND_DISPUTE, daemon_pubkey)], timeout=timeout)
    return parse_disputes_events(events)


class ListRefresher:
    """Keeps the latest order book and dispute list in memory."""

    def __init__(
        self,
        relay: RelayTransport,
        daemon_pubkey: str,
        *,
        timeout: float = 15.0,
        currencies: Optional[Sequence[str]] = None,
    ):
        self.relay = relay
        self.daemon_pubkey = daemon_pubkey
        self.timeout = timeout
        self.currencies = list(currencies) if currencies else None
        self.orders: List[SmallOrder] = []
        self.disputes: List[DisputeListing] = []

    async def refresh(self) -> int:
        self.orders = await fetch_orders(
            self.relay, self.daemon_pubkey, timeout=self.timeout, currencies=self.currencies
        )
        self.disputes = await fetch_disputes(self.relay, self.daemon_pubkey, timeout=self.timeout)
        return len(self.orders) + len(self.disputes)

    def as_task(self, interval: float = 10.0, results=None) -> PeriodicTask:
        return PeriodicTask("list-refresh", interval, self.refresh, results=results)
