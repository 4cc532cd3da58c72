"""Relay transport.

The engine only needs three things from the relay network: publish an event,
fetch stored events matching a filter, and subscribe to a live stream. Those
are captured by the ``RelayTransport`` protocol so tests can plug in an
in-memory relay and production code a ``WebSocketRelayPool``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, runtime_checkable

from websockets.asyncio.client import connect

from .errors import RT_E_PUBLISH_REJECTED, RT_E_RELAY_UNAVAILABLE, relaytrade_error, KIND_RECOVERABLE
from .events import Event


logger = logging.getLogger("relaytrade.relay")


@dataclass
class Filter:
    ids: List[str] = field(default_factory=list)
    authors: List[str] = field(default_factory=list)
    kinds: List[int] = field(default_factory=list)
    pubkeys: List[str] = field(default_factory=list)
    tags: Dict[str, List[str]] = field(default_factory=dict)
    since: Optional[int] = None
    until: Optional[int] = None
    limit: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.ids:
            d["ids"] = list(self.ids)
        if self.authors:
            d["authors"] = list(self.authors)
        if self.kinds:
            d["kinds"] = list(self.kinds)
        if self.pubkeys:
            d["#p"] = list(self.pubkeys)
        for name, values in self.tags.items():
            d[f"#{name}"] = list(values)
        if self.since is not None:
            d["since"] = int(self.since)
        if self.until is not None:
            d["until"] = int(self.until)
        if self.limit is not None:
            d["limit"] = int(self.limit)
        return d

    def matches(self, event: Event) -> bool:
        if self.ids and event.id not in self.ids:
            return False
        if self.authors and event.pubkey not in self.authors:
            return False
        if self.kinds and event.kind not in self.kinds:
            return False
        if self.pubkeys and not set(event.tag_values("p")) & set(self.pubkeys):
            return False
        for name, values in self.tags.items():
            if not set(event.tag_values(name)) & set(values):
                return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        return True


class Subscription:
    """A live stream of events for one REQ.

    Events are deduplicated by id because the same event usually arrives from
    several relays.
    """

    def __init__(self, sub_id: str, filters: Sequence[Filter], transport: Optional["RelayTransport"] = None):
        self.id = sub_id
        self.filters = list(filters)
        self._transport = transport
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self._seen: Set[str] = set()
        self._eose = asyncio.Event()
        self.closed = False

    def push(self, event: Event) -> None:
        if self.closed or event.id in self._seen:
            return
        self._seen.add(event.id)
        self._queue.put_nowait(event)

    def mark_eose(self) -> None:
        self._eose.set()

    @property
    def end_of_stored_events(self) -> bool:
        return self._eose.is_set()

    async def wait_eose(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._eose.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def next(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None when ``timeout`` elapses first."""
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> List[Event]:
        out: List[Event] = []
        while not self._queue.empty():
            out.append(self._queue.get_nowait())
        return out

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._transport is not None:
            await self._transport.unsubscribe(self.id)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


def new_subscription_id() -> str:
    return secrets.token_hex(8)


@runtime_checkable
class RelayTransport(Protocol):
    async def publish(self, event: Event) -> None:
        ...

    async def fetch(self, filters: Sequence[Filter], timeout: float) -> List[Event]:
        ...

    async def subscribe(self, filters: Sequence[Filter]) -> Subscription:
        ...

    async def unsubscribe(self, sub_id: str) -> None:
        ...


class WebSocketRelayPool:
    """Speaks the relay wire protocol to several relays at once.

    Client to relay: ``["EVENT", ev]``, ``["REQ", id, filter...]``,
    ``["CLOSE", id]``. Relay to client: ``["EVENT", id, ev]``,
    ``["EOSE", id]``, ``["OK", event_id, accepted, msg]``, ``["NOTICE", msg]``.
    """

    def __init__(self, urls: Sequence[str], *, connect_timeout: float = 10.0, publish_timeout: float = 5.0):
        self.urls = list(urls)
        self.connect_timeout = connect_timeout
        self.publish_timeout = publish_timeout
        self._conns: Dict[str, Any] = {}
        self._readers: Dict[str, "asyncio.Task[None]"] = {}
        self._subs: Dict[str, Subscription] = {}
        self._eose_from: Dict[str, Set[str]] = {}
        self._acks: Dict[str, "asyncio.Future[bool]"] = {}

    @property
    def connected(self) -> List[str]:
        return list(self._conns.keys())

    async def connect(self) -> None:
        for url in self.urls:
            if url in self._conns:
                continue
            try:
                ws = await asyncio.wait_for(connect(url, ping_interval=30, ping_timeout=10), self.connect_timeout)
            except Exception as e:
                logger.warning("relay %s unreachable: %s", url, e)
                continue
            self._conns[url] = ws
            self._readers[url] = asyncio.create_task(self._reader(url, ws), name=f"relay-reader:{url}")
            logger.info("connected to relay %s", url)
        if not self._conns:
            raise relaytrade_error(
                RT_E_RELAY_UNAVAILABLE, "no relay could be reached", retryable=True, kind=KIND_RECOVERABLE
            )

    async def close(self) -> None:
        for task in self._readers.values():
            task.cancel()
        for url, ws in list(self._conns.items()):
            try:
                await ws.close()
            except Exception as e:
                logger.debug("closing %s: %s", url, e)
        self._conns.clear()
        self._readers.clear()

    async def _send(self, frame: List[Any]) -> int:
        raw = json.dumps(frame, separators=(",", ":"), ensure_ascii=False)
        sent = 0
        for url, ws in list(self._conns.items()):
            try:
                await ws.send(raw)
                sent += 1
            except Exception as e:
                logger.warning("relay %s dropped: %s", url, e)
                self._drop(url)
        return sent

    def _drop(self, url: str) -> None:
        self._conns.pop(url, None)
        task = self._readers.pop(url, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _reader(self, url: str, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, ValueError):
                    logger.debug("relay %s sent non-JSON frame", url)
                    continue
                if isinstance(frame, list) and frame:
                    self._dispatch(url, frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("relay %s reader stopped: %s", url, e)
        finally:
            self._drop(url)

    def _dispatch(self, url: str, frame: List[Any]) -> None:
        verb = frame[0]
        if verb == "EVENT" and len(frame) >= 3:
            sub = self._subs.get(str(frame[1]))
            if sub is None:
                return
            try:
                event = Event.from_dict(frame[2])
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("relay %s sent malformed event: %s", url, e)
                return
            if event.verify():
                sub.push(event)
            else:
                logger.debug("relay %s sent event with bad signature %s", url, event.id[:16])
        elif verb == "EOSE" and len(frame) >= 2:
            sub_id = str(frame[1])
            seen = self._eose_from.setdefault(sub_id, set())
            seen.add(url)
            sub = self._subs.get(sub_id)
            if sub is not None and seen >= set(self._conns):
                sub.mark_eose()
        elif verb == "OK" and len(frame) >= 3:
            fut = self._acks.get(str(frame[1]))
            if fut is not None and not fut.done() and bool(frame[2]):
                fut.set_result(True)
            elif not bool(frame[2]):
                logger.warning("relay %s rejected %s: %s", url, str(frame[1])[:16], frame[3] if len(frame) > 3 else "")
        elif verb == "NOTICE":
            logger.info("relay %s notice: %s", url, frame[1] if len(frame) > 1 else "")
        elif verb == "CLOSED" and len(frame) >= 2:
            logger.info("relay %s closed subscription %s", url, frame[1])

    async def publish(self, event: Event) -> None:
        fut: "asyncio.Future[bool]" = asyncio.get_running_loop().create_future()
        self._acks[event.id] = fut
        try:
            if await self._send(["EVENT", event.to_dict()]) == 0:
                raise relaytrade_error(
                    RT_E_RELAY_UNAVAILABLE, "no relay connected", retryable=True, kind=KIND_RECOVERABLE
                )
            try:
                await asyncio.wait_for(fut, self.publish_timeout)
            except asyncio.TimeoutError:
                raise relaytrade_error(
                    RT_E_PUBLISH_REJECTED,
                    "no relay accepted the event",
                    retryable=True,
                    kind=KIND_RECOVERABLE,
                    event_id=event.id,
                )
        finally:
            self._acks.pop(event.id, None)

    async def subscribe(self, filters: Sequence[Filter]) -> Subscription:
        sub = Subscription(new_subscription_id(), filters, transport=self)
        self._subs[sub.id] = sub
        await self._send(["REQ", sub.id] + [f.to_wire() for f in filters])
        return sub

    async def unsubscribe(self, sub_id: str) -> None:
        self._subs.pop(sub_id, None)
        self._eose_from.pop(sub_id, None)
        await self._send(["CLOSE", sub_id])

    async def fetch(self, filters: Sequence[Filter], timeout: float) -> List[Event]:
        async with await self.subscribe(filters) as sub:
            await sub.wait_eose(timeout)
            return sub.drain()
