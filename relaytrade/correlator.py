"""Request/response correlation.

Every request carries a random 64-bit ``request_id``. A pending request moves
exactly once from ``SENT`` to one of::

    MATCHED     a response echoed our id (or is an allowed unsolicited action)
    MISMATCHED  a response carried a different id, or none where one is required
    TIMED_OUT   nothing acceptable arrived within the window

Once resolved, later arrivals for the same id are ignored. Timed-out requests
are only forgotten locally; nothing is cancelled on the wire.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from .envelope import EnvelopeCodec
from .errors import (
    EnvelopeDecodeError,
    KIND_PROTOCOL_MISMATCH,
    KIND_RECOVERABLE,
    RT_E_CANT_DO,
    RT_E_REQUEST_MISMATCH,
    RT_E_TIMEOUT,
    RT_E_UNEXPECTED_ACTION,
    relaytrade_error,
)
from .events import KIND_GIFT_WRAP, Event
from .keys import KeyPair
from .protocol import UNSOLICITED_ACTIONS, Action, Message, cant_do_description
from .relay import Filter, RelayTransport


logger = logging.getLogger("relaytrade.correlator")

DEFAULT_TIMEOUT_SECONDS = 15.0
_RESOLVED_MEMORY = 4096


def new_request_id() -> int:
    return secrets.randbits(64)


class CorrelationState(str, Enum):
    SENT = "sent"
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    TIMED_OUT = "timed-out"


@dataclass
class PendingRequest:
    request_id: int
    issued_at: float
    timeout: float
    expected_actions: FrozenSet[Action] = frozenset()
    state: CorrelationState = CorrelationState.SENT

    def expired(self, now: float) -> bool:
        return now - self.issued_at > self.timeout


@dataclass(frozen=True)
class CorrelationResult:
    state: CorrelationState
    request_id: Optional[int]
    message: Optional[Message] = None
    sender: Optional[str] = None
    reason: str = ""

    @property
    def matched(self) -> bool:
        return self.state == CorrelationState.MATCHED

    def raise_for_state(self, expected_actions: Iterable[Action] = ()) -> Message:
        """Return the matched message or raise the typed error for this outcome."""
        if self.state == CorrelationState.TIMED_OUT:
            raise relaytrade_error(
                RT_E_TIMEOUT,
                "no response before timeout",
                retryable=True,
                kind=KIND_RECOVERABLE,
                request_id=self.request_id,
            )
        if self.state != CorrelationState.MATCHED or self.message is None:
            raise relaytrade_error(
                RT_E_REQUEST_MISMATCH,
                self.reason or "response does not belong to this request",
                kind=KIND_PROTOCOL_MISMATCH,
                request_id=self.request_id,
            )
        if self.message.is_cant_do:
            reason = self.message.cant_do_reason
            raise relaytrade_error(
                RT_E_CANT_DO,
                cant_do_description(reason),
                reason=reason.value if reason else None,
                request_id=self.request_id,
            )
        allowed = frozenset(expected_actions)
        if allowed and self.message.action not in allowed:
            raise relaytrade_error(
                RT_E_UNEXPECTED_ACTION,
                f"unexpected response action {self.message.action.value}",
                expected=sorted(a.value for a in allowed),
            )
        return self.message


class RequestCorrelator:
    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.timeout = float(timeout)
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Dict[int, PendingRequest] = {}
        # request_id -> final state, oldest first
        self._resolved: "OrderedDict[int, CorrelationState]" = OrderedDict()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def register(
        self,
        expected_actions: Iterable[Action] = (),
        *,
        request_id: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> PendingRequest:
        pending = PendingRequest(
            request_id=new_request_id() if request_id is None else int(request_id),
            issued_at=self._clock(),
            timeout=self.timeout if timeout is None else float(timeout),
            expected_actions=frozenset(expected_actions),
        )
        with self._lock:
            self._pending[pending.request_id] = pending
        return pending

    def _finish(self, pending: PendingRequest, state: CorrelationState) -> None:
        # Caller holds the lock.
        pending.state = state
        self._pending.pop(pending.request_id, None)
        self._resolved[pending.request_id] = state
        while len(self._resolved) > _RESOLVED_MEMORY:
            self._resolved.popitem(last=False)

    def resolve(
        self,
        pending: PendingRequest,
        message: Message,
        *,
        sender: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Optional[CorrelationResult]:
        """Apply one response to one pending request.

        Returns None when the request was already resolved (the response is
        ignored).
        """
        now = self._clock() if now is None else now
        with self._lock:
            if pending.state != CorrelationState.SENT:
                return None
            if pending.expired(now):
                self._finish(pending, CorrelationState.TIMED_OUT)
                return CorrelationResult(CorrelationState.TIMED_OUT, pending.request_id, reason="late response ignored")

            rid = message.request_id
            if rid == pending.request_id:
                self._finish(pending, CorrelationState.MATCHED)
                return CorrelationResult(CorrelationState.MATCHED, rid, message, sender)
            if rid is None and message.action in UNSOLICITED_ACTIONS:
                self._finish(pending, CorrelationState.MATCHED)
                return CorrelationResult(CorrelationState.MATCHED, pending.request_id, message, sender)

            self._finish(pending, CorrelationState.MISMATCHED)
            if rid is None:
                reason = f"response {message.action.value} carries no request id"
            else:
                reason = f"response request id {rid} does not match {pending.request_id}"
        logger.warning("request %s rejected: %s", pending.request_id, reason)
        return CorrelationResult(CorrelationState.MISMATCHED, pending.request_id, message, sender, reason)

    def match(
        self, message: Message, *, sender: Optional[str] = None, now: Optional[float] = None
    ) -> Optional[CorrelationResult]:
        """Route a response to whichever pending request carries its id."""
        rid = message.request_id
        with self._lock:
            pending = self._pending.get(rid) if rid is not None else None
            already_resolved = rid is not None and rid in self._resolved
        if pending is not None:
            return self.resolve(pending, message, sender=sender, now=now)
        if already_resolved:
            return None
        reason = "response matches no pending request"
        logger.warning("%s (request id %s, action %s)", reason, rid, message.action.value)
        return CorrelationResult(CorrelationState.MISMATCHED, rid, message, sender, reason)

    def time_out(self, pending: PendingRequest) -> CorrelationResult:
        with self._lock:
            if pending.state == CorrelationState.SENT:
                self._finish(pending, CorrelationState.TIMED_OUT)
        return CorrelationResult(pending.state, pending.request_id, reason="no response before timeout")

    def expire(self, now: Optional[float] = None) -> List[CorrelationResult]:
        now = self._clock() if now is None else now
        out: List[CorrelationResult] = []
        with self._lock:
            for pending in list(self._pending.values()):
                if pending.expired(now):
                    self._finish(pending, CorrelationState.TIMED_OUT)
                    out.append(CorrelationResult(CorrelationState.TIMED_OUT, pending.request_id))
        return out

    def discard(self, pending: PendingRequest) -> None:
        with self._lock:
            self._pending.pop(pending.request_id, None)

    async def exchange(
        self,
        relay: RelayTransport,
        codec: EnvelopeCodec,
        request: Event,
        response_keys: KeyPair,
        request_id: int,
        *,
        expected_actions: Iterable[Action] = (),
        timeout: Optional[float] = None,
    ) -> CorrelationResult:
        """Publish ``request`` and wait for the correlated response.

        The response channel (gift wraps to ``response_keys``) is subscribed
        before publishing so a fast responder cannot be missed. Undecodable
        events on the channel are skipped.
        """
        pending = self.register(expected_actions, request_id=request_id, timeout=timeout)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + pending.timeout
        flt = Filter(kinds=[KIND_GIFT_WRAP], pubkeys=[response_keys.public_key], limit=0)
        try:
            async with await relay.subscribe([flt]) as sub:
                await relay.publish(request)
                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return self.time_out(pending)
                    event = await sub.next(remaining)
                    if event is None:
                        return self.time_out(pending)
                    try:
                        decoded = codec.decode(event, response_keys)
                    except EnvelopeDecodeError as e:
                        logger.debug("ignoring undecodable response event: %s", e)
                        continue
                    result = self.resolve(pending, decoded.message, sender=decoded.sender)
                    if result is not None:
                        return result
        finally:
            self.discard(pending)
