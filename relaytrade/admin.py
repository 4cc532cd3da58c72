"""Solver (admin) dispute actions.

The solver talks to the daemon with a single long-lived key that acts as
both the trade and the identity key of each gift wrap.
"""

from __future__ import annotations

import logging
from typing import Optional

from .chat import check_chat_keys, derive_chat_keys
from .correlator import RequestCorrelator, new_request_id
from .envelope import EnvelopeCodec, PrivacyMode, SenderKeys
from .errors import (
    KIND_PROTOCOL_MISMATCH,
    RT_E_ADMIN_KEY_MISSING,
    RT_E_DISPUTE_STATE,
    RT_E_MESSAGE_FORMAT,
    RT_E_UNEXPECTED_SENDER,
    relaytrade_error,
)
from .events import now_ts
from .keys import KeyPair, parse_public_key
from .models import ChatParty, DisputeRecord
from .protocol import Action, DisputePayload, DisputeStatus, Message, TextMessagePayload
from .relay import RelayTransport
from .storage import SqliteTradeStore


logger = logging.getLogger("relaytrade.admin")


def load_admin_keys(secret_hex: Optional[str]) -> KeyPair:
    if not secret_hex:
        raise relaytrade_error(RT_E_ADMIN_KEY_MISSING, "admin secret key is not configured")
    return KeyPair.from_hex(secret_hex)


class AdminClient:
    def __init__(
        self,
        store: SqliteTradeStore,
        relay: RelayTransport,
        codec: EnvelopeCodec,
        admin_keys: KeyPair,
        daemon_pubkey: str,
        *,
        correlator: Optional[RequestCorrelator] = None,
    ):
        self.store = store
        self.relay = relay
        self.codec = codec
        self.admin_keys = admin_keys
        self.daemon_pubkey = daemon_pubkey
        self.correlator = correlator or RequestCorrelator()

    @property
    def _sender(self) -> SenderKeys:
        return SenderKeys(trade=self.admin_keys, identity=self.admin_keys)

    def _wrap(self, message: Message):
        return self.codec.encode(message, self._sender, self.daemon_pubkey, PrivacyMode.REPUTATION)

    async def take_dispute(self, dispute_id: str) -> DisputeRecord:
        """Ask the daemon for a dispute and persist it once it is ours.

        Both chat keys are derived and stored right away so the chat channels
        are addressable before the first sync.
        """
        request_id = new_request_id()
        message = Message.new_dispute(dispute_id, request_id, None, Action.ADMIN_TAKE_DISPUTE)
        expected = (Action.ADMIN_TOOK_DISPUTE,)
        result = await self.correlator.exchange(
            self.relay, self.codec, self._wrap(message), self.admin_keys, request_id, expected_actions=expected
        )
        reply = result.raise_for_state(expected)
        if result.sender != self.daemon_pubkey:
            raise relaytrade_error(
                RT_E_UNEXPECTED_SENDER,
                "reply did not come from the daemon",
                kind=KIND_PROTOCOL_MISMATCH,
                sender=result.sender,
            )

        payload = reply.payload
        if not isinstance(payload, DisputePayload) or payload.info is None:
            raise relaytrade_error(RT_E_MESSAGE_FORMAT, "admin-took-dispute reply carries no dispute info")
        if payload.dispute_id != dispute_id:
            raise relaytrade_error(
                RT_E_MESSAGE_FORMAT,
                "reply is for a different dispute",
                kind=KIND_PROTOCOL_MISMATCH,
                expected=dispute_id,
                got=payload.dispute_id,
            )
        info = payload.info
        if not info.buyer_pubkey or not info.seller_pubkey:
            raise relaytrade_error(RT_E_DISPUTE_STATE, "dispute info lacks buyer or seller pubkey")
        parse_public_key(info.buyer_pubkey)
        parse_public_key(info.seller_pubkey)

        record = DisputeRecord(
            id=dispute_id,
            order_id=info.id,
            status=DisputeStatus.IN_PROGRESS.value,
            kind=info.kind,
            initiator_pubkey=info.initiator_pubkey,
            buyer_pubkey=info.buyer_pubkey,
            seller_pubkey=info.seller_pubkey,
            amount=info.amount,
            fiat_amount=info.fiat_amount,
            premium=info.premium,
            payment_method=info.payment_method,
            taken_at=now_ts(),
            created_at=info.created_at,
        )
        keys = derive_chat_keys(self.admin_keys.secret, record)
        collision = check_chat_keys(record, keys)
        if collision is not None:
            logger.error("dispute %s: %s", dispute_id, collision.message)
        record.buyer_shared_key = keys[ChatParty.BUYER].secret_hex
        record.seller_shared_key = keys[ChatParty.SELLER].secret_hex
        self.store.save_dispute(record)
        self.store.set_dispute_status(dispute_id, DisputeStatus.IN_PROGRESS.value)
        logger.info("dispute %s taken (order %s)", dispute_id, info.id)
        return record

    def _open_dispute(self, dispute_id: str) -> DisputeRecord:
        record = self.store.get_dispute(dispute_id)
        if record.is_finalized:
            raise relaytrade_error(
                RT_E_DISPUTE_STATE,
                f"dispute is already finalized ({record.status})",
                dispute_id=dispute_id,
            )
        return record

    async def _send(self, target_id: str, action: Action, payload=None) -> None:
        message = Message.new_dispute(target_id, None, None, action, payload)
        await self.relay.publish(self._wrap(message))
        logger.info("%s sent for %s", action.value, target_id)

    async def settle(self, dispute_id: str) -> None:
        """Pay the buyer. Fire-and-forget; ``finalize`` records the outcome."""
        record = self._open_dispute(dispute_id)
        await self._send(record.order_id or record.id, Action.ADMIN_SETTLE)

    async def cancel(self, dispute_id: str) -> None:
        """Refund the seller."""
        record = self._open_dispute(dispute_id)
        await self._send(record.order_id or record.id, Action.ADMIN_CANCEL)

    async def add_solver(self, dispute_id: str, solver_pubkey: str) -> None:
        parse_public_key(solver_pubkey)
        await self._send(dispute_id, Action.ADMIN_ADD_SOLVER, TextMessagePayload(solver_pubkey))

    async def finalize(self, dispute_id: str, *, settle: bool) -> DisputeRecord:
        if settle:
            await self.settle(dispute_id)
            status = DisputeStatus.SETTLED
        else:
            await self.cancel(dispute_id)
            status = DisputeStatus.SELLER_REFUNDED
        self.store.set_dispute_status(dispute_id, status.value)
        logger.info("dispute %s finalized as %s", dispute_id, status.value)
        return self.store.get_dispute(dispute_id)
