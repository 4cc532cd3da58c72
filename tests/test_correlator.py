import json

import pytest

from fixtures.fake_daemon import FakeDaemon, reply_to
from fixtures.memory_relay import MemoryRelay
from relaytrade import nip44
from relaytrade.correlator import CorrelationState, RequestCorrelator, new_request_id
from relaytrade.envelope import EnvelopeCodec, SenderKeys
from relaytrade.errors import (
    RT_E_CANT_DO,
    RT_E_REQUEST_MISMATCH,
    RT_E_TIMEOUT,
    RT_E_UNEXPECTED_ACTION,
    RelayTradeError,
)
from relaytrade.events import KIND_GIFT_WRAP, KIND_SEAL, KIND_TEXT_NOTE, build_unsigned, sign_event
from relaytrade.keys import KeyPair
from relaytrade.protocol import Action, CantDoPayload, CantDoReason, Message

ORDER_ID = "3f1c2a8e-5b7d-4c1e-9a0b-2d4f6e8a0c1b"


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _response(request_id, action=Action.FIAT_SENT_OK):
    return Message.new_order(ORDER_ID, request_id, 1, action)


def test_matching_id_resolves_once():
    c = RequestCorrelator(timeout=5)
    p = c.register([Action.FIAT_SENT_OK])

    r = c.resolve(p, _response(p.request_id))
    assert r.state == CorrelationState.MATCHED
    assert r.raise_for_state([Action.FIAT_SENT_OK]).action == Action.FIAT_SENT_OK
    # a second arrival for the same request is ignored
    assert c.resolve(p, _response(p.request_id)) is None
    assert c.match(_response(p.request_id)) is None
    assert c.pending_count == 0


def test_different_id_is_a_mismatch():
    c = RequestCorrelator(timeout=5)
    p = c.register()

    r = c.resolve(p, _response(p.request_id + 1))
    assert r.state == CorrelationState.MISMATCHED
    with pytest.raises(RelayTradeError) as ei:
        r.raise_for_state()
    assert ei.value.code == RT_E_REQUEST_MISMATCH


@pytest.mark.parametrize(
    "action,state",
    [
        (Action.ADD_INVOICE, CorrelationState.MATCHED),
        (Action.PAY_INVOICE, CorrelationState.MATCHED),
        (Action.NEW_ORDER, CorrelationState.MATCHED),
        (Action.RATE_RECEIVED, CorrelationState.MATCHED),
        (Action.RELEASED, CorrelationState.MISMATCHED),
    ],
)
def test_null_request_id_only_allowed_for_unsolicited_actions(action, state):
    c = RequestCorrelator(timeout=5)
    p = c.register()
    assert c.resolve(p, _response(None, action)).state == state


def test_late_response_times_out():
    clock = FakeClock()
    c = RequestCorrelator(timeout=5, clock=clock)
    p = c.register()
    clock.now += 6

    r = c.resolve(p, _response(p.request_id))
    assert r.state == CorrelationState.TIMED_OUT
    with pytest.raises(RelayTradeError) as ei:
        r.raise_for_state()
    assert ei.value.code == RT_E_TIMEOUT
    assert ei.value.retryable


def test_expire_sweeps_only_stale_requests():
    clock = FakeClock()
    c = RequestCorrelator(timeout=5, clock=clock)
    old = c.register()
    clock.now += 3
    fresh = c.register()
    clock.now += 3

    assert [r.request_id for r in c.expire()] == [old.request_id]
    assert fresh.state == CorrelationState.SENT


def test_unknown_response_is_reported_as_mismatch():
    c = RequestCorrelator()
    r = c.match(_response(new_request_id()))
    assert r.state == CorrelationState.MISMATCHED


def test_cant_do_raises_with_reason():
    c = RequestCorrelator()
    p = c.register()
    msg = Message.new_cant_do(ORDER_ID, p.request_id, CantDoReason.NOT_ALLOWED_BY_STATUS)

    with pytest.raises(RelayTradeError) as ei:
        c.resolve(p, msg).raise_for_state()
    assert ei.value.code == RT_E_CANT_DO
    assert ei.value.details["reason"] == "not_allowed_by_status"


def test_unexpected_action_is_rejected():
    c = RequestCorrelator()
    p = c.register()
    r = c.resolve(p, _response(p.request_id, Action.CANCELED))

    with pytest.raises(RelayTradeError) as ei:
        r.raise_for_state([Action.FIAT_SENT_OK])
    assert ei.value.code == RT_E_UNEXPECTED_ACTION


def _request(trade, daemon, request_id):
    msg = Message.new_order(ORDER_ID, request_id, 1, Action.FIAT_SENT)
    return EnvelopeCodec().encode(msg, SenderKeys(trade), daemon.pubkey)


@pytest.mark.asyncio
async def test_exchange_round_trip():
    relay = MemoryRelay()
    daemon = FakeDaemon(relay)
    daemon.on(Action.FIAT_SENT, lambda req: reply_to(req, Action.FIAT_SENT_OK))
    trade = KeyPair.generate()
    rid = new_request_id()

    c = RequestCorrelator(timeout=2)
    r = await c.exchange(relay, EnvelopeCodec(), _request(trade, daemon, rid), trade, rid)

    assert r.state == CorrelationState.MATCHED
    assert r.message.action == Action.FIAT_SENT_OK
    assert r.sender == daemon.pubkey
    assert relay.open_subscriptions == 0
    assert c.pending_count == 0


@pytest.mark.asyncio
async def test_exchange_stops_on_mismatched_reply():
    relay = MemoryRelay()
    daemon = FakeDaemon(relay)
    daemon.on(Action.FIAT_SENT, lambda req: reply_to(req, Action.FIAT_SENT_OK, request_id=1))
    trade = KeyPair.generate()
    rid = 2

    r = await RequestCorrelator(timeout=2).exchange(
        relay, EnvelopeCodec(), _request(trade, daemon, rid), trade, rid
    )
    assert r.state == CorrelationState.MISMATCHED


@pytest.mark.asyncio
async def test_exchange_times_out_without_reply():
    relay = MemoryRelay()
    daemon = FakeDaemon(relay)
    trade = KeyPair.generate()
    rid = new_request_id()

    r = await RequestCorrelator().exchange(
        relay, EnvelopeCodec(), _request(trade, daemon, rid), trade, rid, timeout=0.05
    )
    assert r.state == CorrelationState.TIMED_OUT
    assert daemon.actions() == [Action.FIAT_SENT]


@pytest.mark.asyncio
async def test_exchange_returns_cant_do():
    relay = MemoryRelay()
    daemon = FakeDaemon(relay)
    daemon.on(
        Action.FIAT_SENT,
        lambda req: reply_to(req, Action.CANT_DO, CantDoPayload(CantDoReason.IS_NOT_YOUR_ORDER)),
    )
    trade = KeyPair.generate()
    rid = new_request_id()

    r = await RequestCorrelator(timeout=2).exchange(
        relay, EnvelopeCodec(), _request(trade, daemon, rid), trade, rid
    )
    with pytest.raises(RelayTradeError) as ei:
        r.raise_for_state()
    assert ei.value.details["reason"] == "is_not_your_order"


def _wrap_with_bad_request_id(sender, recipient_pub):
    kind = {"version": 1, "request_id": "abc", "trade_index": 1, "id": ORDER_ID, "action": "fiat-sent-ok", "payload": None}
    rumor = build_unsigned(sender.public_key, KIND_TEXT_NOTE, json.dumps([{"order": kind}, None]))
    seal = sign_event(sender, KIND_SEAL, nip44.encrypt(rumor.to_json(), sender.secret, recipient_pub))
    ephemeral = KeyPair.generate()
    return sign_event(
        ephemeral,
        KIND_GIFT_WRAP,
        nip44.encrypt(seal.to_json(), ephemeral.secret, recipient_pub),
        tags=[["p", recipient_pub]],
    )


@pytest.mark.asyncio
async def test_exchange_skips_reply_with_malformed_fields():
    relay = MemoryRelay()
    trade = KeyPair.generate()
    daemon_keys = KeyPair.generate()

    async def garbage_first(event):
        if daemon_keys.public_key in event.tag_values("p"):
            await relay.publish(_wrap_with_bad_request_id(daemon_keys, trade.public_key))

    relay.on_publish.append(garbage_first)
    daemon = FakeDaemon(relay, daemon_keys)
    daemon.on(Action.FIAT_SENT, lambda req: reply_to(req, Action.FIAT_SENT_OK))
    rid = new_request_id()

    r = await RequestCorrelator(timeout=2).exchange(relay, EnvelopeCodec(), _request(trade, daemon, rid), trade, rid)

    assert r.state == CorrelationState.MATCHED
    assert r.message.request_id == rid
