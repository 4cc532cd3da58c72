import pytest

from fixtures.memory_relay import MemoryRelay
from relaytrade.envelope import DecodedMessage, EnvelopeCodec, SenderKeys
from relaytrade.errors import RT_E_DUPLICATE_TRADE_INDEX, RT_E_TRADE_KEY_MISMATCH
from relaytrade.keys import KeyDeriver, KeyPair
from relaytrade.models import TradeRecord
from relaytrade.protocol import (
    Action,
    CantDoPayload,
    Message,
    OrderStatus,
    PaymentRequestPayload,
    PeerPayload,
    Peer,
)
from relaytrade.recovery import (
    RecoveryEngine,
    TradeMessageListener,
    TradeState,
    find_duplicate_indices,
    reduce_trade_state,
)
from relaytrade.storage import SqliteTradeStore

SEED = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
ORDER = "7d3f0c2e-1a2b-4c3d-8e9f-0a1b2c3d4e5f"
PEER = "c6047f9441ed7d6d3045406e95c07cd85c778e4b8cef3ca7abac09b95c709ee5"


def _decoded(action, ts, payload=None, order_id=ORDER):
    return DecodedMessage(
        message=Message.new_order(order_id, None, 1, action, payload),
        timestamp=ts,
        sender="daemon",
        event_id=f"ev{ts}",
        author="daemon",
    )


def test_reduce_folds_oldest_first():
    base = TradeState(order_id=ORDER, trade_index=1)
    msgs = [
        _decoded(Action.BUYER_TOOK_ORDER, 30, PeerPayload(Peer(pubkey=PEER))),
        _decoded(Action.PAY_INVOICE, 10, PaymentRequestPayload(None, "lnbc1invoice")),
    ]
    state = reduce_trade_state(base, msgs)

    assert state.status == OrderStatus.ACTIVE
    assert state.last_action == Action.BUYER_TOOK_ORDER
    assert state.counterparty == PEER
    # only the latest message's pending request survives
    assert state.pending_invoice is None
    assert state.timestamp == 30


def test_pay_invoice_leaves_a_pending_invoice():
    state = reduce_trade_state(
        TradeState(order_id=ORDER, trade_index=1),
        [_decoded(Action.PAY_INVOICE, 10, PaymentRequestPayload(None, "lnbc1invoice"))],
    )
    assert state.status == OrderStatus.WAITING_PAYMENT
    assert state.pending_invoice == "lnbc1invoice"


def test_foreign_and_rejected_messages_do_not_move_state():
    base = TradeState(order_id=ORDER, trade_index=1, status=OrderStatus.ACTIVE)
    state = reduce_trade_state(
        base,
        [
            _decoded(Action.CANCELED, 5, order_id="other-order"),
            _decoded(Action.CANT_DO, 6, CantDoPayload(None)),
        ],
    )
    assert state == base


def test_find_duplicate_indices():
    records = [TradeRecord("a", 1), TradeRecord("b", 2), TradeRecord("c", 2)]
    assert find_duplicate_indices(records) == {2: ["b", "c"]}


def _daemon_reply(codec, daemon, to_pub, action, order_id=ORDER):
    msg = Message.new_order(order_id, None, None, action)
    return codec.encode(msg, SenderKeys(daemon), to_pub)


@pytest.mark.asyncio
async def test_recovery_engine_rebuilds_and_rejects(tmp_path):
    deriver = KeyDeriver(SEED)
    store = SqliteTradeStore(tmp_path / "t.db")
    store.create_user(deriver.identity_key().public_key, SEED)
    codec = EnvelopeCodec()
    daemon = KeyPair.generate()
    relay = MemoryRelay()

    k1, k2 = deriver.trade_key(1), deriver.trade_key(2)
    store.save_order(TradeRecord("one", 1, status="pending", trade_pubkey=k1.public_key))
    store.save_order(TradeRecord("two", 2, status="fiat-sent", trade_pubkey=k2.public_key))
    store.save_order(TradeRecord("dup-a", 3))
    store.save_order(TradeRecord("dup-b", 3))
    store.save_order(TradeRecord("bad-key", 9, trade_pubkey=k1.public_key))
    relay.add(
        _daemon_reply(codec, daemon, k1.public_key, Action.BUYER_TOOK_ORDER, "one"),
        _daemon_reply(codec, daemon, k2.public_key, Action.PURCHASE_COMPLETED, "two"),
    )

    report = await RecoveryEngine(store, relay, codec, deriver, fetch_timeout=1).recover()

    assert report.recovered["one"].status == OrderStatus.ACTIVE
    assert report.recovered["two"].status == OrderStatus.SUCCESS
    assert report.rejected == {"dup-a": RT_E_DUPLICATE_TRADE_INDEX, "dup-b": RT_E_DUPLICATE_TRADE_INDEX}
    assert report.failures["bad-key"].code == RT_E_TRADE_KEY_MISMATCH
    assert not report.ok

    assert store.get_order("one").status == "active"
    two = store.get_order("two")
    assert two.status == "success" and not two.active
    assert store.get_trade_index() == 9


@pytest.mark.asyncio
async def test_recovery_without_history_keeps_stored_status(tmp_path):
    deriver = KeyDeriver(SEED)
    store = SqliteTradeStore(tmp_path / "t.db")
    store.create_user(deriver.identity_key().public_key, SEED)
    store.save_order(TradeRecord("one", 1, status="pending"))

    report = await RecoveryEngine(store, MemoryRelay(), EnvelopeCodec(), deriver).recover()

    assert report.ok
    assert report.recovered["one"].status == OrderStatus.PENDING
    assert store.get_order("one").active


@pytest.mark.asyncio
async def test_listener_reports_only_new_messages():
    deriver = KeyDeriver(SEED)
    codec = EnvelopeCodec()
    daemon = KeyPair.generate()
    relay = MemoryRelay()
    relay.add(_daemon_reply(codec, daemon, deriver.trade_key(4).public_key, Action.HOLD_INVOICE_PAYMENT_ACCEPTED))

    listener = TradeMessageListener(relay, codec, deriver)
    listener.track(ORDER, 4)

    first = await listener.poll_once()
    assert [n.action for n in first] == [Action.HOLD_INVOICE_PAYMENT_ACCEPTED]
    assert first[0].sender == daemon.public_key
    assert listener.notifications.qsize() == 1
    assert await listener.poll_once() == []
    assert listener.pending_notifications == 1

    listener.mark_all_read()
    listener.untrack(ORDER)
    assert listener.pending_notifications == 0
    assert listener.active_trades() == {}
