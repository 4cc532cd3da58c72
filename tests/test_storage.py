import sqlite3

import pytest

from relaytrade.errors import RT_E_INDEX_NOT_MONOTONIC, RT_E_NOT_FOUND, RT_E_SEED_MISSING, RelayTradeError
from relaytrade.models import ChatParty, DisputeRecord, TradeRecord
from relaytrade.storage import SqliteTradeStore

PUB = "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"


def _store(tmp_path, with_user=True):
    store = SqliteTradeStore(tmp_path / "trade.db")
    if with_user:
        store.create_user(PUB, "seed words")
    return store


def test_require_user_without_seed(tmp_path):
    store = _store(tmp_path, with_user=False)
    assert store.get_user() is None
    assert store.get_trade_index() == 0
    with pytest.raises(RelayTradeError) as ei:
        store.require_user()
    assert ei.value.code == RT_E_SEED_MISSING
    assert ei.value.is_fatal


def test_user_repr_hides_seed(tmp_path):
    user = _store(tmp_path).require_user()
    assert "seed words" not in repr(user)


def test_trade_index_never_decreases(tmp_path):
    store = _store(tmp_path)
    store.set_trade_index(5)
    store.set_trade_index(5)
    with pytest.raises(RelayTradeError) as ei:
        store.set_trade_index(4)
    assert ei.value.code == RT_E_INDEX_NOT_MONOTONIC
    assert store.get_trade_index() == 5


def test_reserve_skips_indices_used_by_orders(tmp_path):
    store = _store(tmp_path)
    assert store.reserve_next_trade_index() == 1
    store.save_order(TradeRecord(id="a", trade_index=7))
    assert store.reserve_next_trade_index() == 8
    assert store.get_trade_index() == 8


def test_orders_and_active_trades(tmp_path):
    store = _store(tmp_path)
    store.save_order(TradeRecord(id="a", trade_index=2, status="pending"))
    store.save_order(TradeRecord(id="b", trade_index=1, status="active"))

    assert store.get_active_trades() == [("b", 1), ("a", 2)]
    assert store.update_order_status("a", "success", active=False) == 1
    assert store.get_active_trades() == [("b", 1)]
    assert store.get_order("a").status == "success"
    assert store.update_order_status("missing", "success") == 0
    with pytest.raises(RelayTradeError) as ei:
        store.get_order("missing")
    assert ei.value.code == RT_E_NOT_FOUND


def test_chat_cursor_is_monotonic(tmp_path):
    store = _store(tmp_path)
    store.save_dispute(DisputeRecord(id="d1"))

    assert store.get_chat_cursor("d1", ChatParty.BUYER) is None
    assert store.set_chat_cursor("d1", ChatParty.BUYER, 100) == 1
    assert store.set_chat_cursor("d1", ChatParty.BUYER, 90) == 0
    assert store.set_chat_cursor("d1", ChatParty.BUYER, 100) == 0
    assert store.get_chat_cursor("d1", ChatParty.BUYER) == 100
    assert store.get_chat_cursor("d1", ChatParty.SELLER) is None
    assert store.set_chat_cursor("unknown", ChatParty.BUYER, 1) == 0


def test_save_dispute_keeps_keys_and_cursors(tmp_path):
    store = _store(tmp_path)
    store.save_dispute(DisputeRecord(id="d1", buyer_shared_key="aa" * 32))
    store.set_chat_cursor("d1", ChatParty.SELLER, 50)
    store.set_shared_key("d1", ChatParty.SELLER, "bb" * 32)

    store.save_dispute(DisputeRecord(id="d1", status="settled", buyer_shared_key="cc" * 32))

    d = store.get_dispute("d1")
    assert d.status == "settled"
    assert d.buyer_shared_key == "aa" * 32
    assert store.get_shared_key("d1", ChatParty.SELLER) == "bb" * 32
    assert d.seller_chat_last_seen == 50
    assert d.is_finalized


def test_list_disputes_by_status(tmp_path):
    store = _store(tmp_path)
    store.save_dispute(DisputeRecord(id="d1", taken_at=1))
    store.save_dispute(DisputeRecord(id="d2", taken_at=2))
    store.set_dispute_status("d1", "seller-refunded")

    assert [d.id for d in store.list_disputes()] == ["d2", "d1"]
    assert [d.id for d in store.list_disputes("in-progress")] == ["d2"]


def test_store_file_is_plain_sqlite(tmp_path):
    _store(tmp_path)
    conn = sqlite3.connect(tmp_path / "trade.db")
    try:
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()
    assert {"users", "orders", "admin_disputes"} <= tables
