"""Local persistence.

The engine reads and writes through the narrow ``TradeStore`` protocol;
``SqliteTradeStore`` is the bundled implementation.

Counters that must only move forward (the trade index, chat cursors) are
updated with guarded read-modify-write statements, never blind overwrites.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import fields
from pathlib import Path
from typing import Any, Iterator, List, Optional, Protocol, Tuple, Union, runtime_checkable

from .errors import (
    KIND_FATAL,
    RT_E_INDEX_NOT_MONOTONIC,
    RT_E_NOT_FOUND,
    RT_E_SEED_MISSING,
    RT_E_STORAGE,
    relaytrade_error,
)
from .models import ChatParty, DisputeRecord, TradeRecord, User


logger = logging.getLogger("relaytrade.storage")


@runtime_checkable
class TradeStore(Protocol):
    def get_trade_index(self) -> int:
        ...

    def set_trade_index(self, index: int) -> None:
        ...

    def reserve_next_trade_index(self) -> int:
        ...

    def get_active_trades(self) -> List[Tuple[str, int]]:
        ...

    def get_chat_cursor(self, dispute_id: str, party: ChatParty) -> Optional[int]:
        ...

    def set_chat_cursor(self, dispute_id: str, party: ChatParty, timestamp: int) -> int:
        ...

    def get_shared_key(self, dispute_id: str, party: ChatParty) -> Optional[str]:
        ...

    def set_shared_key(self, dispute_id: str, party: ChatParty, key_hex: str) -> int:
        ...


def _party_column(party: ChatParty, suffix: str) -> str:
    # Column names come from the closed ChatParty enum, never from input.
    return f"{ChatParty(party).value}_{suffix}"


_TRADE_COLUMNS = [f.name for f in fields(TradeRecord)]
_DISPUTE_COLUMNS = [f.name for f in fields(DisputeRecord)]


class SqliteTradeStore:
    """SQLite-backed ``TradeStore``.

    Tables:
      users           single row: identity pubkey, seed phrase, last_trade_index
      orders          one row per trade, keyed by order id
      admin_disputes  disputes taken by this solver, with chat keys and cursors
    """

    def __init__(self, db_path: Union[str, Path] = "relaytrade.db"):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str, isolation_level: Optional[str] = "") -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0, isolation_level=isolation_level)
        except sqlite3.Error as e:
            raise relaytrade_error(RT_E_STORAGE, f"{op_name}: cannot open database: {e}", retryable=True) from e
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise relaytrade_error(RT_E_STORAGE, f"{op_name}: {e}", retryable=True) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA secure_delete = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                identity_pubkey TEXT NOT NULL,
                seed_phrase TEXT NOT NULL,
                last_trade_index INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL
            )
            """)

            # trade_index is deliberately not UNIQUE: recovery must be able to
            # see and report duplicated indices rather than have inserts fail.
            conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                trade_index INTEGER NOT NULL,
                kind TEXT,
                status TEXT,
                amount INTEGER DEFAULT 0,
                fiat_code TEXT DEFAULT '',
                fiat_amount INTEGER DEFAULT 0,
                min_amount INTEGER,
                max_amount INTEGER,
                payment_method TEXT DEFAULT '',
                premium INTEGER DEFAULT 0,
                trade_pubkey TEXT,
                counterparty_pubkey TEXT,
                buyer_invoice TEXT,
                is_mine INTEGER DEFAULT 1,
                active INTEGER DEFAULT 1,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS admin_disputes (
                id TEXT PRIMARY KEY,
                order_id TEXT,
                status TEXT NOT NULL,
                kind TEXT,
                initiator_pubkey TEXT,
                buyer_pubkey TEXT,
                seller_pubkey TEXT,
                amount INTEGER DEFAULT 0,
                fiat_amount INTEGER DEFAULT 0,
                premium INTEGER DEFAULT 0,
                payment_method TEXT DEFAULT '',
                buyer_shared_key TEXT,
                seller_shared_key TEXT,
                buyer_chat_last_seen INTEGER,
                seller_chat_last_seen INTEGER,
                taken_at INTEGER DEFAULT 0,
                created_at INTEGER DEFAULT 0
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_active ON orders(active)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_disputes_status ON admin_disputes(status)")

    # ---------------------------
    # User / seed
    # ---------------------------

    def get_user(self) -> Optional[User]:
        with self._db("get_user") as conn:
            row = conn.execute(
                "SELECT identity_pubkey, seed_phrase, last_trade_index, created_at FROM users WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        return User(
            identity_pubkey=row["identity_pubkey"],
            seed_phrase=row["seed_phrase"],
            last_trade_index=int(row["last_trade_index"]),
            created_at=int(row["created_at"]),
        )

    def require_user(self) -> User:
        user = self.get_user()
        if user is None:
            raise relaytrade_error(RT_E_SEED_MISSING, "no seed phrase stored; run init first", kind=KIND_FATAL)
        return user

    def create_user(self, identity_pubkey: str, seed_phrase: str) -> User:
        now = int(time.time())
        with self._db("create_user") as conn:
            conn.execute(
                "INSERT INTO users (id, identity_pubkey, seed_phrase, last_trade_index, created_at) "
                "VALUES (1, ?, ?, 0, ?)",
                (identity_pubkey, seed_phrase, now),
            )
        return User(identity_pubkey=identity_pubkey, seed_phrase=seed_phrase, created_at=now)

    # ---------------------------
    # Trade index
    # ---------------------------

    def get_trade_index(self) -> int:
        with self._db("get_trade_index") as conn:
            row = conn.execute("SELECT last_trade_index FROM users WHERE id = 1").fetchone()
        return int(row[0]) if row else 0

    def set_trade_index(self, index: int) -> None:
        with self._lock, self._db("set_trade_index", isolation_level=None) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT last_trade_index FROM users WHERE id = 1").fetchone()
            if row is None:
                raise relaytrade_error(RT_E_SEED_MISSING, "no user row", kind=KIND_FATAL)
            current = int(row[0])
            if index < current:
                raise relaytrade_error(
                    RT_E_INDEX_NOT_MONOTONIC,
                    "trade index may not decrease",
                    current=current,
                    requested=index,
                )
            conn.execute("UPDATE users SET last_trade_index = ? WHERE id = 1", (int(index),))

    def reserve_next_trade_index(self) -> int:
        """Atomically allocate the next unused trade index.

        The new index is above both the counter and every index already
        referenced by an order row.
        """
        with self._lock, self._db("reserve_next_trade_index", isolation_level=None) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT last_trade_index FROM users WHERE id = 1").fetchone()
            if row is None:
                raise relaytrade_error(RT_E_SEED_MISSING, "no user row", kind=KIND_FATAL)
            top = conn.execute("SELECT COALESCE(MAX(trade_index), 0) FROM orders").fetchone()[0]
            nxt = max(int(row[0]), int(top)) + 1
            conn.execute("UPDATE users SET last_trade_index = ? WHERE id = 1", (nxt,))
        return nxt

    # ---------------------------
    # Orders
    # ---------------------------

    def save_order(self, record: TradeRecord) -> None:
        now = int(time.time())
        record.created_at = record.created_at or now
        record.updated_at = now
        values = [getattr(record, c) for c in _TRADE_COLUMNS]
        placeholders = ", ".join("?" for _ in _TRADE_COLUMNS)
        with self._db("save_order") as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO orders ({', '.join(_TRADE_COLUMNS)}) VALUES ({placeholders})",
                values,
            )

    def get_order(self, order_id: str) -> TradeRecord:
        with self._db("get_order") as conn:
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if row is None:
            raise relaytrade_error(RT_E_NOT_FOUND, "order not found", order_id=order_id)
        return self._trade_from_row(row)

    def list_orders(self, active_only: bool = True) -> List[TradeRecord]:
        sql = "SELECT * FROM orders"
        if active_only:
            sql += " WHERE active = 1"
        with self._db("list_orders") as conn:
            rows = conn.execute(sql + " ORDER BY trade_index").fetchall()
        return [self._trade_from_row(r) for r in rows]

    def get_active_trades(self) -> List[Tuple[str, int]]:
        return [(r.id, r.trade_index) for r in self.list_orders(active_only=True)]

    def update_order_status(self, order_id: str, status: str, *, active: Optional[bool] = None) -> int:
        now = int(time.time())
        with self._db("update_order_status") as conn:
            if active is None:
                cur = conn.execute(
                    "UPDATE orders SET status = ?, updated_at = ? WHERE id = ?", (status, now, order_id)
                )
            else:
                cur = conn.execute(
                    "UPDATE orders SET status = ?, active = ?, updated_at = ? WHERE id = ?",
                    (status, int(active), now, order_id),
                )
            return cur.rowcount

    @staticmethod
    def _trade_from_row(row: sqlite3.Row) -> TradeRecord:
        data: dict = {c: row[c] for c in _TRADE_COLUMNS}
        data["is_mine"] = bool(data["is_mine"])
        data["active"] = bool(data["active"])
        return TradeRecord(**data)

    # ---------------------------
    # Disputes
    # ---------------------------

    def save_dispute(self, record: DisputeRecord) -> None:
        """Insert or refresh a dispute, keeping existing keys and cursors."""
        with self._db("save_dispute") as conn:
            conn.execute(
                """
                INSERT INTO admin_disputes (id, order_id, status, kind, initiator_pubkey, buyer_pubkey,
                    seller_pubkey, amount, fiat_amount, premium, payment_method, buyer_shared_key,
                    seller_shared_key, buyer_chat_last_seen, seller_chat_last_seen, taken_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    order_id = excluded.order_id,
                    status = excluded.status,
                    kind = excluded.kind,
                    initiator_pubkey = excluded.initiator_pubkey,
                    buyer_pubkey = excluded.buyer_pubkey,
                    seller_pubkey = excluded.seller_pubkey,
                    amount = excluded.amount,
                    fiat_amount = excluded.fiat_amount,
                    premium = excluded.premium,
                    payment_method = excluded.payment_method,
                    buyer_shared_key = COALESCE(admin_disputes.buyer_shared_key, excluded.buyer_shared_key),
                    seller_shared_key = COALESCE(admin_disputes.seller_shared_key, excluded.seller_shared_key),
                    taken_at = excluded.taken_at
                """,
                [getattr(record, c) for c in _DISPUTE_COLUMNS],
            )

    def get_dispute(self, dispute_id: str) -> DisputeRecord:
        with self._db("get_dispute") as conn:
            row = conn.execute("SELECT * FROM admin_disputes WHERE id = ?", (dispute_id,)).fetchone()
        if row is None:
            raise relaytrade_error(RT_E_NOT_FOUND, "dispute not found", dispute_id=dispute_id)
        return DisputeRecord(**{c: row[c] for c in _DISPUTE_COLUMNS})

    def list_disputes(self, status: Optional[str] = None) -> List[DisputeRecord]:
        with self._db("list_disputes") as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM admin_disputes ORDER BY taken_at DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM admin_disputes WHERE status = ? ORDER BY taken_at DESC", (status,)
                ).fetchall()
        return [DisputeRecord(**{c: r[c] for c in _DISPUTE_COLUMNS}) for r in rows]

    def set_dispute_status(self, dispute_id: str, status: str) -> int:
        with self._db("set_dispute_status") as conn:
            cur = conn.execute("UPDATE admin_disputes SET status = ? WHERE id = ?", (status, dispute_id))
            return cur.rowcount

    # ---------------------------
    # Chat cursors and shared keys
    # ---------------------------

    def get_chat_cursor(self, dispute_id: str, party: ChatParty) -> Optional[int]:
        col = _party_column(party, "chat_last_seen")
        with self._db("get_chat_cursor") as conn:
            row = conn.execute(f"SELECT {col} FROM admin_disputes WHERE id = ?", (dispute_id,)).fetchone()
        if row is None or row[0] is None:
            return None
        return int(row[0])

    def set_chat_cursor(self, dispute_id: str, party: ChatParty, timestamp: int) -> int:
        """Advance the cursor; an older timestamp never overwrites a newer one.

        Returns the number of rows changed (0 when the cursor was already at or
        past ``timestamp`` or the dispute is unknown).
        """
        col = _party_column(party, "chat_last_seen")
        with self._db("set_chat_cursor") as conn:
            cur = conn.execute(
                f"UPDATE admin_disputes SET {col} = ? WHERE id = ? AND ({col} IS NULL OR {col} < ?)",
                (int(timestamp), dispute_id, int(timestamp)),
            )
            return cur.rowcount

    def get_shared_key(self, dispute_id: str, party: ChatParty) -> Optional[str]:
        col = _party_column(party, "shared_key")
        with self._db("get_shared_key") as conn:
            row = conn.execute(f"SELECT {col} FROM admin_disputes WHERE id = ?", (dispute_id,)).fetchone()
        if row is None or not row[0]:
            return None
        return str(row[0])

    def set_shared_key(self, dispute_id: str, party: ChatParty, key_hex: str) -> int:
        col = _party_column(party, "shared_key")
        with self._db("set_shared_key") as conn:
            cur = conn.execute(f"UPDATE admin_disputes SET {col} = ? WHERE id = ?", (key_hex, dispute_id))
            return cur.rowcount


def open_store(path: Union[str, Path]) -> SqliteTradeStore:
    logger.debug("opening store at %s", path)
    return SqliteTradeStore(path)
