"""
relaytrade - command line interface

Usage:
    relaytrade init [--seed "<12 words>"]      Create the local identity
    relaytrade keys [--index N]                Show identity and trade public keys
    relaytrade recover                         Rebuild active trades from the relays
    relaytrade orders [--currency USD ...]     List the public order book
    relaytrade disputes                        List open disputes
    relaytrade take-dispute <id>               Take a dispute as solver
    relaytrade chat-sync [--loop]              Fetch new dispute chat messages
    relaytrade chat-send <id> <party> <text>   Send a message to buyer or seller
    relaytrade save-attachment <id> <message>  Download and decrypt a chat attachment
    relaytrade observe <file> <shared-key>     Decrypt an exported chat file

Configuration comes from RELAYTRADE_* environment variables.

Exit codes: 0 ok, 1 operation failed, 2 usage or configuration error.
"""

import argparse
import asyncio
import logging
import sys
from typing import Awaitable, Callable, List, Optional, TypeVar

from relaytrade.admin import AdminClient, load_admin_keys
from relaytrade.attachments import attachment_key, decrypt_chat_file, parse_attachment, save_attachment_async
from relaytrade.chat import DisputeChatSync
from relaytrade.config import RelayTradeConfig
from relaytrade.correlator import RequestCorrelator
from relaytrade.envelope import EnvelopeCodec
from relaytrade.errors import (
    RT_E_ADMIN_KEY_MISSING,
    RT_E_BAD_REQUEST,
    RT_E_CONFIG,
    RT_E_SEED_INVALID,
    RT_E_SEED_MISSING,
    RelayTradeError,
    relaytrade_error,
)
from relaytrade.keys import KeyDeriver, generate_seed_phrase, parse_public_key, validate_seed_phrase
from relaytrade.models import ChatParty
from relaytrade.orderbook import fetch_disputes, fetch_orders
from relaytrade.protocol import OrderKind, OrderStatus
from relaytrade.recovery import RecoveryEngine
from relaytrade.relay import WebSocketRelayPool
from relaytrade.storage import SqliteTradeStore, open_store
from relaytrade.transcript import TranscriptStore


logger = logging.getLogger("relaytrade")

T = TypeVar("T")

# Errors that mean the command was misused or the environment is incomplete.
_USAGE_CODES = frozenset({RT_E_CONFIG, RT_E_SEED_MISSING, RT_E_SEED_INVALID, RT_E_ADMIN_KEY_MISSING, RT_E_BAD_REQUEST})


def setup_logging(verbose: bool = False, level_name: str = "INFO"):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def _store(cfg: RelayTradeConfig) -> SqliteTradeStore:
    return open_store(cfg.database_path)


def _require_daemon(cfg: RelayTradeConfig) -> str:
    if not cfg.daemon_pubkey:
        raise relaytrade_error(RT_E_CONFIG, "RELAYTRADE_DAEMON_PUBKEY is not set")
    try:
        parse_public_key(cfg.daemon_pubkey)
    except RelayTradeError as e:
        raise relaytrade_error(RT_E_CONFIG, f"RELAYTRADE_DAEMON_PUBKEY is invalid: {e.message}") from e
    return cfg.daemon_pubkey


def _with_relay(cfg: RelayTradeConfig, fn: Callable[[WebSocketRelayPool], Awaitable[T]]) -> T:
    async def runner() -> T:
        pool = WebSocketRelayPool(cfg.relays)
        await pool.connect()
        try:
            return await fn(pool)
        finally:
            await pool.close()

    return asyncio.run(runner())


def _parse_party(value: str) -> ChatParty:
    try:
        return ChatParty(value.strip().lower())
    except ValueError as e:
        raise relaytrade_error(RT_E_BAD_REQUEST, "party must be 'buyer' or 'seller'") from e


# ---------------------------
# Commands
# ---------------------------


def cmd_init(args, cfg: RelayTradeConfig) -> int:
    store = _store(cfg)
    if store.get_user() is not None:
        print(f"Identity already exists in {cfg.database_path}")
        return 1
    generated = not args.seed
    phrase = validate_seed_phrase(args.seed) if args.seed else generate_seed_phrase()
    identity = KeyDeriver(phrase).identity_key()
    store.create_user(identity.public_key, phrase)
    print(f"Identity:  {identity.public_key}")
    if generated:
        print("Seed phrase (write it down, it is shown only once):")
        print(f"  {phrase}")
    return 0


def cmd_keys(args, cfg: RelayTradeConfig) -> int:
    user = _store(cfg).require_user()
    deriver = KeyDeriver(user.seed_phrase)
    print(f"Identity:          {deriver.identity_key().public_key}")
    print(f"Last trade index:  {user.last_trade_index}")
    if args.index is not None:
        print(f"Trade key #{args.index}:     {deriver.trade_key(args.index).public_key}")
    return 0


def cmd_recover(args, cfg: RelayTradeConfig) -> int:
    store = _store(cfg)
    deriver = KeyDeriver(store.require_user().seed_phrase)

    async def run(pool: WebSocketRelayPool):
        engine = RecoveryEngine(store, pool, EnvelopeCodec(), deriver, fetch_timeout=cfg.fetch_timeout_seconds)
        return await engine.recover()

    report = _with_relay(cfg, run)
    for order_id, state in sorted(report.recovered.items()):
        status = state.status.value if state.status else "unknown"
        action = state.last_action.value if state.last_action else "-"
        print(f"{order_id}  #{state.trade_index:<4} {status:<24} last: {action}")
    for order_id, err in sorted(report.failures.items()):
        print(f"{order_id}  FAILED  {err}")
    for order_id, reason in sorted(report.rejected.items()):
        print(f"{order_id}  REJECTED  {reason}")
    for issue in report.integrity_issues:
        print(f"integrity: {issue}")
    return 0 if report.ok else 1


def cmd_orders(args, cfg: RelayTradeConfig) -> int:
    daemon = _require_daemon(cfg)
    kind = OrderKind(args.kind) if args.kind else None
    status = OrderStatus(args.status) if args.status else None

    orders = _with_relay(
        cfg,
        lambda pool: fetch_orders(
            pool, daemon, timeout=cfg.fetch_timeout_seconds, currencies=args.currency, status=status, kind=kind
        ),
    )
    if not orders:
        print("No orders found")
        return 0
    for o in orders:
        fiat = f"{o.min_amount}-{o.max_amount}" if o.is_range else str(o.fiat_amount)
        sats = "market" if o.amount == 0 else str(o.amount)
        kind_label = o.kind.value if o.kind else "?"
        print(f"{o.id}  {kind_label:<4} {fiat:>12} {o.fiat_code:<4} sats={sats:<8} premium={o.premium}% {o.payment_method}")
    return 0


def cmd_disputes(args, cfg: RelayTradeConfig) -> int:
    daemon = _require_daemon(cfg)
    disputes = _with_relay(cfg, lambda pool: fetch_disputes(pool, daemon, timeout=cfg.fetch_timeout_seconds))
    if not disputes:
        print("No disputes found")
        return 0
    for d in disputes:
        print(f"{d.id}  {d.status}")
    return 0


def cmd_take_dispute(args, cfg: RelayTradeConfig) -> int:
    daemon = _require_daemon(cfg)
    admin_keys = load_admin_keys(cfg.admin_secret)
    store = _store(cfg)

    async def run(pool: WebSocketRelayPool):
        client = AdminClient(
            store,
            pool,
            EnvelopeCodec(),
            admin_keys,
            daemon,
            correlator=RequestCorrelator(cfg.request_timeout_seconds),
        )
        return await client.take_dispute(args.dispute_id)

    record = _with_relay(cfg, run)
    print(f"Dispute {record.id} taken (order {record.order_id})")
    print(f"  buyer:  {record.buyer_pubkey}")
    print(f"  seller: {record.seller_pubkey}")
    return 0


def _chat_sync(cfg: RelayTradeConfig, pool: WebSocketRelayPool) -> DisputeChatSync:
    return DisputeChatSync(
        _store(cfg),
        pool,
        EnvelopeCodec(),
        load_admin_keys(cfg.admin_secret),
        TranscriptStore(cfg.data_dir),
        window_days=cfg.chat_window_days,
        fetch_timeout=cfg.fetch_timeout_seconds,
    )


def cmd_chat_sync(args, cfg: RelayTradeConfig) -> int:
    load_admin_keys(cfg.admin_secret)

    async def run(pool: WebSocketRelayPool) -> int:
        sync = _chat_sync(cfg, pool)
        sync.restore_from_transcripts()
        if not args.loop:
            return await sync.sync_once() or 0
        task = sync.as_task(cfg.chat_poll_seconds)
        task.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await task.stop()

    try:
        count = _with_relay(cfg, run)
    except KeyboardInterrupt:
        return 0
    print(f"{count} new message(s)")
    return 0


def cmd_chat_send(args, cfg: RelayTradeConfig) -> int:
    party = _parse_party(args.party)
    text = " ".join(args.text).strip()
    if not text:
        raise relaytrade_error(RT_E_BAD_REQUEST, "message text is empty")

    async def run(pool: WebSocketRelayPool):
        return await _chat_sync(cfg, pool).send_admin_message(args.dispute_id, party, text)

    msg = _with_relay(cfg, run)
    print(f"Sent to {msg.party.value} of dispute {msg.dispute_id}")
    return 0


def cmd_save_attachment(args, cfg: RelayTradeConfig) -> int:
    attachment = parse_attachment(args.message)
    if attachment is None:
        raise relaytrade_error(RT_E_BAD_REQUEST, "message is not an attachment")
    local_secret = load_admin_keys(cfg.admin_secret).secret if cfg.admin_secret else None
    key = attachment_key(attachment, local_secret=local_secret, sender_pubkey=args.sender)
    path = asyncio.run(
        save_attachment_async(
            attachment, args.dispute_id, cfg.downloads_dir, key=key, max_bytes=cfg.max_attachment_bytes
        )
    )
    print(f"Saved {path}")
    return 0


def cmd_observe(args, cfg: RelayTradeConfig) -> int:
    for line in decrypt_chat_file(args.file, args.shared_key, cfg.downloads_dir):
        print(line)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relaytrade",
        description="P2P trade client over relay networks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    init_parser = subparsers.add_parser("init", help="Create the local identity")
    init_parser.add_argument("--seed", help="Import an existing 12-word seed phrase")
    init_parser.set_defaults(func=cmd_init)

    keys_parser = subparsers.add_parser("keys", help="Show public keys")
    keys_parser.add_argument("--index", type=int, help="Also show the trade key for this index")
    keys_parser.set_defaults(func=cmd_keys)

    recover_parser = subparsers.add_parser("recover", help="Rebuild active trades from relays")
    recover_parser.set_defaults(func=cmd_recover)

    orders_parser = subparsers.add_parser("orders", help="List the order book")
    orders_parser.add_argument("--currency", action="append", help="Fiat code filter (repeatable)")
    orders_parser.add_argument("--kind", choices=[k.value for k in OrderKind], help="Order kind filter")
    orders_parser.add_argument(
        "--status", default=OrderStatus.PENDING.value, choices=[s.value for s in OrderStatus], help="Status filter"
    )
    orders_parser.set_defaults(func=cmd_orders)

    disputes_parser = subparsers.add_parser("disputes", help="List disputes")
    disputes_parser.set_defaults(func=cmd_disputes)

    take_parser = subparsers.add_parser("take-dispute", help="Take a dispute as solver")
    take_parser.add_argument("dispute_id")
    take_parser.set_defaults(func=cmd_take_dispute)

    sync_parser = subparsers.add_parser("chat-sync", help="Fetch new dispute chat messages")
    sync_parser.add_argument("--loop", action="store_true", help="Keep polling until interrupted")
    sync_parser.set_defaults(func=cmd_chat_sync)

    send_parser = subparsers.add_parser("chat-send", help="Send a chat message to a dispute party")
    send_parser.add_argument("dispute_id")
    send_parser.add_argument("party", help="buyer or seller")
    send_parser.add_argument("text", nargs="+")
    send_parser.set_defaults(func=cmd_chat_send)

    att_parser = subparsers.add_parser("save-attachment", help="Download and decrypt an attachment")
    att_parser.add_argument("dispute_id")
    att_parser.add_argument("message", help="Attachment JSON or transcript placeholder line")
    att_parser.add_argument("--sender", help="Sender pubkey, for key agreement when no key is embedded")
    att_parser.set_defaults(func=cmd_save_attachment)

    obs_parser = subparsers.add_parser("observe", help="Decrypt an exported chat file")
    obs_parser.add_argument("file", help="Path, relative paths resolve under the downloads dir")
    obs_parser.add_argument("shared_key", help="64-hex shared chat key")
    obs_parser.set_defaults(func=cmd_observe)

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(2)

    cfg = RelayTradeConfig.from_env()
    setup_logging(args.verbose, cfg.log_level)
    try:
        code = args.func(args, cfg)
    except RelayTradeError as e:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        code = 2 if e.code in _USAGE_CODES else 1
    sys.exit(code)


if __name__ == "__main__":
    main()
