import json
from contextlib import asynccontextmanager

import pytest
from websockets.asyncio.server import serve

from relaytrade.errors import RT_E_PUBLISH_REJECTED, RT_E_RELAY_UNAVAILABLE, RelayTradeError
from relaytrade.events import KIND_GIFT_WRAP, KIND_TEXT_NOTE, Event, sign_event
from relaytrade.keys import KeyPair
from relaytrade.relay import Filter, Subscription, WebSocketRelayPool

UNREACHABLE = "ws://127.0.0.1:1"


def test_filter_wire_form():
    f = Filter(kinds=[KIND_GIFT_WRAP], pubkeys=["ab"], since=10, limit=20)
    assert f.to_wire() == {"kinds": [1059], "#p": ["ab"], "since": 10, "limit": 20}
    assert Filter().to_wire() == {}


def test_filter_matches():
    kp = KeyPair.generate()
    ev = sign_event(kp, KIND_GIFT_WRAP, "x", tags=[["p", "ab"]], created_at=100)
    assert Filter(kinds=[KIND_GIFT_WRAP], pubkeys=["ab"]).matches(ev)
    assert not Filter(pubkeys=["cd"]).matches(ev)
    assert not Filter(since=101).matches(ev)
    assert not Filter(until=99).matches(ev)
    assert Filter(authors=[kp.public_key]).matches(ev)


@pytest.mark.asyncio
async def test_subscription_dedupes_by_id():
    sub = Subscription("s", [])
    ev = sign_event(KeyPair.generate(), KIND_TEXT_NOTE, "hi")
    sub.push(ev)
    sub.push(ev)
    assert await sub.next(0.1) is ev
    assert await sub.next(0.01) is None


def test_dispatch_drops_events_with_bad_signature():
    pool = WebSocketRelayPool([])
    sub = Subscription("s", [])
    pool._subs["s"] = sub
    good = sign_event(KeyPair.generate(), KIND_TEXT_NOTE, "good")
    bad = sign_event(KeyPair.generate(), KIND_TEXT_NOTE, "bad")
    bad.content = "tampered"

    pool._dispatch("ws://r", ["EVENT", "s", bad.to_dict()])
    pool._dispatch("ws://r", ["EVENT", "s", good.to_dict()])
    pool._dispatch("ws://r", ["EVENT", "unknown", good.to_dict()])

    assert [e.id for e in sub.drain()] == [good.id]


@pytest.mark.parametrize("payload", [None, [1, 2], 42, "event", {"pubkey": "aa", "created_at": 1, "kind": 1, "tags": "p"}])
def test_dispatch_ignores_malformed_event_frames(payload):
    pool = WebSocketRelayPool([])
    sub = Subscription("s", [])
    pool._subs["s"] = sub
    good = sign_event(KeyPair.generate(), KIND_TEXT_NOTE, "good")

    pool._dispatch("ws://r", ["EVENT", "s", payload])
    pool._dispatch("ws://r", ["EVENT", "s", good.to_dict()])

    assert [e.id for e in sub.drain()] == [good.id]


@asynccontextmanager
async def tiny_relay(reject_kinds=()):
    """Stores events, answers REQ with stored matches and EOSE."""
    stored = []

    async def handler(ws):
        async for raw in ws:
            frame = json.loads(raw)
            if frame[0] == "EVENT":
                ev = frame[1]
                accepted = ev["kind"] not in reject_kinds
                if accepted:
                    stored.append(ev)
                await ws.send(json.dumps(["OK", ev["id"], accepted, "" if accepted else "blocked: kind"]))
            elif frame[0] == "REQ":
                sub_id = frame[1]
                filters = [Filter(kinds=f.get("kinds", []), pubkeys=f.get("#p", [])) for f in frame[2:]]
                for ev in stored:
                    if any(f.matches(Event.from_dict(ev)) for f in filters):
                        await ws.send(json.dumps(["EVENT", sub_id, ev]))
                await ws.send(json.dumps(["EOSE", sub_id]))

    async with serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


@pytest.mark.asyncio
async def test_publish_and_fetch_round_trip():
    async with tiny_relay() as url:
        pool = WebSocketRelayPool([url, UNREACHABLE], connect_timeout=2)
        await pool.connect()
        try:
            assert pool.connected == [url]
            ev = sign_event(KeyPair.generate(), KIND_GIFT_WRAP, "payload", tags=[["p", "ab"]])
            await pool.publish(ev)

            got = await pool.fetch([Filter(kinds=[KIND_GIFT_WRAP], pubkeys=["ab"])], timeout=2)
            assert [e.id for e in got] == [ev.id]
            assert await pool.fetch([Filter(pubkeys=["cd"])], timeout=2) == []
        finally:
            await pool.close()


@pytest.mark.asyncio
async def test_rejected_publish_raises():
    async with tiny_relay(reject_kinds=(KIND_TEXT_NOTE,)) as url:
        pool = WebSocketRelayPool([url], publish_timeout=0.2)
        await pool.connect()
        try:
            with pytest.raises(RelayTradeError) as ei:
                await pool.publish(sign_event(KeyPair.generate(), KIND_TEXT_NOTE, "x"))
            assert ei.value.code == RT_E_PUBLISH_REJECTED
        finally:
            await pool.close()


@pytest.mark.asyncio
async def test_connect_fails_without_any_relay():
    pool = WebSocketRelayPool([UNREACHABLE], connect_timeout=1)
    with pytest.raises(RelayTradeError) as ei:
        await pool.connect()
    assert ei.value.code == RT_E_RELAY_UNAVAILABLE
