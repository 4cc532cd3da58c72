import json

import pytest

from relaytrade import nip44
from relaytrade.envelope import EnvelopeCodec, PrivacyMode, SenderKeys, parse_dm_events
from relaytrade.errors import EnvelopeDecodeError, RT_E_BAD_SIGNATURE, RT_E_MESSAGE_FORMAT
from relaytrade.events import (
    KIND_GIFT_WRAP,
    KIND_PRIVATE_DIRECT_MESSAGE,
    KIND_SEAL,
    KIND_TEXT_NOTE,
    TIMESTAMP_TWEAK_SECONDS,
    build_unsigned,
    now_ts,
    sign_event,
)
from relaytrade.keys import KeyDeriver, KeyPair, derive_shared_key
from relaytrade.protocol import Action, Message, TextMessagePayload

SEED = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"


def _msg(request_id=7):
    return Message.new_order("0b2f7c2e-0000-4000-8000-000000000001", request_id, 3, Action.FIAT_SENT)


def test_reputation_mode_seal_is_signed_by_identity():
    d = KeyDeriver(SEED)
    identity, trade = d.identity_key(), d.trade_key(3)
    daemon = KeyPair.generate()
    codec = EnvelopeCodec()

    wrap = codec.encode(_msg(), SenderKeys(trade, identity), daemon.public_key, PrivacyMode.REPUTATION)
    assert wrap.kind == KIND_GIFT_WRAP
    assert wrap.tag_values("p") == [daemon.public_key]
    assert wrap.pubkey not in (identity.public_key, trade.public_key)
    assert wrap.verify()

    decoded = codec.decode(wrap, daemon)
    assert decoded.sender == identity.public_key
    assert decoded.author == trade.public_key
    assert decoded.signature_valid is True
    assert decoded.message.to_wire() == _msg().to_wire()
    assert now_ts() - TIMESTAMP_TWEAK_SECONDS - 5 <= wrap.created_at <= now_ts()


def test_full_privacy_mode_never_reveals_identity():
    d = KeyDeriver(SEED)
    identity, trade = d.identity_key(), d.trade_key(4)
    daemon = KeyPair.generate()
    codec = EnvelopeCodec()

    wrap = codec.encode(_msg(), SenderKeys(trade, identity), daemon.public_key, PrivacyMode.FULL_PRIVACY)
    decoded = codec.decode(wrap, daemon)

    assert decoded.sender == trade.public_key
    assert decoded.signature_valid is None
    assert identity.public_key not in json.dumps(wrap.to_dict())


def test_expiration_tag_is_added_when_configured():
    daemon = KeyPair.generate()
    wrap = EnvelopeCodec(expiration_seconds=60).encode(
        _msg(), SenderKeys(KeyPair.generate()), daemon.public_key
    )
    (exp,) = wrap.tag_values("expiration")
    assert int(exp) > now_ts()


def test_wrap_for_someone_else_is_rejected():
    daemon, other = KeyPair.generate(), KeyPair.generate()
    codec = EnvelopeCodec()
    wrap = codec.encode(_msg(), SenderKeys(KeyPair.generate()), daemon.public_key)

    with pytest.raises(EnvelopeDecodeError):
        codec.decode(wrap, other)


def test_tampered_outer_signature_is_rejected():
    daemon = KeyPair.generate()
    codec = EnvelopeCodec()
    wrap = codec.encode(_msg(), SenderKeys(KeyPair.generate()), daemon.public_key)
    wrap.content = wrap.content[:-4] + "AAAA"

    with pytest.raises(EnvelopeDecodeError) as ei:
        codec.decode(wrap, daemon)
    assert ei.value.code == RT_E_BAD_SIGNATURE


def test_private_dm_round_trip():
    alice, bob = KeyPair.generate(), KeyPair.generate()
    codec = EnvelopeCodec()
    msg = Message.new_order(None, None, None, Action.SEND_DM, TextMessagePayload("hola"))

    ev = codec.encode_private_dm(msg, alice, bob.public_key)
    assert ev.kind == KIND_PRIVATE_DIRECT_MESSAGE
    decoded = codec.decode(ev, bob)
    assert decoded.sender == alice.public_key
    assert decoded.message.payload == TextMessagePayload("hola")


def test_parse_dm_events_skips_noise_and_sorts():
    daemon = KeyPair.generate()
    trade = KeyPair.generate()
    codec = EnvelopeCodec()

    good = codec.encode(_msg(1), SenderKeys(daemon), trade.public_key)
    good2 = codec.encode(_msg(2), SenderKeys(daemon), trade.public_key)
    noise = sign_event(KeyPair.generate(), KIND_GIFT_WRAP, "not encrypted", tags=[["p", trade.public_key]])
    foreign = codec.encode(_msg(3), SenderKeys(daemon), KeyPair.generate().public_key)

    out = parse_dm_events(codec, [good, noise, good2, foreign, good], trade, since=0)

    assert sorted(d.message.request_id for d in out) == [1, 2]
    assert [d.timestamp for d in out] == sorted(d.timestamp for d in out)


def test_parse_dm_events_default_window_drops_old_messages():
    daemon, trade = KeyPair.generate(), KeyPair.generate()
    codec = EnvelopeCodec()
    wrap = codec.encode(_msg(), SenderKeys(daemon), trade.public_key)

    assert parse_dm_events(codec, [wrap], trade) != []
    assert parse_dm_events(codec, [wrap], trade, now=now_ts() + 3600) == []


def test_chat_wrap_round_trip_and_inner_signature():
    admin, buyer = KeyPair.generate(), KeyPair.generate()
    shared = derive_shared_key(admin.secret, buyer.public_key)
    codec = EnvelopeCodec()
    wrap = codec.encode_chat(admin, shared.public_key, "please upload the receipt", created_at=1_700_000_000)

    assert wrap.tag_values("p") == [shared.public_key]
    env = codec.decode_chat(wrap, derive_shared_key(buyer.secret, admin.public_key))
    assert env.author == admin.public_key
    assert env.content == "please upload the receipt"
    assert env.timestamp == 1_700_000_000


def _wrap_around(plaintext, recipient):
    """A correctly signed gift wrap whose decrypted seal layer is ``plaintext``."""
    ephemeral = KeyPair.generate()
    return sign_event(
        ephemeral,
        KIND_GIFT_WRAP,
        nip44.encrypt(plaintext, ephemeral.secret, recipient.public_key),
        tags=[["p", recipient.public_key]],
    )


def _wrap_rumor(rumor_json, sender, recipient):
    seal = sign_event(sender, KIND_SEAL, nip44.encrypt(rumor_json, sender.secret, recipient.public_key))
    return _wrap_around(seal.to_json(), recipient)


def _rumor_with_kind(sender, **overrides):
    kind = {"version": 1, "request_id": 7, "trade_index": 3, "id": None, "action": "fiat-sent", "payload": None}
    kind.update(overrides)
    content = json.dumps([{"order": kind}, None])
    return build_unsigned(sender.public_key, KIND_TEXT_NOTE, content).to_json()


@pytest.mark.parametrize(
    "seal_plaintext",
    [
        "null",
        "[1,2]",
        "42",
        '"seal"',
        '{"pubkey": "aa", "created_at": 1, "kind": 13, "tags": "p"}',
        '{"pubkey": "aa", "created_at": "soon", "kind": 13}',
        '{"pubkey": "aa", "created_at": 1e999, "kind": 13}',
    ],
)
def test_decode_rejects_malformed_seal_layer(seal_plaintext):
    trade = KeyPair.generate()
    with pytest.raises(EnvelopeDecodeError) as ei:
        EnvelopeCodec().decode(_wrap_around(seal_plaintext, trade), trade)
    assert ei.value.code == RT_E_MESSAGE_FORMAT


@pytest.mark.parametrize("rumor_plaintext", ["null", "[1,2]", '{"pubkey": "aa"}'])
def test_decode_rejects_malformed_rumor_layer(rumor_plaintext):
    daemon, trade = KeyPair.generate(), KeyPair.generate()
    with pytest.raises(EnvelopeDecodeError) as ei:
        EnvelopeCodec().decode(_wrap_rumor(rumor_plaintext, daemon, trade), trade)
    assert ei.value.code == RT_E_MESSAGE_FORMAT


@pytest.mark.parametrize(
    "overrides",
    [{"request_id": "abc"}, {"request_id": [1]}, {"trade_index": "x"}, {"version": {"v": 1}}, {"request_id": True}],
)
def test_bad_field_types_in_rumor_are_decode_errors(overrides):
    daemon, trade = KeyPair.generate(), KeyPair.generate()
    codec = EnvelopeCodec()
    bad = _wrap_rumor(_rumor_with_kind(daemon, **overrides), daemon, trade)
    good = codec.encode(_msg(9), SenderKeys(daemon), trade.public_key)

    with pytest.raises(EnvelopeDecodeError) as ei:
        codec.decode(bad, trade)
    assert ei.value.code == RT_E_MESSAGE_FORMAT
    assert [d.message.request_id for d in parse_dm_events(codec, [bad, good], trade, since=0)] == [9]


def test_well_formed_hand_built_rumor_decodes():
    daemon, trade = KeyPair.generate(), KeyPair.generate()
    decoded = EnvelopeCodec().decode(_wrap_rumor(_rumor_with_kind(daemon), daemon, trade), trade)
    assert decoded.message.request_id == 7
    assert decoded.message.action == Action.FIAT_SENT


@pytest.mark.parametrize("inner_plaintext", ["null", "[1,2]", "42", '{"pubkey": "aa", "created_at": 1, "kind": 1, "tags": [5]}'])
def test_decode_chat_rejects_malformed_inner_event(inner_plaintext):
    admin, buyer = KeyPair.generate(), KeyPair.generate()
    shared = derive_shared_key(admin.secret, buyer.public_key)
    with pytest.raises(EnvelopeDecodeError) as ei:
        EnvelopeCodec().decode_chat(_wrap_around(inner_plaintext, shared), shared)
    assert ei.value.code == RT_E_MESSAGE_FORMAT
