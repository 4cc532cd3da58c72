import pytest

from relaytrade.errors import KIND_FATAL, RT_E_INVALID_INDEX, RT_E_INVALID_PUBKEY, RT_E_SEED_INVALID, RelayTradeError
from relaytrade.keys import (
    KeyDeriver,
    KeyPair,
    derivation_path,
    derive_shared_key,
    generate_seed_phrase,
    parse_public_key,
    shared_secret_bytes,
    validate_seed_phrase,
    verify_schnorr,
)

SEED = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"


def test_derivation_path_layout():
    assert derivation_path(0) == "m/44'/1237'/38383'/0/0"
    assert derivation_path(7) == "m/44'/1237'/38383'/7/0"


def test_identity_and_trade_keys_are_deterministic_and_distinct():
    a = KeyDeriver(SEED)
    b = KeyDeriver("  " + SEED.upper() + "  ")

    assert a.identity_key() == b.identity_key()
    assert a.trade_key(1) == b.trade_key(1)

    pubs = {a.identity_key().public_key} | {a.trade_key(i).public_key for i in range(1, 6)}
    assert len(pubs) == 6
    for pub in pubs:
        assert len(pub) == 64
        assert pub == pub.lower()


def test_trade_index_zero_is_reserved_for_identity():
    d = KeyDeriver(SEED)
    with pytest.raises(RelayTradeError) as ei:
        d.trade_key(0)
    assert ei.value.code == RT_E_INVALID_INDEX
    with pytest.raises(RelayTradeError):
        d.derive_key(-1)


def test_seed_validation():
    phrase = generate_seed_phrase()
    assert len(phrase.split()) == 12
    assert validate_seed_phrase(phrase) == phrase

    with pytest.raises(RelayTradeError) as ei:
        validate_seed_phrase("abandon " * 11 + "abandon")
    assert ei.value.code == RT_E_SEED_INVALID
    assert ei.value.kind == KIND_FATAL

    with pytest.raises(RelayTradeError):
        validate_seed_phrase("too short")


def test_shared_key_is_symmetric():
    admin = KeyPair.generate()
    buyer = KeyPair.generate()

    assert shared_secret_bytes(admin.secret, buyer.public_key) == shared_secret_bytes(buyer.secret, admin.public_key)
    assert derive_shared_key(admin.secret, buyer.public_key) == derive_shared_key(buyer.secret, admin.public_key)


def test_parse_public_key_rejects_garbage():
    good = KeyPair.generate().public_key
    assert parse_public_key(good) == bytes.fromhex(good)

    for bad in ["zz" * 32, "ab" * 31, ""]:
        with pytest.raises(RelayTradeError) as ei:
            parse_public_key(bad)
        assert ei.value.code == RT_E_INVALID_PUBKEY
        assert not ei.value.retryable


def test_schnorr_sign_and_verify():
    kp = KeyPair.generate()
    digest = bytes(range(32))
    sig = kp.sign_schnorr(digest)

    assert len(sig) == 64
    assert verify_schnorr(kp.public_key, sig, digest)
    assert not verify_schnorr(kp.public_key, sig, bytes(32))
    assert not verify_schnorr(KeyPair.generate().public_key, sig, digest)


def test_keypair_repr_hides_secret():
    kp = KeyPair.generate()
    assert kp.secret_hex not in repr(kp)


def test_shared_keys_differ_per_counterparty():
    admin = KeyPair.generate()
    counterparties = [KeyPair.generate().public_key for _ in range(8)]

    shared = [derive_shared_key(admin.secret, pub) for pub in counterparties]

    assert len({kp.public_key for kp in shared}) == len(counterparties)
    assert len({kp.secret for kp in shared}) == len(counterparties)


def test_shared_keys_differ_for_derived_trade_keys():
    d = KeyDeriver(SEED)
    admin = KeyPair.generate()
    buyer, seller = d.trade_key(1).public_key, d.trade_key(2).public_key

    assert derive_shared_key(admin.secret, buyer).secret != derive_shared_key(admin.secret, seller).secret
