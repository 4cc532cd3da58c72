"""Deterministic key derivation.

Every key the client ever uses is derived from one 12-word seed phrase:

    m/44'/1237'/38383'/0/0        identity key (reputation-bearing)
    m/44'/1237'/38383'/{N}/0      trade key N (N >= 1, one per trade)

Only the seed and the ``last_trade_index`` counter need to be persisted; every
trade key can be regenerated from them, which is what startup recovery relies
on.

Dispute chat keys come from key agreement instead: the raw x-coordinate of
``local_secret * remote_public`` is used as a fresh secret key. Both sides of
the agreement compute the same value from their own secret and the other
party's public key.

Public keys are 32-byte x-only (BIP-340) and travel as lowercase hex.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Union

from bip32 import BIP32
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from mnemonic import Mnemonic

from .errors import (
    KIND_FATAL,
    RT_E_INVALID_INDEX,
    RT_E_INVALID_PUBKEY,
    RT_E_INVALID_SECRET,
    RT_E_SEED_INVALID,
    relaytrade_error,
)


PURPOSE = 44
COIN_TYPE = 1237
# Account level doubles as the order event kind of the trade protocol.
ACCOUNT = 38383
IDENTITY_INDEX = 0
MAX_TRADE_INDEX = 2**31 - 1

SEED_WORDS = 12
_SEED_STRENGTH_BITS = 128

_MNEMONIC = Mnemonic("english")


@dataclass(frozen=True)
class KeyPair:
    """A secp256k1 keypair with an x-only public key."""

    secret: bytes = field(repr=False)
    public_key: str

    @classmethod
    def from_secret(cls, secret: bytes) -> "KeyPair":
        if not isinstance(secret, (bytes, bytearray)) or len(secret) != 32:
            raise relaytrade_error(RT_E_INVALID_SECRET, "secret key must be 32 bytes")
        try:
            pub = PrivateKey(bytes(secret)).public_key.format(compressed=True)[1:]
        except ValueError as e:
            raise relaytrade_error(RT_E_INVALID_SECRET, f"secret key out of range: {e}") from e
        return cls(secret=bytes(secret), public_key=pub.hex())

    @classmethod
    def from_hex(cls, secret_hex: str) -> "KeyPair":
        try:
            raw = bytes.fromhex((secret_hex or "").strip())
        except ValueError as e:
            raise relaytrade_error(RT_E_INVALID_SECRET, "secret key is not valid hex") from e
        return cls.from_secret(raw)

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls.from_secret(PrivateKey().secret)

    @property
    def secret_hex(self) -> str:
        return self.secret.hex()

    @property
    def public_bytes(self) -> bytes:
        return bytes.fromhex(self.public_key)

    def sign_schnorr(self, digest: bytes) -> bytes:
        """BIP-340 signature over a 32-byte digest."""
        return PrivateKey(self.secret).sign_schnorr(digest, secrets.token_bytes(32))


def parse_public_key(value: Union[str, bytes]) -> bytes:
    """Validate an x-only public key and return its 32 raw bytes.

    Raises a non-retryable error for malformed hex, wrong length or a value
    that is not the x-coordinate of a curve point.
    """
    if isinstance(value, str):
        try:
            raw = bytes.fromhex(value.strip())
        except ValueError as e:
            raise relaytrade_error(RT_E_INVALID_PUBKEY, "public key is not valid hex") from e
    else:
        raw = bytes(value)
    if len(raw) != 32:
        raise relaytrade_error(RT_E_INVALID_PUBKEY, "public key must be 32 bytes", length=len(raw))
    try:
        PublicKey(b"\x02" + raw)
    except ValueError as e:
        raise relaytrade_error(RT_E_INVALID_PUBKEY, "public key is not on secp256k1") from e
    return raw


def verify_schnorr(public_key: Union[str, bytes], signature: bytes, digest: bytes) -> bool:
    try:
        raw = parse_public_key(public_key)
        return bool(PublicKeyXOnly(raw).verify(signature, digest))
    except Exception:
        return False


def generate_seed_phrase() -> str:
    return _MNEMONIC.generate(strength=_SEED_STRENGTH_BITS)


def normalize_seed_phrase(seed_phrase: str) -> str:
    return " ".join((seed_phrase or "").strip().lower().split())


def validate_seed_phrase(seed_phrase: str) -> str:
    """Return the normalized phrase or raise a fatal error."""
    phrase = normalize_seed_phrase(seed_phrase)
    words = phrase.split(" ") if phrase else []
    if len(words) != SEED_WORDS:
        raise relaytrade_error(
            RT_E_SEED_INVALID,
            f"seed phrase must have {SEED_WORDS} words",
            kind=KIND_FATAL,
            words=len(words),
        )
    if not _MNEMONIC.check(phrase):
        raise relaytrade_error(RT_E_SEED_INVALID, "seed phrase checksum mismatch", kind=KIND_FATAL)
    return phrase


def derivation_path(index: int) -> str:
    return f"m/{PURPOSE}'/{COIN_TYPE}'/{ACCOUNT}'/{index}/0"


class KeyDeriver:
    """Derives identity and trade keys from one seed phrase.

    The BIP-32 master node is computed once; derivations are pure functions of
    ``(seed, index)``.
    """

    def __init__(self, seed_phrase: str):
        phrase = validate_seed_phrase(seed_phrase)
        seed = Mnemonic.to_seed(phrase, passphrase="")
        self._node = BIP32.from_seed(seed)

    def derive_key(self, index: int) -> KeyPair:
        if not isinstance(index, int) or isinstance(index, bool) or index < 0 or index > MAX_TRADE_INDEX:
            raise relaytrade_error(RT_E_INVALID_INDEX, "derivation index out of range", index=index)
        return KeyPair.from_secret(self._node.get_privkey_from_path(derivation_path(index)))

    def identity_key(self) -> KeyPair:
        return self.derive_key(IDENTITY_INDEX)

    def trade_key(self, index: int) -> KeyPair:
        if isinstance(index, int) and index < 1:
            raise relaytrade_error(RT_E_INVALID_INDEX, "trade key index must be >= 1", index=index)
        return self.derive_key(index)


def derive_identity_key(seed_phrase: str) -> KeyPair:
    return KeyDeriver(seed_phrase).identity_key()


def derive_trade_key(seed_phrase: str, index: int) -> KeyPair:
    return KeyDeriver(seed_phrase).trade_key(index)


def shared_secret_bytes(local_secret: bytes, remote_public: Union[str, bytes]) -> bytes:
    """Raw ECDH x-coordinate of ``local_secret * lift_x(remote_public)``."""
    raw = parse_public_key(remote_public)
    if len(local_secret) != 32:
        raise relaytrade_error(RT_E_INVALID_SECRET, "secret key must be 32 bytes")
    try:
        point = PublicKey(b"\x02" + raw).multiply(bytes(local_secret))
    except ValueError as e:
        raise relaytrade_error(RT_E_INVALID_SECRET, f"key agreement failed: {e}") from e
    return point.format(compressed=True)[1:]


def derive_shared_key(local_secret: bytes, remote_public: Union[str, bytes]) -> KeyPair:
    """Key-agreement keypair addressing a private two-party channel."""
    return KeyPair.from_secret(shared_secret_bytes(local_secret, remote_public))
