"""Versioned conversation encryption (version 2).

Layout of a payload, base64 encoded::

    version(1) = 0x02 || nonce(32) || ciphertext || mac(32)

The conversation key is HKDF-extract(salt="nip44-v2", ikm=ECDH x). Each message
expands it with its random nonce into a ChaCha20 key, a ChaCha20 nonce and an
HMAC key. Plaintext is length-prefixed and zero-padded to a bucketed size so
ciphertext length leaks little about the message.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import math
import secrets
from typing import Optional, Tuple, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .errors import (
    RT_E_DECRYPT,
    RT_E_PLAINTEXT_SIZE,
    decode_error,
    relaytrade_error,
)
from .keys import shared_secret_bytes


VERSION = 2
SALT = b"nip44-v2"
MIN_PLAINTEXT = 1
MAX_PLAINTEXT = 65535
_MIN_PAYLOAD_B64 = 132
_MAX_PAYLOAD_B64 = 87472
_MIN_PAYLOAD_RAW = 99
_MAX_PAYLOAD_RAW = 65603


def conversation_key(local_secret: bytes, remote_public: Union[str, bytes]) -> bytes:
    shared_x = shared_secret_bytes(local_secret, remote_public)
    return hmac.new(SALT, shared_x, hashlib.sha256).digest()


def _message_keys(conv_key: bytes, nonce: bytes) -> Tuple[bytes, bytes, bytes]:
    if len(conv_key) != 32:
        raise relaytrade_error(RT_E_DECRYPT, "conversation key must be 32 bytes")
    if len(nonce) != 32:
        raise relaytrade_error(RT_E_DECRYPT, "nonce must be 32 bytes")
    okm = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conv_key)
    return okm[0:32], okm[32:44], okm[44:76]


def calc_padded_len(unpadded_len: int) -> int:
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * (math.floor((unpadded_len - 1) / chunk) + 1)


def _pad(plaintext: str) -> bytes:
    raw = plaintext.encode("utf-8")
    n = len(raw)
    if n < MIN_PLAINTEXT or n > MAX_PLAINTEXT:
        raise relaytrade_error(RT_E_PLAINTEXT_SIZE, "plaintext length out of range", length=n)
    return n.to_bytes(2, "big") + raw + b"\x00" * (calc_padded_len(n) - n)


def _unpad(padded: bytes) -> str:
    n = int.from_bytes(padded[0:2], "big")
    raw = padded[2 : 2 + n]
    if n < MIN_PLAINTEXT or n > MAX_PLAINTEXT or len(raw) != n or len(padded) != 2 + calc_padded_len(n):
        raise decode_error(RT_E_DECRYPT, "invalid padding")
    return raw.decode("utf-8")


def _chacha20(key: bytes, nonce12: bytes, data: bytes) -> bytes:
    # cryptography takes a 16-byte nonce: 32-bit little-endian counter || 96-bit nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00\x00\x00\x00" + nonce12), mode=None)
    ctx = cipher.encryptor()
    return ctx.update(data) + ctx.finalize()


def encrypt_with_conversation_key(
    plaintext: str, conv_key: bytes, *, nonce: Optional[bytes] = None
) -> str:
    nonce = nonce if nonce is not None else secrets.token_bytes(32)
    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, _pad(plaintext))
    mac = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()
    return base64.b64encode(bytes([VERSION]) + nonce + ciphertext + mac).decode("ascii")


def decrypt_with_conversation_key(payload: str, conv_key: bytes) -> str:
    if not payload or payload[0] == "#":
        raise decode_error(RT_E_DECRYPT, "unknown encryption version")
    if len(payload) < _MIN_PAYLOAD_B64 or len(payload) > _MAX_PAYLOAD_B64:
        raise decode_error(RT_E_DECRYPT, "invalid payload size", length=len(payload))
    try:
        data = base64.b64decode(payload, validate=True)
    except ValueError as e:
        raise decode_error(RT_E_DECRYPT, f"invalid base64: {e}") from e
    if len(data) < _MIN_PAYLOAD_RAW or len(data) > _MAX_PAYLOAD_RAW:
        raise decode_error(RT_E_DECRYPT, "invalid decoded payload size", length=len(data))
    if data[0] != VERSION:
        raise decode_error(RT_E_DECRYPT, "unknown encryption version", version=data[0])

    nonce, ciphertext, mac = data[1:33], data[33:-32], data[-32:]
    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)
    expected = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, mac):
        raise decode_error(RT_E_DECRYPT, "invalid MAC")
    try:
        return _unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))
    except UnicodeDecodeError as e:
        raise decode_error(RT_E_DECRYPT, "plaintext is not valid UTF-8") from e


def encrypt(plaintext: str, local_secret: bytes, remote_public: Union[str, bytes]) -> str:
    return encrypt_with_conversation_key(plaintext, conversation_key(local_secret, remote_public))


def decrypt(payload: str, local_secret: bytes, remote_public: Union[str, bytes]) -> str:
    return decrypt_with_conversation_key(payload, conversation_key(local_secret, remote_public))
