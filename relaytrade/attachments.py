"""Encrypted chat attachments.

A chat message may carry a reference to an encrypted blob instead of text::

    {"type": "image_encrypted", "blossom_url": "blossom://host/<sha256>",
     "nonce": "<hex>", "mime_type": "image/png", "filename": "receipt.png",
     "decryption_key": "<64 hex, optional>"}

Blobs are ``nonce(12) || ciphertext || tag(16)`` sealed with
ChaCha20-Poly1305. When the message carries no key, the key is the ECDH
shared secret between the solver's key and the sender's public key.

Nothing is fetched or written until the operator asks for it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .errors import (
    KIND_RESOURCE_LIMIT,
    RT_E_ATTACHMENT_DECRYPT,
    RT_E_ATTACHMENT_FETCH,
    RT_E_ATTACHMENT_KEY,
    RT_E_ATTACHMENT_TOO_LARGE,
    RT_E_ATTACHMENT_URL,
    RelayTradeError,
    relaytrade_error,
)
from .keys import shared_secret_bytes


logger = logging.getLogger("relaytrade.attachments")

BLOB_SCHEME = "blossom://"
MAX_BLOB_BYTES = 25 * 1024 * 1024
FETCH_TIMEOUT_SECONDS = 30.0
NONCE_BYTES = 12
TAG_BYTES = 16
_READ_CHUNK = 64 * 1024

ATTACHMENT_TYPES = {"image_encrypted": "image", "file_encrypted": "file"}
PLACEHOLDER_PREFIX = "[Attachment]"
_PLACEHOLDER_RE = re.compile(r"^\[Attachment\] (?P<filename>.+?) \((?P<mime>[^()]*)\) (?P<url>\S+)$")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class Attachment:
    blob_url: str
    filename: str
    mime_type: str = ""
    nonce: Optional[str] = None
    kind: str = "file"
    decryption_key: Optional[str] = field(default=None, repr=False)

    def placeholder(self) -> str:
        """One transcript line standing in for the blob."""
        return f"{PLACEHOLDER_PREFIX} {self.filename} ({self.mime_type}) {self.blob_url}"


def parse_attachment(content: str) -> Optional[Attachment]:
    """Recognize an attachment message or a transcript placeholder line."""
    text = (content or "").strip()
    if text.startswith(PLACEHOLDER_PREFIX):
        m = _PLACEHOLDER_RE.match(text)
        if not m:
            return None
        return Attachment(blob_url=m.group("url"), filename=m.group("filename"), mime_type=m.group("mime"))
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or data.get("type") not in ATTACHMENT_TYPES:
        return None
    url = data.get("blossom_url")
    if not isinstance(url, str) or not url:
        return None
    return Attachment(
        blob_url=url,
        filename=str(data.get("filename") or ""),
        mime_type=str(data.get("mime_type") or ""),
        nonce=data.get("nonce"),
        kind=ATTACHMENT_TYPES[data["type"]],
        decryption_key=data.get("decryption_key") or None,
    )


def resolve_blob_url(reference: str) -> str:
    ref = (reference or "").strip()
    if ref.startswith(BLOB_SCHEME):
        return "https://" + ref[len(BLOB_SCHEME):]
    if ref.startswith("https://"):
        return ref
    raise relaytrade_error(RT_E_ATTACHMENT_URL, "attachment URL must be blossom:// or https://", url=ref)


def _too_large(size: int, max_bytes: int) -> RelayTradeError:
    return relaytrade_error(
        RT_E_ATTACHMENT_TOO_LARGE,
        f"blob exceeds {max_bytes} bytes",
        kind=KIND_RESOURCE_LIMIT,
        size=size,
        max_bytes=max_bytes,
    )


def fetch_blob(url: str, *, max_bytes: int = MAX_BLOB_BYTES, timeout: float = FETCH_TIMEOUT_SECONDS) -> bytes:
    """HTTPS GET with a hard size cap.

    The advertised Content-Length is checked first; the body is then read in
    chunks and abandoned as soon as it passes the cap.
    """
    req = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            declared = resp.headers.get("Content-Length")
            if declared is not None and declared.isdigit() and int(declared) > max_bytes:
                raise _too_large(int(declared), max_bytes)
            chunks: List[bytes] = []
            total = 0
            while True:
                chunk = resp.read(_READ_CHUNK)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    raise _too_large(total, max_bytes)
                chunks.append(chunk)
    except urllib.error.HTTPError as e:
        raise relaytrade_error(
            RT_E_ATTACHMENT_FETCH, f"blob fetch returned HTTP {e.code}", retryable=e.code >= 500, url=url
        ) from e
    except (urllib.error.URLError, OSError) as e:
        raise relaytrade_error(RT_E_ATTACHMENT_FETCH, f"blob fetch failed: {e}", retryable=True, url=url) from e
    return b"".join(chunks)


async def fetch_blob_async(
    url: str, *, max_bytes: int = MAX_BLOB_BYTES, timeout: float = FETCH_TIMEOUT_SECONDS
) -> bytes:
    return await asyncio.to_thread(fetch_blob, url, max_bytes=max_bytes, timeout=timeout)


def decrypt_blob(blob: bytes, key: bytes) -> bytes:
    if len(key) != 32:
        raise relaytrade_error(RT_E_ATTACHMENT_KEY, f"decrypt key must be 32 bytes, got {len(key)}")
    if len(blob) < NONCE_BYTES + TAG_BYTES:
        raise relaytrade_error(RT_E_ATTACHMENT_DECRYPT, "blob too short", length=len(blob))
    nonce, sealed = blob[:NONCE_BYTES], blob[NONCE_BYTES:]
    try:
        return ChaCha20Poly1305(key).decrypt(nonce, sealed, None)
    except InvalidTag as e:
        raise relaytrade_error(RT_E_ATTACHMENT_DECRYPT, "authentication tag mismatch") from e


def sanitize_filename(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", name or "") or "attachment"


def attachment_key(
    attachment: Attachment,
    *,
    local_secret: Optional[bytes] = None,
    sender_pubkey: Optional[str] = None,
) -> Optional[bytes]:
    """Embedded key if present, else the ECDH key with the sender, else None."""
    if attachment.decryption_key:
        try:
            key = bytes.fromhex(attachment.decryption_key)
        except ValueError as e:
            raise relaytrade_error(RT_E_ATTACHMENT_KEY, "embedded decryption key is not hex") from e
        if len(key) != 32:
            raise relaytrade_error(RT_E_ATTACHMENT_KEY, "embedded decryption key must be 32 bytes")
        return key
    if local_secret is not None and sender_pubkey:
        return shared_secret_bytes(local_secret, sender_pubkey)
    return None


def output_path(downloads_dir: Path, dispute_id: str, filename: str, *, encrypted: bool) -> Path:
    name = sanitize_filename(filename)
    if encrypted:
        name += ".enc"
    return Path(downloads_dir) / f"{sanitize_filename(dispute_id)}_{name}"


def save_attachment(
    attachment: Attachment,
    dispute_id: str,
    downloads_dir: Union[str, Path],
    *,
    key: Optional[bytes] = None,
    fetcher: Callable[[str], bytes] = fetch_blob,
) -> Path:
    """Fetch, decrypt when a key is known, and write under ``downloads_dir``.

    Without a key the blob is written raw with a ``.enc`` suffix. With a key,
    an authentication failure raises ``RT_E_ATTACHMENT_DECRYPT`` and nothing
    is written.
    """
    url = resolve_blob_url(attachment.blob_url)
    blob = fetcher(url)
    encrypted = key is None
    data = blob if encrypted else decrypt_blob(blob, key)
    path = output_path(Path(downloads_dir), dispute_id, attachment.filename, encrypted=encrypted)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    logger.info("attachment for dispute %s saved to %s", dispute_id, path)
    return path


async def save_attachment_async(
    attachment: Attachment,
    dispute_id: str,
    downloads_dir: Union[str, Path],
    *,
    key: Optional[bytes] = None,
    max_bytes: int = MAX_BLOB_BYTES,
    timeout: float = FETCH_TIMEOUT_SECONDS,
) -> Path:
    def _fetch(url: str) -> bytes:
        return fetch_blob(url, max_bytes=max_bytes, timeout=timeout)

    return await asyncio.to_thread(save_attachment, attachment, dispute_id, downloads_dir, key=key, fetcher=_fetch)


def decrypt_chat_file(path: Union[str, Path], key_hex: str, downloads_dir: Union[str, Path]) -> List[str]:
    """Observer mode: open an exported chat blob with a 64-hex shared key."""
    try:
        key = bytes.fromhex((key_hex or "").strip())
    except ValueError as e:
        raise relaytrade_error(RT_E_ATTACHMENT_KEY, "shared key must be 64 hex characters") from e
    if len(key) != 32:
        raise relaytrade_error(RT_E_ATTACHMENT_KEY, "shared key must be 64 hex characters")

    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path(downloads_dir) / p
    try:
        blob = p.read_bytes()
    except FileNotFoundError as e:
        raise relaytrade_error(RT_E_ATTACHMENT_FETCH, f"observer file not found: {p}") from e
    except OSError as e:
        raise relaytrade_error(RT_E_ATTACHMENT_FETCH, f"failed to read {p}: {e}") from e

    text = decrypt_blob(blob, key).decode("utf-8", errors="replace")
    lines = [line.rstrip() for line in text.splitlines()]
    while lines and not lines[-1]:
        lines.pop()
    return lines
