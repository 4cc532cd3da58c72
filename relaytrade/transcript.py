"""Plain-text dispute chat transcripts.

One append-only file per dispute. Each entry is a header line, the message
text and a blank line::

    Buyer - 03-02-2025 - 14:05:09
    I sent the transfer

    Admin to Seller - 03-02-2025 - 14:06:40
    Please confirm receipt

Timestamps are UTC. The files are what an operator reads after the fact, and
they are replayed on startup to rebuild chat state.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .errors import RT_E_STORAGE, relaytrade_error
from .models import ChatParty, ChatSender


logger = logging.getLogger("relaytrade.transcript")

_TS_FORMAT = "%d-%m-%Y - %H:%M:%S"
_HEADER_RE = re.compile(
    r"^(?P<sender>Admin(?: to (?P<target>Buyer|Seller))?|Buyer|Seller) - "
    r"(?P<date>\d{2}-\d{2}-\d{4}) - (?P<time>\d{2}:\d{2}:\d{2})$"
)
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class TranscriptEntry:
    """``party`` is the chat the entry belongs to; for admin entries it is the recipient."""

    sender: ChatSender
    timestamp: int
    content: str
    party: Optional[ChatParty] = None

    @property
    def chat_party(self) -> Optional[ChatParty]:
        if self.party is not None:
            return self.party
        if self.sender == ChatSender.BUYER:
            return ChatParty.BUYER
        if self.sender == ChatSender.SELLER:
            return ChatParty.SELLER
        return None


def format_timestamp(ts: int) -> str:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).strftime(_TS_FORMAT)


def _sender_label(entry: TranscriptEntry) -> str:
    if entry.sender == ChatSender.ADMIN and entry.party is not None:
        return f"Admin to {entry.party.label}"
    return entry.sender.label


def format_entry(entry: TranscriptEntry) -> str:
    return f"{_sender_label(entry)} - {format_timestamp(entry.timestamp)}\n{entry.content}\n\n"


def _parse_header(line: str) -> Optional[TranscriptEntry]:
    m = _HEADER_RE.match(line)
    if not m:
        return None
    try:
        when = datetime.strptime(f"{m.group('date')} - {m.group('time')}", _TS_FORMAT)
    except ValueError:
        return None
    ts = int(when.replace(tzinfo=timezone.utc).timestamp())
    sender_text = m.group("sender")
    target = m.group("target")
    if sender_text.startswith("Admin"):
        party = ChatParty(target.lower()) if target else None
        return TranscriptEntry(ChatSender.ADMIN, ts, "", party)
    sender = ChatSender(sender_text.lower())
    return TranscriptEntry(sender, ts, "", ChatParty(sender.value))


def parse_transcript(text: str) -> List[TranscriptEntry]:
    """Split a transcript back into entries.

    A header only starts a new entry at the top of the file or right after a
    blank line, so message text that happens to look like a header stays
    part of the message. Lines before the first header are ignored.
    """
    entries: List[TranscriptEntry] = []
    current: Optional[TranscriptEntry] = None
    body: List[str] = []
    prev_blank = True

    def flush() -> None:
        if current is None:
            return
        while body and not body[-1].strip():
            body.pop()
        entries.append(
            TranscriptEntry(current.sender, current.timestamp, "\n".join(body), current.party)
        )

    for raw in text.splitlines():
        line = raw.rstrip("\r")
        header = _parse_header(line) if prev_blank else None
        if header is not None:
            flush()
            current = header
            body = []
        elif current is not None:
            body.append(line)
        prev_blank = not line.strip()
    flush()
    return entries


def last_seen_by_party(entries: Iterable[TranscriptEntry]) -> Dict[ChatParty, int]:
    """Newest timestamp each party sent. Admin entries do not count."""
    out: Dict[ChatParty, int] = {}
    for entry in entries:
        party = entry.chat_party
        if party is None or entry.sender == ChatSender.ADMIN:
            continue
        if entry.timestamp > out.get(party, 0):
            out[party] = entry.timestamp
    return out


class TranscriptStore:
    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, dispute_id: str) -> Path:
        return self.directory / f"{_SAFE_NAME_RE.sub('_', dispute_id)}.txt"

    def append(self, dispute_id: str, entries: Iterable[TranscriptEntry]) -> int:
        batch = list(entries)
        if not batch:
            return 0
        text = "".join(format_entry(e) for e in batch)
        path = self.path_for(dispute_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            raise relaytrade_error(RT_E_STORAGE, f"transcript write failed: {e}", retryable=True, path=str(path)) from e
        return len(batch)

    def load(self, dispute_id: str) -> List[TranscriptEntry]:
        path = self.path_for(dispute_id)
        if not path.exists():
            return []
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise relaytrade_error(RT_E_STORAGE, f"transcript read failed: {e}", path=str(path)) from e
        return parse_transcript(text)

    def dispute_ids(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.txt"))

    def last_seen(self, dispute_id: str) -> Dict[ChatParty, int]:
        return last_seen_by_party(self.load(dispute_id))
