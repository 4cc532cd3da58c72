from relaytrade.models import ChatParty, ChatSender
from relaytrade.transcript import (
    TranscriptEntry,
    TranscriptStore,
    format_entry,
    format_timestamp,
    last_seen_by_party,
    parse_transcript,
)

T0 = 1738591509  # 03-02-2025 14:05:09 UTC


def test_timestamp_is_utc():
    assert format_timestamp(T0) == "03-02-2025 - 14:05:09"


def test_admin_entries_name_their_target():
    entry = TranscriptEntry(ChatSender.ADMIN, T0, "Please confirm receipt", ChatParty.SELLER)
    assert format_entry(entry) == "Admin to Seller - 03-02-2025 - 14:05:09\nPlease confirm receipt\n\n"


def test_parse_restores_entries():
    text = (
        "Buyer - 03-02-2025 - 14:05:09\nI sent the transfer\n\n"
        "Admin to Buyer - 03-02-2025 - 14:06:40\nThanks\nsecond line\n\n"
    )
    entries = parse_transcript(text)

    assert entries == [
        TranscriptEntry(ChatSender.BUYER, T0, "I sent the transfer", ChatParty.BUYER),
        TranscriptEntry(ChatSender.ADMIN, T0 + 91, "Thanks\nsecond line", ChatParty.BUYER),
    ]


def test_header_lookalike_inside_message_stays_in_body():
    text = "Seller - 03-02-2025 - 14:05:09\nquoting:\nBuyer - 03-02-2025 - 14:00:00\n\n"
    (entry,) = parse_transcript(text)
    assert entry.sender == ChatSender.SELLER
    assert entry.content == "quoting:\nBuyer - 03-02-2025 - 14:00:00"


def test_garbage_before_first_header_is_ignored():
    assert parse_transcript("junk\n\nBuyer - 03-02-2025 - 14:05:09\nhi\n")[0].content == "hi"


def test_last_seen_ignores_admin_entries():
    entries = [
        TranscriptEntry(ChatSender.BUYER, 10, "a", ChatParty.BUYER),
        TranscriptEntry(ChatSender.SELLER, 30, "b", ChatParty.SELLER),
        TranscriptEntry(ChatSender.ADMIN, 50, "c", ChatParty.BUYER),
        TranscriptEntry(ChatSender.BUYER, 20, "d", ChatParty.BUYER),
    ]
    assert last_seen_by_party(entries) == {ChatParty.BUYER: 20, ChatParty.SELLER: 30}


def test_store_appends_and_reloads(tmp_path):
    store = TranscriptStore(tmp_path / "chats")
    assert store.load("d/1") == []
    assert store.dispute_ids() == []

    store.append("d/1", [TranscriptEntry(ChatSender.BUYER, T0, "hello\n\nwith a gap")])
    store.append("d/1", [TranscriptEntry(ChatSender.SELLER, T0 + 5, "ok")])

    assert store.path_for("d/1").name == "d_1.txt"
    assert [e.content for e in store.load("d/1")] == ["hello\n\nwith a gap", "ok"]
    assert store.last_seen("d/1") == {ChatParty.BUYER: T0, ChatParty.SELLER: T0 + 5}
    assert store.append("d/1", []) == 0
