import os
import subprocess
import sys

import pytest
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from relaytrade.cli import main
from relaytrade.keys import KeyDeriver

SEED = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"


@pytest.fixture()
def data_dir(tmp_path, monkeypatch):
    for name in list(os.environ):
        if name.startswith("RELAYTRADE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RELAYTRADE_DATA_DIR", str(tmp_path))
    return tmp_path


def _run(argv):
    with pytest.raises(SystemExit) as ei:
        main(argv)
    return ei.value.code


def test_init_then_keys(data_dir, capsys):
    assert _run(["init", "--seed", SEED]) == 0
    out = capsys.readouterr().out
    assert KeyDeriver(SEED).identity_key().public_key in out
    assert SEED not in out

    assert _run(["init"]) == 1
    capsys.readouterr()

    assert _run(["keys", "--index", "3"]) == 0
    out = capsys.readouterr().out
    assert KeyDeriver(SEED).trade_key(3).public_key in out


def test_init_generates_and_shows_seed(data_dir, capsys):
    assert _run(["init"]) == 0
    out = capsys.readouterr().out
    assert "Seed phrase" in out


def test_bad_seed_is_a_usage_error(data_dir, capsys):
    assert _run(["init", "--seed", "not a valid seed phrase"]) == 2
    assert "RT_E_SEED_INVALID" in capsys.readouterr().err


def test_keys_without_identity(data_dir, capsys):
    assert _run(["keys"]) == 2
    assert "RT_E_SEED_MISSING" in capsys.readouterr().err


def test_commands_needing_daemon_fail_fast(data_dir, capsys):
    assert _run(["orders"]) == 2
    assert "RELAYTRADE_DAEMON_PUBKEY" in capsys.readouterr().err


def test_observe_decrypts_exported_chat(data_dir, capsys):
    key = bytes(range(32))
    nonce = os.urandom(12)
    downloads = data_dir / "downloads"
    downloads.mkdir()
    (downloads / "chat.enc").write_bytes(nonce + ChaCha20Poly1305(key).encrypt(nonce, b"Buyer: hi\n", None))

    assert _run(["observe", "chat.enc", key.hex()]) == 0
    assert capsys.readouterr().out.strip() == "Buyer: hi"


def test_no_command_prints_help():
    p = subprocess.run([sys.executable, "-m", "relaytrade.cli"], capture_output=True, text=True)
    assert p.returncode == 2
    assert "Usage:" in p.stdout
    assert "Traceback (most recent call last)" not in p.stderr
