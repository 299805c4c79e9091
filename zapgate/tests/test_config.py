"""Tests for zapgate configuration loading."""

from __future__ import annotations

import os
from dataclasses import FrozenInstanceError
from pathlib import Path
from unittest.mock import patch

import pytest

from zapgate.config import Config

_HEX_RECIPIENT = "aabbccdd" * 8

_REQUIRED_ENV = {
    "RECIPIENT_LIGHTNING_ADDRESS": "alice@example.com",
}

_ALL_KEYS = list(_REQUIRED_ENV.keys()) + [
    "RECIPIENT_NOSTR_PUBKEY", "MIN_PAYMENT_SATS", "ZAP_RECEIPT_TIMEOUT_SECONDS",
    "RECEIPT_LOOKBACK_SECONDS", "NOSTR_RELAYS", "NOSTR_NSEC",
    "RELAY_TIMEOUT_SECONDS", "HTTP_TIMEOUT_SECONDS", "SERVER_HOST",
    "SERVER_PORT", "APP_NAME", "SESSION_PREFIX", "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """No stray .env files; _normalize_pubkey is a passthrough."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("zapgate.config._normalize_pubkey", lambda v: v)
    for key in _ALL_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in _REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)


def test_load_defaults(env: None) -> None:
    cfg = Config.load()
    assert cfg.recipient_address == "alice@example.com"
    assert cfg.recipient_pubkey is None
    assert cfg.min_payment_sats == 100
    assert cfg.receipt_timeout_seconds == 60
    assert cfg.receipt_lookback_seconds == 60
    assert cfg.nostr_relays == [
        "wss://relay.damus.io",
        "wss://nos.lol",
        "wss://nostr-pub.wellorder.net",
        "wss://relay.nostr.band",
    ]
    assert cfg.nostr_nsec == ""
    assert cfg.relay_timeout_seconds == 5
    assert cfg.http_timeout_seconds == 10
    assert cfg.server_host == "127.0.0.1"
    assert cfg.server_port == 8430
    assert cfg.app_name == "SatSnake"
    assert cfg.session_prefix == "satsnake"
    assert cfg.log_level == "INFO"


def test_load_overrides(env: None, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECIPIENT_NOSTR_PUBKEY", _HEX_RECIPIENT)
    monkeypatch.setenv("MIN_PAYMENT_SATS", "21")
    monkeypatch.setenv("ZAP_RECEIPT_TIMEOUT_SECONDS", "120")
    monkeypatch.setenv("NOSTR_RELAYS", " wss://a.example , ,wss://b.example")
    monkeypatch.setenv("SERVER_PORT", "9000")
    monkeypatch.setenv("APP_NAME", "Tetris")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    cfg = Config.load()

    assert cfg.recipient_pubkey == _HEX_RECIPIENT
    assert cfg.min_payment_sats == 21
    assert cfg.receipt_timeout_seconds == 120
    assert cfg.nostr_relays == ["wss://a.example", "wss://b.example"]
    assert cfg.server_port == 9000
    assert cfg.app_name == "Tetris"
    assert cfg.log_level == "DEBUG"


def test_load_missing_required() -> None:
    with pytest.raises(ValueError, match="RECIPIENT_LIGHTNING_ADDRESS"):
        Config.load()


def test_load_missing_required_empty_string(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECIPIENT_LIGHTNING_ADDRESS", "   ")
    with pytest.raises(ValueError, match="RECIPIENT_LIGHTNING_ADDRESS"):
        Config.load()


@pytest.mark.parametrize("address", ["alice", "@example.com", "alice@", "a@b@c"])
def test_load_rejects_malformed_address(
    monkeypatch: pytest.MonkeyPatch, address: str
) -> None:
    monkeypatch.setenv("RECIPIENT_LIGHTNING_ADDRESS", address)
    with pytest.raises(ValueError, match="user@domain"):
        Config.load()


def test_load_rejects_non_integer(env: None, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SERVER_PORT", "eighty")
    with pytest.raises(ValueError, match="SERVER_PORT"):
        Config.load()


@pytest.mark.parametrize("key", ["MIN_PAYMENT_SATS", "ZAP_RECEIPT_TIMEOUT_SECONDS"])
def test_load_rejects_non_positive(
    env: None, monkeypatch: pytest.MonkeyPatch, key: str
) -> None:
    monkeypatch.setenv(key, "0")
    with pytest.raises(ValueError, match=key):
        Config.load()


def test_load_reads_local_env_file(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "RECIPIENT_LIGHTNING_ADDRESS=bob@example.org\nMIN_PAYMENT_SATS=42\n"
    )
    # load_dotenv writes to os.environ directly
    with patch.dict(os.environ):
        cfg = Config.load()
    assert cfg.recipient_address == "bob@example.org"
    assert cfg.min_payment_sats == 42


def test_process_env_wins_over_env_file(
    env: None, tmp_path: Path
) -> None:
    (tmp_path / ".env").write_text("RECIPIENT_LIGHTNING_ADDRESS=bob@example.org\n")
    with patch.dict(os.environ):
        assert Config.load().recipient_address == "alice@example.com"


def test_config_is_frozen(env: None) -> None:
    cfg = Config.load()
    with pytest.raises(FrozenInstanceError):
        cfg.min_payment_sats = 1  # type: ignore[misc]
