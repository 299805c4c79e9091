"""
zapgate configuration.

Frozen dataclass loaded from environment variables.
Loads ~/.zapgate/zapgate.env first, then .env in the current directory
(neither overrides variables already set in the process environment).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from nostr_sdk import PublicKey


def _normalize_pubkey(value: str) -> str:
    """Accept npub1... or hex, return 64-char hex."""
    return PublicKey.parse(value).to_hex()


_REQUIRED_FIELDS = ("RECIPIENT_LIGHTNING_ADDRESS",)

_DEFAULT_RELAYS = (
    "wss://relay.damus.io,wss://nos.lol,"
    "wss://nostr-pub.wellorder.net,wss://relay.nostr.band"
)


def _int_env(name: str, default: str) -> int:
    raw = os.environ.get(name, default).strip()
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Config:
    """Immutable zapgate configuration."""

    # Recipient
    recipient_address: str
    recipient_pubkey: str | None

    # Payment
    min_payment_sats: int
    receipt_timeout_seconds: int
    receipt_lookback_seconds: int

    # Nostr
    nostr_relays: list[str]
    nostr_nsec: str
    relay_timeout_seconds: int

    # HTTP
    http_timeout_seconds: int
    server_host: str
    server_port: int

    # Labels
    app_name: str
    session_prefix: str

    # Logging
    log_level: str

    @classmethod
    def load(cls) -> Config:
        """Load configuration from environment variables.

        Raises ValueError if a required field is missing or empty, or if a
        numeric field does not parse.
        """
        zg_env = Path.home() / ".zapgate" / "zapgate.env"
        local_env = Path.cwd() / ".env"
        if zg_env.exists():
            load_dotenv(zg_env)
        if local_env.exists():
            load_dotenv(local_env)

        missing = [
            name for name in _REQUIRED_FIELDS
            if not os.environ.get(name, "").strip()
        ]
        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        address = os.environ["RECIPIENT_LIGHTNING_ADDRESS"].strip()
        if address.count("@") != 1 or address.startswith("@") or address.endswith("@"):
            raise ValueError(
                f"RECIPIENT_LIGHTNING_ADDRESS must look like user@domain, got {address!r}"
            )

        pubkey_raw = os.environ.get("RECIPIENT_NOSTR_PUBKEY", "").strip()
        relay_csv = os.environ.get("NOSTR_RELAYS", _DEFAULT_RELAYS)
        relays = [r.strip() for r in relay_csv.split(",") if r.strip()]

        min_payment_sats = _int_env("MIN_PAYMENT_SATS", "100")
        if min_payment_sats <= 0:
            raise ValueError("MIN_PAYMENT_SATS must be positive")
        receipt_timeout = _int_env("ZAP_RECEIPT_TIMEOUT_SECONDS", "60")
        if receipt_timeout <= 0:
            raise ValueError("ZAP_RECEIPT_TIMEOUT_SECONDS must be positive")

        return cls(
            recipient_address=address,
            recipient_pubkey=_normalize_pubkey(pubkey_raw) if pubkey_raw else None,
            min_payment_sats=min_payment_sats,
            receipt_timeout_seconds=receipt_timeout,
            receipt_lookback_seconds=_int_env("RECEIPT_LOOKBACK_SECONDS", "60"),
            nostr_relays=relays,
            nostr_nsec=os.environ.get("NOSTR_NSEC", "").strip(),
            relay_timeout_seconds=_int_env("RELAY_TIMEOUT_SECONDS", "5"),
            http_timeout_seconds=_int_env("HTTP_TIMEOUT_SECONDS", "10"),
            server_host=os.environ.get("SERVER_HOST", "127.0.0.1").strip(),
            server_port=_int_env("SERVER_PORT", "8430"),
            app_name=os.environ.get("APP_NAME", "SatSnake").strip(),
            session_prefix=os.environ.get("SESSION_PREFIX", "satsnake").strip(),
            log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper(),
        )
