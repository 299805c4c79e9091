"""NIP-57 kind 9734 zap request construction.

Pure: no network, no signing. The record is frozen once built; signing
(nostr_relay.make_signer) produces a new event dict from it.
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from zapgate.errors import InvalidAmount, ZapsNotSupported
from zapgate.lnurl import PAY_REQUEST_TAG, LnurlMetadata

ZAP_REQUEST_KIND = 9734
ZAP_RECEIPT_KIND = 9735

Tag = tuple[str, ...]


def first_tag(tags: Iterable[Sequence[str]], key: str) -> str | None:
    """Value of the first tag whose key matches, or None.

    Tag keys are not unique in nostr events; the first match wins.
    Tags shorter than two elements are skipped.
    """
    for tag in tags:
        if len(tag) >= 2 and tag[0] == key:
            return tag[1]
    return None


def normalize_tags(raw: object) -> list[Tag] | None:
    """Coerce an untrusted JSON tag array into string tuples.

    Returns None when the value is not a list of lists of strings.
    """
    if not isinstance(raw, list):
        return None
    tags: list[Tag] = []
    for item in raw:
        if not isinstance(item, list) or not all(isinstance(v, str) for v in item):
            return None
        tags.append(tuple(item))
    return tags


@dataclass(frozen=True)
class ZapRequest:
    """Unsigned kind 9734 event declaring the intent to pay."""

    content: str
    created_at: int
    tags: tuple[Tag, ...]
    kind: int = ZAP_REQUEST_KIND
    pubkey: str = ""

    @property
    def amount_msats(self) -> int:
        return int(first_tag(self.tags, "amount") or 0)

    @property
    def recipient_pubkey(self) -> str | None:
        return first_tag(self.tags, "p")

    def to_event(self) -> dict:
        """NIP-01 JSON object (unsigned: no id or sig)."""
        return {
            "kind": self.kind,
            "content": self.content,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "tags": [list(tag) for tag in self.tags],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_event(), separators=(",", ":"), ensure_ascii=False)


def build_zap_request(
    session_id: str,
    amount_sats: int,
    metadata: LnurlMetadata,
    relays: Sequence[str],
    recipient_pubkey: str | None = None,
    app_name: str = "SatSnake",
    created_at: int | None = None,
) -> ZapRequest:
    """Build the zap request for one payment session.

    recipient_pubkey overrides the provider's nostrPubkey when set.
    Raises InvalidAmount if the amount falls outside the provider's
    sendable range and ZapsNotSupported if the provider cannot issue
    zap invoices. Both are raised before any network call.
    """
    if isinstance(amount_sats, bool) or not isinstance(amount_sats, int):
        raise InvalidAmount(0)
    amount_msats = amount_sats * 1000
    if amount_sats <= 0:
        raise InvalidAmount(amount_msats)
    if not metadata.accepts(amount_msats):
        raise InvalidAmount(
            amount_msats, metadata.min_sendable_msats, metadata.max_sendable_msats
        )

    if metadata.tag != PAY_REQUEST_TAG:
        raise ZapsNotSupported(
            f"{metadata.address} is not a pay request (tag={metadata.tag!r})"
        )
    if not metadata.allows_nostr:
        raise ZapsNotSupported(
            f"{metadata.address} does not support Nostr zaps (NIP-57)"
        )

    pubkey = recipient_pubkey or metadata.nostr_pubkey
    if not pubkey:
        raise ZapsNotSupported(
            f"No Nostr pubkey for {metadata.address}; set RECIPIENT_NOSTR_PUBKEY"
        )

    tags: tuple[Tag, ...] = (
        ("relays", *relays),
        ("amount", str(amount_msats)),
        ("lnurl", metadata.address),
        ("p", pubkey),
    )
    return ZapRequest(
        content=f"{app_name} game session: {session_id}",
        created_at=int(time.time()) if created_at is None else created_at,
        tags=tags,
    )
