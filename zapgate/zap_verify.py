"""Pure NIP-57 zap receipt validation (no I/O, no side effects).

Checks a kind 9735 receipt against one payment session, in order,
stopping at the first failure:
  1. Event must be kind 9735
  2. id, sig, pubkey and kind present, created_at a positive integer
     (plus the optional signature collaborator)
  3. bolt11 and description tags present
  4. Receipt 'p' tag must be the recipient
  5. description must hold a well-formed 9734 zap request with an amount
  6. Embedded request must be kind 9734
  7. Embedded amount must cover the expected sats (overpayment accepted)
  8. Embedded 'p' tag must be the recipient

The amount comes from the embedded zap request, not the bolt11 invoice.
Nothing binds the receipt to a particular session id: two payments to the
same recipient for the same amount inside the lookback window are
indistinguishable.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from zapgate.zap_request import (
    ZAP_RECEIPT_KIND,
    ZAP_REQUEST_KIND,
    first_tag,
    normalize_tags,
)

log = logging.getLogger(__name__)

# Rejection reasons, one per check.
NOT_A_RECEIPT = "not a receipt"
INVALID_SIGNATURE = "invalid signature"
MISSING_TAGS = "missing required tags"
RECIPIENT_MISMATCH = "recipient mismatch"
INVALID_EMBEDDED_REQUEST = "invalid embedded request"
INVALID_REQUEST_KIND = "invalid request kind"
INSUFFICIENT_AMOUNT = "insufficient amount"
ZAP_RECIPIENT_MISMATCH = "zap recipient mismatch"

SignatureVerifier = Callable[[Mapping], bool]


@dataclass(frozen=True)
class ZapOutcome:
    """Result of validating one receipt. reason is set iff valid is False."""

    valid: bool
    reason: str | None = None
    event_id: str | None = None
    amount_sats: int | None = None
    sender_pubkey: str | None = None
    bolt11: str | None = None
    created_at: int | None = None

    @classmethod
    def reject(cls, reason: str, event_id: str | None = None) -> ZapOutcome:
        return cls(valid=False, reason=reason, event_id=event_id)

    def to_dict(self) -> dict:
        if not self.valid:
            return {"valid": False, "reason": self.reason, "event_id": self.event_id}
        return {
            "valid": True,
            "amount_sats": self.amount_sats,
            "sender_pubkey": self.sender_pubkey,
            "bolt11": self.bolt11,
            "event_id": self.event_id,
            "timestamp": self.created_at,
        }


def _present(value: object) -> bool:
    return value is not None and value != "" and value is not False


def _valid_timestamp(value: object) -> bool:
    """A created_at of zero counts as missing."""
    return not isinstance(value, bool) and isinstance(value, int) and value > 0


def _parse_zap_request(description: str) -> tuple[dict, int, list, int] | None:
    """Return (request, kind, tags, amount_msats) for a well-formed 9734, else None."""
    try:
        request = json.loads(description)
    except (TypeError, ValueError):
        return None
    if not isinstance(request, dict):
        return None

    kind = request.get("kind")
    if isinstance(kind, bool) or not isinstance(kind, int):
        return None
    tags = normalize_tags(request.get("tags"))
    if tags is None:
        return None

    amount_raw = first_tag(tags, "amount")
    if amount_raw is None:
        return None
    try:
        amount_msats = int(amount_raw, 10)
    except ValueError:
        return None
    if amount_msats < 0:
        return None

    return request, kind, tags, amount_msats


def validate_zap_receipt(
    event: Mapping,
    recipient_pubkey: str,
    expected_amount_sats: int,
    verify_signature: SignatureVerifier | None = None,
) -> ZapOutcome:
    """Validate a kind 9735 event (as a NIP-01 dict) for one session.

    verify_signature, when given, performs real cryptographic verification;
    without it only the presence of the signature fields is checked.
    """
    if not isinstance(event, Mapping):
        return ZapOutcome.reject(NOT_A_RECEIPT)

    raw_id = event.get("id")
    event_id = raw_id if isinstance(raw_id, str) else None
    short_id = (event_id or "?")[:16]

    # -- CHECK 1: kind 9735 --
    kind = event.get("kind")
    if isinstance(kind, bool) or kind != ZAP_RECEIPT_KIND:
        log.debug("Event %s is kind %r, not a zap receipt", short_id, kind)
        return ZapOutcome.reject(NOT_A_RECEIPT, event_id)

    # -- CHECK 2: signature fields --
    if not (
        all(_present(event.get(f)) for f in ("id", "sig", "pubkey", "kind"))
        and _valid_timestamp(event.get("created_at"))
    ):
        log.warning("Zap receipt %s missing signature fields, rejected", short_id)
        return ZapOutcome.reject(INVALID_SIGNATURE, event_id)
    if verify_signature is not None and not verify_signature(event):
        log.warning("Zap receipt %s failed signature verification", short_id)
        return ZapOutcome.reject(INVALID_SIGNATURE, event_id)

    # -- CHECK 3: required tags --
    tags = normalize_tags(event.get("tags")) or []
    bolt11 = first_tag(tags, "bolt11")
    description = first_tag(tags, "description")
    if not bolt11 or not description:
        log.warning("Zap receipt %s missing bolt11 or description tag", short_id)
        return ZapOutcome.reject(MISSING_TAGS, event_id)

    # -- CHECK 4: receipt recipient --
    receipt_p = first_tag(tags, "p")
    if receipt_p != recipient_pubkey:
        log.warning(
            "Zap receipt %s: p tag %s does not match recipient %s, rejected",
            short_id, (receipt_p or "<none>")[:16], recipient_pubkey[:16],
        )
        return ZapOutcome.reject(RECIPIENT_MISMATCH, event_id)

    # -- CHECK 5: embedded 9734 structure --
    parsed = _parse_zap_request(description)
    if parsed is None:
        log.warning("Zap receipt %s: embedded zap request is malformed", short_id)
        return ZapOutcome.reject(INVALID_EMBEDDED_REQUEST, event_id)
    request, request_kind, request_tags, amount_msats = parsed

    # -- CHECK 6: kind 9734 --
    if request_kind != ZAP_REQUEST_KIND:
        log.warning(
            "Zap receipt %s: embedded event is kind %d, expected %d",
            short_id, request_kind, ZAP_REQUEST_KIND,
        )
        return ZapOutcome.reject(INVALID_REQUEST_KIND, event_id)

    # -- CHECK 7: amount --
    amount_sats = amount_msats // 1000
    if amount_sats < expected_amount_sats:
        log.warning(
            "Zap receipt %s: insufficient amount %d < %d sats",
            short_id, amount_sats, expected_amount_sats,
        )
        return ZapOutcome.reject(INSUFFICIENT_AMOUNT, event_id)

    # -- CHECK 8: zap request recipient --
    request_p = first_tag(request_tags, "p")
    if request_p != recipient_pubkey:
        log.warning(
            "Zap receipt %s: 9734 p tag %s does not match recipient %s, rejected",
            short_id, (request_p or "<none>")[:16], recipient_pubkey[:16],
        )
        return ZapOutcome.reject(ZAP_RECIPIENT_MISMATCH, event_id)

    # -- All checks passed --
    sender = request.get("pubkey")
    created_at = event.get("created_at")

    return ZapOutcome(
        valid=True,
        event_id=event_id,
        amount_sats=amount_sats,
        sender_pubkey=sender if isinstance(sender, str) else None,
        bolt11=bolt11,
        created_at=created_at if isinstance(created_at, int) else None,
    )
