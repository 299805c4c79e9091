"""Tests for zap receipt validation (NIP-57).

Receipts are plain NIP-01 dicts; no real keys or signatures are needed
unless a verifier is passed in.
"""

from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock

import pytest

from zapgate import zap_verify
from zapgate.zap_verify import ZapOutcome, validate_zap_receipt

# -- Fake hex pubkeys (64 char hex strings) ------------------------------------

RECIPIENT_PK: str = "aa" * 32
PROVIDER_PK: str = "bb" * 32
SENDER_PK: str = "cc" * 32
ATTACKER_PK: str = "dd" * 32

BOLT11 = "lnbc1500n1pjtestinvoice"


# -- Event builders ------------------------------------------------------------


def _make_9734_json(
    sender_pk: str = SENDER_PK,
    p_hex: str | None = RECIPIENT_PK,
    amount_msats: int | str | None = 150_000,
    kind_num: int = 9734,
) -> str:
    """Build the zap request JSON embedded in the receipt's description tag."""
    tags: list[list[str]] = [["relays", "wss://relay.damus.io"]]
    if amount_msats is not None:
        tags.append(["amount", str(amount_msats)])
    if p_hex is not None:
        tags.append(["p", p_hex])
    return json.dumps({
        "id": "ee" * 32,
        "pubkey": sender_pk,
        "created_at": 1700000000,
        "kind": kind_num,
        "tags": tags,
        "content": "SatSnake game session: satsnake-1700000000000-abcdef0123",
        "sig": "ff" * 64,
    })


def _make_receipt(
    description: str | None = None,
    p_hex: str | None = RECIPIENT_PK,
    bolt11: str | None = BOLT11,
    kind: int = 9735,
    **overrides,
) -> dict:
    tags: list[list[str]] = []
    if p_hex is not None:
        tags.append(["p", p_hex])
    if bolt11 is not None:
        tags.append(["bolt11", bolt11])
    tags.append(["description", description if description is not None else _make_9734_json()])
    event = {
        "id": "12" * 32,
        "pubkey": PROVIDER_PK,
        "created_at": 1700000010,
        "kind": kind,
        "tags": tags,
        "content": "",
        "sig": "34" * 64,
    }
    event.update(overrides)
    return event


def _validate(event, expected_sats: int = 100, **kwargs) -> ZapOutcome:
    return validate_zap_receipt(event, RECIPIENT_PK, expected_sats, **kwargs)


# -- Accept --------------------------------------------------------------------


def test_valid_receipt_accepted() -> None:
    outcome = _validate(_make_receipt())

    assert outcome.valid
    assert outcome.reason is None
    assert outcome.amount_sats == 150
    assert outcome.sender_pubkey == SENDER_PK
    assert outcome.bolt11 == BOLT11
    assert outcome.event_id == "12" * 32
    assert outcome.created_at == 1700000010


def test_exact_amount_accepted() -> None:
    receipt = _make_receipt(_make_9734_json(amount_msats=100_000))
    assert _validate(receipt).valid


def test_msats_are_floored() -> None:
    """100_999 msats is 100 sats: enough for 100, not for 101."""
    receipt = _make_receipt(_make_9734_json(amount_msats=100_999))
    assert _validate(receipt, 100).valid
    assert _validate(receipt, 101).reason == zap_verify.INSUFFICIENT_AMOUNT


def test_to_dict_valid() -> None:
    data = _validate(_make_receipt()).to_dict()
    assert data == {
        "valid": True,
        "amount_sats": 150,
        "sender_pubkey": SENDER_PK,
        "bolt11": BOLT11,
        "event_id": "12" * 32,
        "timestamp": 1700000010,
    }


def test_to_dict_rejected() -> None:
    data = ZapOutcome.reject(zap_verify.RECIPIENT_MISMATCH, "ab").to_dict()
    assert data == {"valid": False, "reason": "recipient mismatch", "event_id": "ab"}


# -- Reject, one per check ------------------------------------------------------


def test_check1_wrong_kind() -> None:
    outcome = _validate(_make_receipt(kind=1))
    assert not outcome.valid
    assert outcome.reason == zap_verify.NOT_A_RECEIPT


def test_check1_not_a_mapping() -> None:
    assert _validate(["not", "an", "event"]).reason == zap_verify.NOT_A_RECEIPT


@pytest.mark.parametrize("field", ["id", "sig", "pubkey", "created_at"])
def test_check2_missing_signature_field(field: str) -> None:
    receipt = _make_receipt()
    del receipt[field]
    assert _validate(receipt).reason == zap_verify.INVALID_SIGNATURE


def test_check2_empty_sig() -> None:
    assert _validate(_make_receipt(sig="")).reason == zap_verify.INVALID_SIGNATURE


@pytest.mark.parametrize("created_at", [0, -5, True, "1700000010", 1700000010.5])
def test_check2_unusable_created_at(created_at) -> None:
    verifier = MagicMock(return_value=True)
    outcome = _validate(_make_receipt(created_at=created_at), verify_signature=verifier)
    assert outcome.reason == zap_verify.INVALID_SIGNATURE
    verifier.assert_not_called()


def test_check2_verifier_rejects() -> None:
    verifier = MagicMock(return_value=False)
    receipt = _make_receipt()

    outcome = _validate(receipt, verify_signature=verifier)

    assert outcome.reason == zap_verify.INVALID_SIGNATURE
    verifier.assert_called_once_with(receipt)


def test_check2_verifier_accepts() -> None:
    verifier = MagicMock(return_value=True)
    assert _validate(_make_receipt(), verify_signature=verifier).valid


def test_check3_missing_bolt11() -> None:
    assert _validate(_make_receipt(bolt11=None)).reason == zap_verify.MISSING_TAGS


def test_check3_missing_description() -> None:
    receipt = _make_receipt()
    receipt["tags"] = [t for t in receipt["tags"] if t[0] != "description"]
    assert _validate(receipt).reason == zap_verify.MISSING_TAGS


def test_check3_malformed_tags() -> None:
    assert _validate(_make_receipt(tags="garbage")).reason == zap_verify.MISSING_TAGS


def test_check4_absent_p_tag_is_recipient_mismatch() -> None:
    assert _validate(_make_receipt(p_hex=None)).reason == zap_verify.RECIPIENT_MISMATCH


def test_check4_wrong_recipient() -> None:
    outcome = _validate(_make_receipt(p_hex=ATTACKER_PK))
    assert outcome.reason == zap_verify.RECIPIENT_MISMATCH
    assert outcome.event_id == "12" * 32


@pytest.mark.parametrize(
    "description",
    [
        "not json",
        "[1, 2, 3]",
        json.dumps({"kind": 9734, "tags": "nope"}),
        json.dumps({"kind": "9734", "tags": []}),
        _make_9734_json(amount_msats=None),
        _make_9734_json(amount_msats="lots"),
        _make_9734_json(amount_msats=-1000),
    ],
)
def test_check5_invalid_embedded_request(description: str) -> None:
    outcome = _validate(_make_receipt(description))
    assert outcome.reason == zap_verify.INVALID_EMBEDDED_REQUEST


def test_check6_wrong_embedded_kind() -> None:
    receipt = _make_receipt(_make_9734_json(kind_num=1))
    assert _validate(receipt).reason == zap_verify.INVALID_REQUEST_KIND


def test_check7_insufficient_amount() -> None:
    receipt = _make_receipt(_make_9734_json(amount_msats=99_000))
    outcome = _validate(receipt, 150)
    assert not outcome.valid
    assert outcome.reason == zap_verify.INSUFFICIENT_AMOUNT


def test_check7_overpayment_accepted() -> None:
    receipt = _make_receipt(_make_9734_json(amount_msats=150_000))
    outcome = _validate(receipt, 99)
    assert outcome.valid
    assert outcome.amount_sats == 150


def test_check8_embedded_recipient_mismatch() -> None:
    receipt = _make_receipt(_make_9734_json(p_hex=ATTACKER_PK))
    assert _validate(receipt).reason == zap_verify.ZAP_RECIPIENT_MISMATCH


def test_check8_embedded_p_absent() -> None:
    receipt = _make_receipt(_make_9734_json(p_hex=None))
    assert _validate(receipt).reason == zap_verify.ZAP_RECIPIENT_MISMATCH


# -- Ordering ------------------------------------------------------------------


def test_first_failing_check_wins() -> None:
    """Wrong receipt p and a short amount: check 4 reports before check 7."""
    receipt = _make_receipt(_make_9734_json(amount_msats=1000), p_hex=ATTACKER_PK)
    assert _validate(receipt, 100).reason == zap_verify.RECIPIENT_MISMATCH


def test_verifier_not_called_for_wrong_kind() -> None:
    verifier = MagicMock(return_value=True)
    _validate(_make_receipt(kind=1), verify_signature=verifier)
    verifier.assert_not_called()


def test_rejection_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="zapgate.zap_verify"):
        _validate(_make_receipt(p_hex=ATTACKER_PK))
    assert "does not match recipient" in caplog.text
