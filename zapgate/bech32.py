"""Bech32 encoding for LNURL strings.

BIP-173 checksum over arbitrary-length payloads. The usual 90-character
limit is not enforced because LNURL strings routinely exceed it.

The checksum covers the full prefix expansion from hrp_expand(): the high
bits of every prefix character, a zero, then the low 5 bits. Feeding only
the low 5 bits would let prefixes such as "lnp" and "ln0" share a
checksum and would produce strings other bech32 decoders reject.

encode() returns lower case. Pass upper=True for the upper-case form that
QR encoders pack into alphanumeric mode; decode() accepts either case but
never a mix of both.
"""

from __future__ import annotations

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
SEPARATOR = "1"
CHECKSUM_LENGTH = 6

_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_CHARSET_REV = {c: i for i, c in enumerate(CHARSET)}


class Bech32Error(ValueError):
    """Malformed bech32 string or invalid input to encode()."""


def polymod(values: list[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= _GENERATOR[i] if ((top >> i) & 1) else 0
    return chk


def hrp_expand(hrp: str) -> list[int]:
    """High bits of each prefix character, a zero, then the low 5 bits.

    Both halves are needed; the low bits alone do not distinguish prefix
    characters 32 code points apart.
    """
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def create_checksum(hrp: str, data: list[int]) -> list[int]:
    values = hrp_expand(hrp) + data
    mod = polymod(values + [0] * CHECKSUM_LENGTH) ^ 1
    return [(mod >> 5 * (5 - i)) & 31 for i in range(CHECKSUM_LENGTH)]


def verify_checksum(hrp: str, data: list[int]) -> bool:
    return polymod(hrp_expand(hrp) + data) == 1


def convertbits(
    data: bytes | list[int], frombits: int, tobits: int, pad: bool = True
) -> list[int]:
    """Regroup a sequence of frombits-wide values into tobits-wide values.

    MSB first. With pad=True the trailing partial group is zero-filled on the
    low end. With pad=False leftover bits must be fewer than frombits and
    all zero, otherwise Bech32Error is raised.
    """
    acc = 0
    bits = 0
    ret: list[int] = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1
    for value in data:
        if value < 0 or (value >> frombits):
            raise Bech32Error(f"Value {value} does not fit in {frombits} bits")
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise Bech32Error("Invalid padding")
    return ret


def _check_hrp(hrp: str) -> None:
    if not hrp:
        raise Bech32Error("Empty human-readable prefix")
    if any(ord(c) < 33 or ord(c) > 126 for c in hrp):
        raise Bech32Error("Human-readable prefix must be printable ASCII")
    if hrp.lower() != hrp and hrp.upper() != hrp:
        raise Bech32Error("Mixed-case human-readable prefix")


def encode(hrp: str, data: bytes, upper: bool = False) -> str:
    """Encode bytes under the given prefix. Returns lower case unless upper=True."""
    _check_hrp(hrp)
    hrp = hrp.lower()
    groups = convertbits(data, 8, 5)
    combined = groups + create_checksum(hrp, groups)
    result = hrp + SEPARATOR + "".join(CHARSET[d] for d in combined)
    return result.upper() if upper else result


def decode(bech: str) -> tuple[str, bytes]:
    """Decode and checksum-verify a bech32 string. Returns (hrp, payload)."""
    if any(ord(c) < 33 or ord(c) > 126 for c in bech):
        raise Bech32Error("Non-printable character in bech32 string")
    if bech.lower() != bech and bech.upper() != bech:
        raise Bech32Error("Mixed-case bech32 string")
    bech = bech.lower()
    pos = bech.rfind(SEPARATOR)
    if pos < 1:
        raise Bech32Error("Missing separator or empty prefix")
    if pos + CHECKSUM_LENGTH + 1 > len(bech):
        raise Bech32Error("Data part too short")
    hrp = bech[:pos]
    try:
        data = [_CHARSET_REV[c] for c in bech[pos + 1:]]
    except KeyError as exc:
        raise Bech32Error(f"Invalid character {exc.args[0]!r}") from None
    if not verify_checksum(hrp, data):
        raise Bech32Error("Invalid checksum")
    payload = convertbits(data[:-CHECKSUM_LENGTH], 5, 8, pad=False)
    return hrp, bytes(payload)


# -- LNURL helpers -------------------------------------------------------------


LNURL_HRP = "lnurl"


def encode_lnurl(url: str) -> str:
    """Bech32-encode a URL as an upper-case LNURL string (LUD-01)."""
    return encode(LNURL_HRP, url.encode("utf-8"), upper=True)


def decode_lnurl(lnurl: str) -> str:
    """Decode an LNURL string (with or without a lightning: prefix) to its URL."""
    value = lnurl.strip()
    if value.lower().startswith("lightning:"):
        value = value[len("lightning:"):]
    hrp, payload = decode(value)
    if hrp != LNURL_HRP:
        raise Bech32Error(f"Expected prefix {LNURL_HRP!r}, got {hrp!r}")
    return payload.decode("utf-8")
