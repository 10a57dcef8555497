# app/x402/canonical.py
"""
Canonical wire forms for x402 payment fields.

Payment payloads arrive from many client SDKs and wallets, each with its own
idea of how to write an address, an integer or a nonce. The facilitator is
strict, so every field is rewritten into one canonical form before
verification:

- addresses: EIP-55 checksummed, `0x` prefixed
- integers: base-10 strings without leading zeros (arbitrary precision)
- nonces: `0x` + exactly 64 lowercase hex characters

All functions here are pure. Input that cannot be interpreted is returned
unchanged; nothing in this module raises on bad input.
"""
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from eth_utils import to_checksum_address

T = TypeVar("T")

NONCE_HEX_LENGTH = 64

_ADDRESS_RE = re.compile(r"^(0[xX])?([0-9a-fA-F]{40})$")
_DECIMAL_RE = re.compile(r"^[0-9]+$")
_PREFIXED_HEX_RE = re.compile(r"^0[xX][0-9a-fA-F]+$")
_BARE_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


@dataclass(frozen=True)
class NormalizationResult(Generic[T]):
    """Outcome of normalizing a record: the (possibly new) value and whether anything changed."""
    value: T
    changed: bool


def normalize_address(value: Any) -> Any:
    """
    Return the EIP-55 checksummed form of an address.

    Accepts the address with a `0x`/`0X` prefix or none at all, in any letter
    case, with surrounding whitespace. Anything that is not a 20-byte hex
    address is returned unchanged.

    Args:
        value: Candidate address

    Returns:
        Checksummed address, or the original value
    """
    if not isinstance(value, str):
        return value

    match = _ADDRESS_RE.match(value.strip())
    if not match:
        return value

    return to_checksum_address("0x" + match.group(2))


def normalize_integer_string(value: Any) -> Any:
    """
    Return the canonical base-10 string for an integer value.

    Accepts decimal strings (leading zeros allowed), `0x` hex strings, Python
    ints and integral floats. Python ints are arbitrary precision, so uint256
    values survive intact.

    Args:
        value: Candidate integer

    Returns:
        Base-10 string, or the original value if it is not numeric
    """
    # bool is an int subclass but never a wire integer
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else value
    if not isinstance(value, str):
        return value

    text = value.strip()
    if _DECIMAL_RE.match(text):
        return str(int(text, 10))
    if _PREFIXED_HEX_RE.match(text):
        return str(int(text[2:], 16))
    return value


def _fit_nonce_width(hex_digits: str) -> str:
    """
    Force hex digits to exactly 64 characters.

    Short values are left-padded with zeros. Long values keep only their last
    64 characters, which drops the most significant digits.
    """
    hex_digits = hex_digits.lower()
    if len(hex_digits) > NONCE_HEX_LENGTH:
        hex_digits = hex_digits[-NONCE_HEX_LENGTH:]
    return "0x" + hex_digits.rjust(NONCE_HEX_LENGTH, "0")


def normalize_hex_nonce(value: Any) -> Any:
    """
    Return a nonce as `0x` followed by exactly 64 lowercase hex characters.

    Interpretation order:
    1. `0x`-prefixed hex
    2. exactly 64 unprefixed hex characters
    3. decimal digits (converted to hex)
    4. any other unprefixed hex

    Args:
        value: Candidate nonce

    Returns:
        Fixed-width hex nonce, or the original value if it cannot be read
    """
    if not isinstance(value, str):
        return value

    text = value.strip()
    if not text:
        return value

    if _PREFIXED_HEX_RE.match(text):
        return _fit_nonce_width(text[2:])

    if len(text) == NONCE_HEX_LENGTH and _BARE_HEX_RE.match(text):
        return _fit_nonce_width(text)

    if _DECIMAL_RE.match(text):
        return _fit_nonce_width(format(int(text, 10), "x"))

    if _BARE_HEX_RE.match(text):
        return _fit_nonce_width(text)

    return value


def is_hex_string(value: Any) -> bool:
    """True for a `0x`-prefixed string with at least one hex digit."""
    return isinstance(value, str) and bool(_PREFIXED_HEX_RE.match(value)) and value.startswith("0x")


def safe_int(value: Any):
    """
    Parse a decimal/hex integer value, returning None when it is not one.

    Used by diagnostics, which compare amounts and timestamps but must never
    fail on malformed input.
    """
    if value is None or value == "":
        return None
    normalized = normalize_integer_string(value)
    if isinstance(normalized, str) and _DECIMAL_RE.match(normalized):
        return int(normalized)
    return None
