# app/x402/signature.py
"""
Signature normalization for x402 payment payloads.

Wallets hand signatures over in several shapes:

- a plain hex string, sometimes without `0x` or with stray whitespace
- an ERC-6492 wrapped signature from a not-yet-deployed smart contract
  wallet, possibly wrapped more than once
- a structured `{r, s, v}` / `{r, s, yParity}` object
- an object nesting the string under a `signature` key

normalize_signature() turns all of them into one compact `0x` hex string.
It never raises: when something cannot be parsed, the best value obtained so
far is returned.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from app.x402.canonical import normalize_integer_string

logger = logging.getLogger(__name__)

# Hard cap on nested ERC-6492 wrappers peeled off a single signature
MAX_UNWRAP_DEPTH = 5

# 65 bytes = r(32) + s(32) + v(1)
COMPACT_SIGNATURE_HEX_LENGTH = 130

ERC6492_MAGIC_SUFFIX = bytes.fromhex("6492" * 16)

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

_HEX_BODY_RE = re.compile(r"^(0[xX])?([0-9a-fA-F]+)$")
_PREFIXED_HEX_RE = re.compile(r"^0x[0-9a-fA-F]+$")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class SignatureNormalization:
    """Result of normalizing a signature field."""
    value: Any
    changed: bool
    was_wrapped: bool = False
    unwrapped: bool = False
    unwrap_depth: int = 0


def unwrap_erc6492_signature(signature: str) -> Optional[str]:
    """
    Peel one ERC-6492 wrapper off a hex signature.

    A wrapped signature is abi.encode(address factory, bytes factoryCalldata,
    bytes innerSignature) followed by the 32-byte 0x6492... magic suffix.

    Args:
        signature: `0x`-prefixed hex signature

    Returns:
        The inner signature as `0x` hex, or None if the value is not a
        decodable ERC-6492 wrapper
    """
    try:
        raw = bytes.fromhex(signature[2:])
    except ValueError:
        return None

    if len(raw) <= len(ERC6492_MAGIC_SUFFIX) or not raw.endswith(ERC6492_MAGIC_SUFFIX):
        return None

    try:
        _, _, inner = decode(["address", "bytes", "bytes"], raw[: -len(ERC6492_MAGIC_SUFFIX)])
    except (DecodingError, ValueError, OverflowError) as e:
        logger.debug(f"ERC-6492 suffix present but wrapper did not decode: {e}")
        return None

    return "0x" + inner.hex()


def _resolve_y_parity(v: Any, y_parity: Any) -> Optional[int]:
    """Map yParity / v onto a 0/1 parity bit, or None if neither is usable."""
    if y_parity is not None and v is None:
        parity = _to_int(y_parity)
        if parity in (0, 1):
            return parity
        return None

    value = _to_int(v)
    if value is None:
        return None
    if value in (0, 1):
        return value
    if value in (27, 28) or value >= 35:
        return 1 if value % 2 == 0 else 0
    return None


def _to_int(value: Any) -> Optional[int]:
    normalized = normalize_integer_string(value)
    if isinstance(normalized, str) and normalized.isdigit():
        return int(normalized)
    return None


def serialize_signature(r: str, s: str, v: Any = None, y_parity: Any = None) -> str:
    """
    Serialize an `{r, s, v|yParity}` signature into compact 65-byte hex.

    Args:
        r: Hex string for r
        s: Hex string for s
        v: Recovery id (27/28, EIP-155 style >= 35, or 0/1)
        y_parity: Parity bit, used only when v is absent

    Returns:
        `0x` + r(64) + s(64) + `1b`/`1c`

    Raises:
        ValueError: If r, s or the parity are not usable
    """
    parity = _resolve_y_parity(v, y_parity)
    if parity is None:
        raise ValueError("Invalid `v` or `yParity` value")

    r_int = int(r, 16)
    s_int = int(s, 16)
    for name, component in (("r", r_int), ("s", s_int)):
        if not 0 < component < SECP256K1_N:
            raise ValueError(f"Signature component {name} out of range")

    return f"0x{r_int:064x}{s_int:064x}{'1b' if parity == 0 else '1c'}"


def _normalize_signature_string(signature: str) -> SignatureNormalization:
    compact = _WHITESPACE_RE.sub("", signature)
    if not compact:
        return SignatureNormalization(value=compact, changed=compact != signature)

    match = _HEX_BODY_RE.match(compact)
    normalized = "0x" + match.group(2) if match else compact
    changed = normalized != signature
    was_wrapped = False
    unwrapped = False
    depth = 0

    if _PREFIXED_HEX_RE.match(normalized) and len(normalized) - 2 > COMPACT_SIGNATURE_HEX_LENGTH:
        for _ in range(MAX_UNWRAP_DEPTH):
            inner = unwrap_erc6492_signature(normalized)
            if inner is None or not _PREFIXED_HEX_RE.match(inner):
                break
            was_wrapped = True
            if inner == normalized:
                break
            normalized = inner
            changed = True
            unwrapped = True
            depth += 1
            if len(normalized) - 2 <= COMPACT_SIGNATURE_HEX_LENGTH:
                break

    return SignatureNormalization(
        value=normalized,
        changed=changed,
        was_wrapped=was_wrapped,
        unwrapped=unwrapped,
        unwrap_depth=depth,
    )


def normalize_signature(signature: Any) -> SignatureNormalization:
    """
    Normalize a signature field into compact `0x` hex.

    Strings are compacted and ERC-6492 wrappers are peeled off, at most
    MAX_UNWRAP_DEPTH levels. When the limit is hit the partially unwrapped
    value is returned as is. `{signature: str}` objects are unpacked and
    `{r, s, v|yParity}` objects are serialized. Anything else passes through.

    Args:
        signature: Signature value from the payment payload

    Returns:
        SignatureNormalization describing the result
    """
    if isinstance(signature, str):
        return _normalize_signature_string(signature)

    if isinstance(signature, dict):
        nested = signature.get("signature")
        if isinstance(nested, str):
            inner = _normalize_signature_string(nested)
            return SignatureNormalization(
                value=inner.value,
                changed=True,
                was_wrapped=inner.was_wrapped,
                unwrapped=inner.unwrapped,
                unwrap_depth=inner.unwrap_depth,
            )

        r = signature.get("r")
        s = signature.get("s")
        v = signature.get("v")
        y_parity = signature.get("yParity")
        if isinstance(r, str) and isinstance(s, str) and (v is not None or y_parity is not None):
            try:
                serialized = serialize_signature(r, s, v=v, y_parity=y_parity)
            except ValueError as e:
                logger.debug(f"Structured signature could not be serialized: {e}")
                return SignatureNormalization(value=signature, changed=False)
            return SignatureNormalization(value=serialized, changed=True)

    return SignatureNormalization(value=signature, changed=False)
