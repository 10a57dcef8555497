# app/x402/authorization.py
"""
Field-level normalization of x402 authorization records.

Two authorization schemes are supported:
- EIP-3009 `authorization` (transferWithAuthorization): from, to, value,
  validAfter, validBefore, nonce
- Permit2 `permit2Authorization`: from, spender, nonce, deadline,
  permitted{token, amount}, witness{to, validAfter, extra}

Every present field is trimmed to a string and then canonicalized with the
helpers in app.x402.canonical. Missing or null fields are skipped and never
inserted. The records are copied; callers decide whether to write the result
back.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from app.x402.canonical import (
    NormalizationResult,
    normalize_address,
    normalize_hex_nonce,
    normalize_integer_string,
)
from app.x402.signature import SignatureNormalization, normalize_signature
from app.x402.types import PayloadKind, PaymentPayload

logger = logging.getLogger(__name__)

AUTHORIZATION_STRING_FIELDS = ("from", "to", "value", "validAfter", "validBefore", "nonce")
AUTHORIZATION_ADDRESS_FIELDS = ("from", "to")
AUTHORIZATION_INTEGER_FIELDS = ("value", "validAfter", "validBefore")

_BARE_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def _stringify_field(record: Dict[str, Any], key: str) -> bool:
    """Coerce a present field to a trimmed string. Returns True if it changed."""
    if not isinstance(record, dict) or record.get(key) is None:
        return False
    original = record[key]
    as_string = str(original).strip()
    if as_string != original:
        record[key] = as_string
        return True
    return False


def _apply_field(record: Optional[Dict[str, Any]], key: str, fn: Callable[[Any], Any]) -> bool:
    """Apply a canonicalizer to a present field in place. Returns True if it changed."""
    if not isinstance(record, dict) or record.get(key) is None:
        return False
    normalized = fn(record[key])
    if normalized != record[key]:
        record[key] = normalized
        return True
    return False


def normalize_authorization(auth: Any) -> NormalizationResult:
    """
    Canonicalize an EIP-3009 authorization record.

    Args:
        auth: The `authorization` object from a payment payload

    Returns:
        NormalizationResult with a normalized copy; non-dict input is returned
        as is with changed=False
    """
    if not isinstance(auth, dict):
        return NormalizationResult(value=auth, changed=False)

    normalized = dict(auth)
    changed = False

    for field in AUTHORIZATION_STRING_FIELDS:
        changed |= _stringify_field(normalized, field)

    for field in AUTHORIZATION_ADDRESS_FIELDS:
        changed |= _apply_field(normalized, field, normalize_address)

    for field in AUTHORIZATION_INTEGER_FIELDS:
        changed |= _apply_field(normalized, field, normalize_integer_string)

    changed |= _apply_field(normalized, "nonce", normalize_hex_nonce)

    return NormalizationResult(value=normalized, changed=changed)


def _normalize_witness_extra(extra: Any) -> Any:
    if isinstance(extra, str) and _BARE_HEX_RE.match(extra):
        return "0x" + extra
    return extra


def normalize_permit2_authorization(permit: Any) -> NormalizationResult:
    """
    Canonicalize a Permit2 authorization record, including nested records.

    Args:
        permit: The `permit2Authorization` object from a payment payload

    Returns:
        NormalizationResult with a normalized copy; non-dict input is returned
        as is with changed=False
    """
    if not isinstance(permit, dict):
        return NormalizationResult(value=permit, changed=False)

    normalized = dict(permit)
    permitted = normalized.get("permitted")
    if isinstance(permitted, dict):
        permitted = dict(permitted)
        normalized["permitted"] = permitted
    else:
        permitted = None
    witness = normalized.get("witness")
    if isinstance(witness, dict):
        witness = dict(witness)
        normalized["witness"] = witness
    else:
        witness = None

    changed = False

    for record, key in (
        (normalized, "from"),
        (normalized, "spender"),
        (normalized, "nonce"),
        (normalized, "deadline"),
        (permitted, "token"),
        (permitted, "amount"),
        (witness, "to"),
        (witness, "validAfter"),
        (witness, "extra"),
    ):
        changed |= _stringify_field(record, key)

    changed |= _apply_field(normalized, "from", normalize_address)
    changed |= _apply_field(normalized, "spender", normalize_address)
    changed |= _apply_field(permitted, "token", normalize_address)
    changed |= _apply_field(witness, "to", normalize_address)
    changed |= _apply_field(witness, "extra", _normalize_witness_extra)

    changed |= _apply_field(normalized, "nonce", normalize_integer_string)
    changed |= _apply_field(normalized, "deadline", normalize_integer_string)
    changed |= _apply_field(permitted, "amount", normalize_integer_string)
    changed |= _apply_field(witness, "validAfter", normalize_integer_string)

    return NormalizationResult(value=normalized, changed=changed)


@dataclass(frozen=True)
class PayloadNormalization:
    """What normalize_payment_payload() did to a payload, for diagnostics."""
    kind: PayloadKind
    authorization_changed: bool = False
    permit2_changed: bool = False
    signature: Optional[SignatureNormalization] = None

    @property
    def changed(self) -> bool:
        return (
            self.authorization_changed
            or self.permit2_changed
            or bool(self.signature and self.signature.changed)
        )


def normalize_payment_payload(payment_payload: PaymentPayload) -> PayloadNormalization:
    """
    Normalize a decoded payment payload in place.

    The authorization record matching the payload's kind is canonicalized and
    the signature, when present, is normalized. Changed values are written
    back into `payment_payload.payload`.

    Args:
        payment_payload: Decoded payment payload

    Returns:
        PayloadNormalization report
    """
    body = payment_payload.payload
    kind = payment_payload.kind
    authorization_changed = False
    permit2_changed = False

    if kind is PayloadKind.AUTHORIZATION:
        result = normalize_authorization(body.get(kind.value))
        authorization_changed = result.changed
        if result.changed:
            body[kind.value] = result.value
    elif kind is PayloadKind.PERMIT2:
        result = normalize_permit2_authorization(body.get(kind.value))
        permit2_changed = result.changed
        if result.changed:
            body[kind.value] = result.value
    elif kind in (PayloadKind.TRANSACTION, PayloadKind.UNKNOWN):
        # Transactions are signed blobs; nothing to canonicalize field by field
        pass
    else:
        raise AssertionError(f"Unhandled payload kind: {kind}")

    signature = None
    if "signature" in body:
        signature = normalize_signature(body["signature"])
        if signature.changed:
            body["signature"] = signature.value

    report = PayloadNormalization(
        kind=kind,
        authorization_changed=authorization_changed,
        permit2_changed=permit2_changed,
        signature=signature,
    )
    if report.changed:
        logger.debug(
            f"Normalized {kind.value} payload "
            f"(authorization={authorization_changed}, permit2={permit2_changed}, "
            f"signature={bool(signature and signature.changed)})"
        )
    return report
