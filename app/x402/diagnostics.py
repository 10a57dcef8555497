# app/x402/diagnostics.py
"""
Diagnostics observers for the payment lifecycle.

Three points are observed:
- before_verify: after normalization, just before the facilitator call
- on_verify_failure: the facilitator rejected or could not verify
- on_settle_failure: settlement failed

Events are typed and already redacted. Addresses are masked to
`first6...last4`; the raw signature, nonce, witness extra and full
authorization never leave this module.

Observers must not change control flow. PaymentProcessor logs and drops
anything an observer raises.
"""
import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from app.x402.authorization import PayloadNormalization
from app.x402.canonical import is_hex_string, safe_int
from app.x402.facilitator import format_facilitator_error
from app.x402.types import PayloadKind, PaymentPayload, PaymentRequirements

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s")

# 0x + 65 bytes hex = 132 characters; anything longer is probably wrapped
COMPACT_SIGNATURE_STRING_LENGTH = 132


def mask_address(address: Any) -> Any:
    """Mask an address to its first 6 and last 4 characters."""
    if not isinstance(address, str) or len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def _same_address(left: Any, right: Any) -> bool:
    return isinstance(left, str) and isinstance(right, str) and left.lower() == right.lower()


def _same_amount(left: Any, right: Any) -> bool:
    left_int = safe_int(left)
    right_int = safe_int(right)
    return left_int is not None and right_int is not None and left_int == right_int


def _delta_seconds(timestamp: Any, now: int) -> Optional[int]:
    parsed = safe_int(timestamp)
    return parsed - now if parsed is not None else None


# --- Events ---

@dataclass(frozen=True)
class AuthorizationSummary:
    from_address: Any
    to_address: Any
    from_equals_pay_to: bool
    to_equals_pay_to: bool
    value_equals_amount: bool
    has_value: bool
    has_valid_after: bool
    has_valid_before: bool
    valid_after_delta_seconds: Optional[int]
    valid_before_delta_seconds: Optional[int]
    nonce_length: Optional[int]
    nonce_starts_with_0x: Optional[bool]


@dataclass(frozen=True)
class Permit2Summary:
    from_address: Any
    spender: Any
    deadline_delta_seconds: Optional[int]
    permitted_token: Any
    permitted_amount_equals_route: bool
    witness_to: Any
    witness_to_equals_pay_to: bool
    witness_valid_after_delta_seconds: Optional[int]
    has_witness_extra: bool


@dataclass(frozen=True)
class SignatureSummary:
    type: str
    length: Optional[int]
    starts_with_0x: Optional[bool]
    has_whitespace: Optional[bool]
    is_hex: Optional[bool]
    looks_erc6492_wrapped: Optional[bool]
    was_normalized: bool = False
    was_erc6492: bool = False
    erc6492_unwrapped: bool = False
    erc6492_depth: int = 0


@dataclass(frozen=True)
class BeforeVerifyEvent:
    x402_version: int
    accepted_scheme: Optional[str]
    accepted_network: Optional[str]
    accepted_asset_transfer_method: Optional[str]
    route_network: str
    route_amount: str
    route_asset_transfer_method: Optional[str]
    payload_type: str
    payload_keys: List[str]
    payload_json_length: int
    authorization_keys: List[str] = field(default_factory=list)
    authorization: Optional[AuthorizationSummary] = None
    authorization_was_normalized: bool = False
    permit2: Optional[Permit2Summary] = None
    permit2_was_normalized: bool = False
    signature: Optional[SignatureSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VerifyFailureEvent:
    network: str
    scheme: str
    pay_to: Any
    amount: str
    error: Dict[str, Any]
    payer: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SettleFailureEvent:
    network: str
    scheme: str
    pay_to: Any
    amount: str
    error: Dict[str, Any]
    payer: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _summarize_authorization(auth: Dict[str, Any], requirements: PaymentRequirements, now: int) -> AuthorizationSummary:
    nonce = auth.get("nonce")
    return AuthorizationSummary(
        from_address=mask_address(auth.get("from")),
        to_address=mask_address(auth.get("to")),
        from_equals_pay_to=_same_address(auth.get("from"), requirements.pay_to),
        to_equals_pay_to=_same_address(auth.get("to"), requirements.pay_to),
        value_equals_amount=_same_amount(auth.get("value"), requirements.amount),
        has_value=isinstance(auth.get("value"), str),
        has_valid_after=isinstance(auth.get("validAfter"), str),
        has_valid_before=isinstance(auth.get("validBefore"), str),
        valid_after_delta_seconds=_delta_seconds(auth.get("validAfter"), now),
        valid_before_delta_seconds=_delta_seconds(auth.get("validBefore"), now),
        nonce_length=len(nonce) if isinstance(nonce, str) else None,
        nonce_starts_with_0x=nonce.startswith("0x") if isinstance(nonce, str) else None,
    )


def _summarize_permit2(permit: Dict[str, Any], requirements: PaymentRequirements, now: int) -> Permit2Summary:
    permitted = permit.get("permitted") if isinstance(permit.get("permitted"), dict) else {}
    witness = permit.get("witness") if isinstance(permit.get("witness"), dict) else {}
    return Permit2Summary(
        from_address=mask_address(permit.get("from")),
        spender=mask_address(permit.get("spender")),
        deadline_delta_seconds=_delta_seconds(permit.get("deadline"), now),
        permitted_token=mask_address(permitted.get("token")),
        permitted_amount_equals_route=_same_amount(permitted.get("amount"), requirements.amount),
        witness_to=mask_address(witness.get("to")),
        witness_to_equals_pay_to=_same_address(witness.get("to"), requirements.pay_to),
        witness_valid_after_delta_seconds=_delta_seconds(witness.get("validAfter"), now),
        has_witness_extra=witness.get("extra") is not None,
    )


def _summarize_signature(signature: Any, normalization: Optional[PayloadNormalization]) -> SignatureSummary:
    report = normalization.signature if normalization else None
    is_string = isinstance(signature, str)
    return SignatureSummary(
        type=type(signature).__name__,
        length=len(signature) if is_string else None,
        starts_with_0x=signature[:2].lower() == "0x" if is_string else None,
        has_whitespace=bool(_WHITESPACE_RE.search(signature)) if is_string else None,
        is_hex=is_hex_string(signature) if is_string else None,
        looks_erc6492_wrapped=len(signature) > COMPACT_SIGNATURE_STRING_LENGTH if is_string else None,
        was_normalized=bool(report and report.changed),
        was_erc6492=bool(report and report.was_wrapped),
        erc6492_unwrapped=bool(report and report.unwrapped),
        erc6492_depth=report.unwrap_depth if report else 0,
    )


def build_before_verify_event(
    payload: PaymentPayload,
    requirements: PaymentRequirements,
    normalization: Optional[PayloadNormalization] = None,
    now: Optional[int] = None
) -> BeforeVerifyEvent:
    """
    Build the redacted before-verify summary of a (normalized) payment.

    Args:
        payload: The payment payload, after normalization
        requirements: Requirements the payment is checked against
        normalization: What normalization changed, if it ran
        now: Unix time the deltas are relative to (defaults to the clock)

    Returns:
        BeforeVerifyEvent
    """
    if now is None:
        now = int(time.time())

    body = payload.payload
    kind = payload.kind
    event_kwargs: Dict[str, Any] = {}

    if kind is PayloadKind.AUTHORIZATION and isinstance(body.get(kind.value), dict):
        auth = body[kind.value]
        event_kwargs["authorization_keys"] = list(auth.keys())
        event_kwargs["authorization"] = _summarize_authorization(auth, requirements, now)
    elif kind is PayloadKind.PERMIT2 and isinstance(body.get(kind.value), dict):
        event_kwargs["permit2"] = _summarize_permit2(body[kind.value], requirements, now)

    if "signature" in body:
        event_kwargs["signature"] = _summarize_signature(body["signature"], normalization)

    try:
        payload_json_length = len(json.dumps(body, separators=(",", ":")))
    except (TypeError, ValueError):
        payload_json_length = 0

    return BeforeVerifyEvent(
        x402_version=payload.x402_version,
        accepted_scheme=payload.accepted_scheme,
        accepted_network=payload.accepted_network,
        accepted_asset_transfer_method=payload.accepted_asset_transfer_method,
        route_network=requirements.network,
        route_amount=requirements.amount,
        route_asset_transfer_method=requirements.asset_transfer_method,
        payload_type=kind.value,
        payload_keys=list(body.keys()),
        payload_json_length=payload_json_length,
        authorization_was_normalized=bool(normalization and normalization.authorization_changed),
        permit2_was_normalized=bool(normalization and normalization.permit2_changed),
        **event_kwargs,
    )


def build_verify_failure_event(error: BaseException, requirements: PaymentRequirements) -> VerifyFailureEvent:
    return VerifyFailureEvent(
        network=requirements.network,
        scheme=requirements.scheme,
        pay_to=mask_address(requirements.pay_to),
        amount=requirements.amount,
        error=format_facilitator_error(error),
        payer=mask_address(getattr(error, "payer", None)),
    )


def build_settle_failure_event(error: BaseException, requirements: PaymentRequirements) -> SettleFailureEvent:
    return SettleFailureEvent(
        network=requirements.network,
        scheme=requirements.scheme,
        pay_to=mask_address(requirements.pay_to),
        amount=requirements.amount,
        error=format_facilitator_error(error),
        payer=mask_address(getattr(error, "payer", None)),
    )


# --- Observers ---

class DiagnosticsHooks:
    """Observer interface for payment diagnostics. All hooks default to no-ops."""

    def before_verify(self, event: BeforeVerifyEvent) -> None:
        pass

    def on_verify_failure(self, event: VerifyFailureEvent) -> None:
        pass

    def on_settle_failure(self, event: SettleFailureEvent) -> None:
        pass


class LoggingDiagnosticsHooks(DiagnosticsHooks):
    """Writes one structured log record per event."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def before_verify(self, event: BeforeVerifyEvent) -> None:
        self._log.info(f"x402_before_verify {json.dumps(event.to_dict(), default=str)}")

    def on_verify_failure(self, event: VerifyFailureEvent) -> None:
        self._log.error(f"x402_verify_failure {json.dumps(event.to_dict(), default=str)}")

    def on_settle_failure(self, event: SettleFailureEvent) -> None:
        self._log.error(f"x402_settle_failure {json.dumps(event.to_dict(), default=str)}")


class CompositeDiagnosticsHooks(DiagnosticsHooks):
    """
    Fans every event out to several observers, in order.

    A failing observer does not stop the ones after it.
    """

    def __init__(self, *hooks: DiagnosticsHooks):
        self.hooks = list(hooks)

    def _dispatch(self, method: str, event: Any) -> None:
        for hook in self.hooks:
            try:
                getattr(hook, method)(event)
            except Exception as e:
                logger.error(f"Diagnostics hook {type(hook).__name__}.{method} failed: {e}")

    def before_verify(self, event: BeforeVerifyEvent) -> None:
        self._dispatch("before_verify", event)

    def on_verify_failure(self, event: VerifyFailureEvent) -> None:
        self._dispatch("on_verify_failure", event)

    def on_settle_failure(self, event: SettleFailureEvent) -> None:
        self._dispatch("on_settle_failure", event)
