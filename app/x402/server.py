# app/x402/server.py
"""
Per-request payment lifecycle.

A PaymentSession walks through:

    RECEIVED -> NORMALIZED -> VERIFYING -> VERIFIED | VERIFY_FAILED
    VERIFIED -> HANDLER_EXECUTING -> HANDLER_DONE -> SETTLING -> SETTLED | SETTLE_FAILED

PaymentProcessor drives the payment side of it: normalize once, notify the
diagnostics observer, call the facilitator, notify again on failure.
VERIFY_FAILED and SETTLE_FAILED are terminal; the only retry is the one
ResilientFacilitatorClient may already have made.
"""
import logging
from enum import Enum
from typing import Optional

from app.x402.authorization import PayloadNormalization, normalize_payment_payload
from app.x402.diagnostics import (
    DiagnosticsHooks,
    build_before_verify_event,
    build_settle_failure_event,
    build_verify_failure_event,
)
from app.x402.facilitator import FacilitatorClient
from app.x402.types import (
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    VerifyResponse,
)

logger = logging.getLogger(__name__)


class PaymentState(Enum):
    RECEIVED = "received"
    NORMALIZED = "normalized"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    VERIFY_FAILED = "verify_failed"
    HANDLER_EXECUTING = "handler_executing"
    HANDLER_DONE = "handler_done"
    SETTLING = "settling"
    SETTLED = "settled"
    SETTLE_FAILED = "settle_failed"


ALLOWED_TRANSITIONS = {
    PaymentState.RECEIVED: {PaymentState.NORMALIZED},
    PaymentState.NORMALIZED: {PaymentState.VERIFYING},
    PaymentState.VERIFYING: {PaymentState.VERIFIED, PaymentState.VERIFY_FAILED},
    PaymentState.VERIFIED: {PaymentState.HANDLER_EXECUTING},
    PaymentState.VERIFY_FAILED: set(),
    PaymentState.HANDLER_EXECUTING: {PaymentState.HANDLER_DONE},
    PaymentState.HANDLER_DONE: {PaymentState.SETTLING},
    PaymentState.SETTLING: {PaymentState.SETTLED, PaymentState.SETTLE_FAILED},
    PaymentState.SETTLED: set(),
    PaymentState.SETTLE_FAILED: set(),
}


class PaymentSession:
    """State of one paid request."""

    def __init__(self, payload: PaymentPayload, requirements: PaymentRequirements):
        self.payload = payload
        self.requirements = requirements
        self.state = PaymentState.RECEIVED
        self.normalization: Optional[PayloadNormalization] = None
        self.verify_response: Optional[VerifyResponse] = None
        self.settle_response: Optional[SettleResponse] = None

    def transition(self, new_state: PaymentState) -> None:
        """
        Move to a new state.

        Raises:
            RuntimeError: If the transition is not allowed from the current state
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal payment state transition: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def start_handler(self) -> None:
        self.transition(PaymentState.HANDLER_EXECUTING)

    def finish_handler(self) -> None:
        self.transition(PaymentState.HANDLER_DONE)

    @property
    def payer(self) -> Optional[str]:
        if self.settle_response is not None and self.settle_response.payer:
            return self.settle_response.payer
        if self.verify_response is not None:
            return self.verify_response.payer
        return None


class PaymentProcessor:
    """
    Runs verification and settlement for a PaymentSession.

    Args:
        facilitator: Client used for verify/settle
        hooks: Diagnostics observer (defaults to a no-op observer)
    """

    def __init__(self, facilitator: FacilitatorClient, hooks: Optional[DiagnosticsHooks] = None):
        self.facilitator = facilitator
        self.hooks = hooks or DiagnosticsHooks()

    def _notify(self, method: str, event) -> None:
        try:
            getattr(self.hooks, method)(event)
        except Exception as e:
            logger.error(f"x402: diagnostics hook {method} failed: {e}")

    def normalize(self, session: PaymentSession) -> PayloadNormalization:
        """Normalize the session's payload in place. Runs once per session."""
        session.normalization = normalize_payment_payload(session.payload)
        session.transition(PaymentState.NORMALIZED)
        return session.normalization

    def verify(self, session: PaymentSession) -> VerifyResponse:
        """
        Normalize and verify the payment.

        Returns:
            VerifyResponse from the facilitator

        Raises:
            FacilitatorError: Verification failed; the session is VERIFY_FAILED
        """
        if session.state is PaymentState.RECEIVED:
            self.normalize(session)

        self._notify(
            "before_verify",
            build_before_verify_event(session.payload, session.requirements, session.normalization),
        )
        session.transition(PaymentState.VERIFYING)

        try:
            response = self.facilitator.verify(session.payload, session.requirements)
        except Exception as e:
            session.transition(PaymentState.VERIFY_FAILED)
            self._notify("on_verify_failure", build_verify_failure_event(e, session.requirements))
            raise

        session.verify_response = response
        session.transition(PaymentState.VERIFIED)
        logger.info(f"x402: Payment verified for payer {response.payer}")
        return response

    def settle(self, session: PaymentSession) -> SettleResponse:
        """
        Settle a verified payment after the handler finished.

        Returns:
            SettleResponse from the facilitator

        Raises:
            FacilitatorError: Settlement failed; the session is SETTLE_FAILED
        """
        session.transition(PaymentState.SETTLING)

        try:
            response = self.facilitator.settle(session.payload, session.requirements)
        except Exception as e:
            session.transition(PaymentState.SETTLE_FAILED)
            self._notify("on_settle_failure", build_settle_failure_event(e, session.requirements))
            raise

        session.settle_response = response
        session.transition(PaymentState.SETTLED)
        logger.info(f"x402: Payment settled, transaction {response.transaction or 'n/a'}")
        return response
