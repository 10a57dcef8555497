# tests/test_x402_server.py
"""
Unit tests for the payment session state machine and processor.
"""
import logging
import pytest
from unittest.mock import MagicMock

from app.x402.diagnostics import DiagnosticsHooks
from app.x402.facilitator import SettleError, VerifyError
from app.x402.server import PaymentProcessor, PaymentSession, PaymentState
from app.x402.types import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse

PAYER = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
PAY_TO = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"


def make_session(**auth_overrides) -> PaymentSession:
    auth = {"from": PAYER, "to": PAY_TO, "value": "10000", "nonce": "0x" + "ab" * 32}
    auth.update(auth_overrides)
    payload = PaymentPayload.model_validate({
        "x402Version": 2,
        "payload": {"authorization": auth, "signature": "0x" + "11" * 65},
    })
    requirements = PaymentRequirements(pay_to=PAY_TO, price="$0.01", network="eip155:8453")
    return PaymentSession(payload, requirements)


class RecordingHooks(DiagnosticsHooks):
    def __init__(self):
        self.calls = []

    def before_verify(self, event):
        self.calls.append(("before_verify", event))

    def on_verify_failure(self, event):
        self.calls.append(("on_verify_failure", event))

    def on_settle_failure(self, event):
        self.calls.append(("on_settle_failure", event))


class ExplodingHooks(DiagnosticsHooks):
    def before_verify(self, event):
        raise RuntimeError("observer broke")

    def on_verify_failure(self, event):
        raise RuntimeError("observer broke")


class TestPaymentSession:
    """Test state transitions."""

    def test_initial_state(self):
        session = make_session()
        assert session.state is PaymentState.RECEIVED
        assert session.payer is None

    def test_illegal_transition_raises(self):
        session = make_session()
        with pytest.raises(RuntimeError, match="received -> verified"):
            session.transition(PaymentState.VERIFIED)

    def test_handler_cannot_start_before_verification(self):
        session = make_session()
        with pytest.raises(RuntimeError):
            session.start_handler()

    def test_terminal_states(self):
        session = make_session()
        session.transition(PaymentState.NORMALIZED)
        session.transition(PaymentState.VERIFYING)
        session.transition(PaymentState.VERIFY_FAILED)
        with pytest.raises(RuntimeError):
            session.transition(PaymentState.VERIFYING)


class TestPaymentProcessor:
    """Test verify/settle orchestration."""

    def test_happy_path(self):
        facilitator = MagicMock()
        facilitator.verify.return_value = VerifyResponse(isValid=True, payer=PAYER)
        facilitator.settle.return_value = SettleResponse(success=True, transaction="0xabc", payer=PAYER)
        hooks = RecordingHooks()
        processor = PaymentProcessor(facilitator, hooks)
        session = make_session()

        processor.verify(session)
        assert session.state is PaymentState.VERIFIED
        session.start_handler()
        session.finish_handler()
        processor.settle(session)

        assert session.state is PaymentState.SETTLED
        assert session.payer == PAYER
        assert [name for name, _ in hooks.calls] == ["before_verify"]

    def test_normalization_before_observer_and_facilitator(self):
        """The observer and the facilitator both see the normalized payload."""
        facilitator = MagicMock()
        facilitator.verify.return_value = VerifyResponse(isValid=True)
        hooks = RecordingHooks()
        session = make_session(**{"from": PAYER.lower()})

        PaymentProcessor(facilitator, hooks).verify(session)

        event = hooks.calls[0][1]
        assert event.authorization_was_normalized is True
        sent_payload = facilitator.verify.call_args.args[0]
        assert sent_payload.payload["authorization"]["from"] == PAYER

    def test_verify_failure(self):
        facilitator = MagicMock()
        error = VerifyError("rejected", reason="insufficient_funds")
        facilitator.verify.side_effect = error
        hooks = RecordingHooks()
        session = make_session()

        with pytest.raises(VerifyError) as exc_info:
            PaymentProcessor(facilitator, hooks).verify(session)

        assert exc_info.value is error
        assert session.state is PaymentState.VERIFY_FAILED
        assert [name for name, _ in hooks.calls] == ["before_verify", "on_verify_failure"]
        assert hooks.calls[1][1].error["reason"] == "insufficient_funds"

    def test_settle_failure(self):
        facilitator = MagicMock()
        facilitator.verify.return_value = VerifyResponse(isValid=True)
        facilitator.settle.side_effect = SettleError("no gas")
        hooks = RecordingHooks()
        processor = PaymentProcessor(facilitator, hooks)
        session = make_session()

        processor.verify(session)
        session.start_handler()
        session.finish_handler()
        with pytest.raises(SettleError):
            processor.settle(session)

        assert session.state is PaymentState.SETTLE_FAILED
        assert hooks.calls[-1][0] == "on_settle_failure"

    def test_settle_requires_handler_done(self):
        facilitator = MagicMock()
        facilitator.verify.return_value = VerifyResponse(isValid=True)
        processor = PaymentProcessor(facilitator)
        session = make_session()
        processor.verify(session)

        with pytest.raises(RuntimeError):
            processor.settle(session)
        facilitator.settle.assert_not_called()

    def test_hook_errors_do_not_change_control_flow(self, caplog):
        """A raising observer is logged; verification still happens."""
        facilitator = MagicMock()
        facilitator.verify.return_value = VerifyResponse(isValid=True)
        session = make_session()

        with caplog.at_level(logging.ERROR, logger="app.x402.server"):
            PaymentProcessor(facilitator, ExplodingHooks()).verify(session)

        assert session.state is PaymentState.VERIFIED
        facilitator.verify.assert_called_once()
        assert "diagnostics hook before_verify failed" in caplog.text

    def test_hook_errors_do_not_mask_facilitator_error(self):
        facilitator = MagicMock()
        facilitator.verify.side_effect = VerifyError("rejected", reason="invalid_payload")

        with pytest.raises(VerifyError):
            PaymentProcessor(facilitator, ExplodingHooks()).verify(make_session())
