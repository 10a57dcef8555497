# tests/test_x402_diagnostics.py
"""
Unit tests for payment diagnostics events and observers.
"""
import json
import logging

from app.x402.authorization import normalize_payment_payload
from app.x402.diagnostics import (
    BeforeVerifyEvent,
    CompositeDiagnosticsHooks,
    DiagnosticsHooks,
    LoggingDiagnosticsHooks,
    build_before_verify_event,
    build_settle_failure_event,
    build_verify_failure_event,
    mask_address,
)
from app.x402.facilitator import SettleError, VerifyError
from app.x402.types import PaymentPayload, PaymentRequirements

PAYER = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
PAY_TO = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"
PERMIT2_PROXY = "0xdbF03B407c01E7cD3CBea99509d93f8DDDC8C6FB"
USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
NOW = 1_700_000_000
NONCE = "0x" + "cd" * 32
SIGNATURE = "0x" + "11" * 32 + "22" * 32 + "1b"


def make_requirements() -> PaymentRequirements:
    return PaymentRequirements(pay_to=PAY_TO, price="$0.01", network="eip155:8453")


def authorization_payload(**overrides) -> PaymentPayload:
    auth = {
        "from": PAYER,
        "to": PAY_TO,
        "value": "10000",
        "validAfter": str(NOW - 60),
        "validBefore": str(NOW + 600),
        "nonce": NONCE,
    }
    auth.update(overrides)
    return PaymentPayload.model_validate({
        "x402Version": 2,
        "accepted": {"scheme": "exact", "network": "eip155:8453", "extra": {"assetTransferMethod": "eip3009"}},
        "payload": {"authorization": auth, "signature": SIGNATURE},
    })


class TestMaskAddress:
    """Test address masking."""

    def test_masks_long_values(self):
        assert mask_address(PAYER) == "0x5aAe...eAed"

    def test_short_and_non_strings_pass_through(self):
        assert mask_address("0x1234") == "0x1234"
        assert mask_address(None) is None
        assert mask_address(42) == 42


class TestBeforeVerifyEvent:
    """Test the redacted before-verify summary."""

    def test_authorization_summary(self):
        event = build_before_verify_event(authorization_payload(), make_requirements(), now=NOW)

        assert isinstance(event, BeforeVerifyEvent)
        assert event.payload_type == "authorization"
        assert event.accepted_network == "eip155:8453"
        assert event.accepted_asset_transfer_method == "eip3009"
        assert event.route_amount == "10000"
        assert event.payload_keys == ["authorization", "signature"]
        assert event.authorization_keys == ["from", "to", "value", "validAfter", "validBefore", "nonce"]

        summary = event.authorization
        assert summary.from_address == "0x5aAe...eAed"
        assert summary.to_address == "0xfB69...d359"
        assert summary.from_equals_pay_to is False
        assert summary.to_equals_pay_to is True
        assert summary.value_equals_amount is True
        assert summary.valid_after_delta_seconds == -60
        assert summary.valid_before_delta_seconds == 600
        assert summary.nonce_length == 66
        assert summary.nonce_starts_with_0x is True

    def test_case_insensitive_pay_to_match(self):
        payload = authorization_payload(to=PAY_TO.lower())
        event = build_before_verify_event(payload, make_requirements(), now=NOW)
        assert event.authorization.to_equals_pay_to is True

    def test_amount_mismatch(self):
        event = build_before_verify_event(authorization_payload(value="9999"), make_requirements(), now=NOW)
        assert event.authorization.value_equals_amount is False

    def test_no_secrets_in_event(self):
        """Raw signature, nonce and full addresses never appear in the event."""
        event = build_before_verify_event(authorization_payload(), make_requirements(), now=NOW)
        serialized = json.dumps(event.to_dict())
        assert SIGNATURE not in serialized
        assert NONCE not in serialized
        assert PAYER not in serialized
        assert PAY_TO not in serialized

    def test_signature_summary(self):
        event = build_before_verify_event(authorization_payload(), make_requirements(), now=NOW)
        summary = event.signature
        assert summary.type == "str"
        assert summary.length == 132
        assert summary.starts_with_0x is True
        assert summary.has_whitespace is False
        assert summary.is_hex is True
        assert summary.looks_erc6492_wrapped is False
        assert summary.was_normalized is False

    def test_normalization_flags(self):
        """Flags reflect what normalization changed."""
        payload = authorization_payload(**{"from": PAYER.lower()})
        payload.payload["signature"] = SIGNATURE[2:]
        report = normalize_payment_payload(payload)

        event = build_before_verify_event(payload, make_requirements(), normalization=report, now=NOW)

        assert event.authorization_was_normalized is True
        assert event.signature.was_normalized is True
        assert event.signature.erc6492_depth == 0
        assert event.authorization.from_address == "0x5aAe...eAed"

    def test_permit2_summary(self):
        payload = PaymentPayload.model_validate({
            "x402Version": 2,
            "payload": {
                "permit2Authorization": {
                    "from": PAYER,
                    "spender": PERMIT2_PROXY,
                    "nonce": "1",
                    "deadline": str(NOW + 300),
                    "permitted": {"token": USDC_BASE, "amount": "10000"},
                    "witness": {"to": PAY_TO, "validAfter": str(NOW - 5), "extra": "0x"},
                },
                "signature": SIGNATURE,
            },
        })

        event = build_before_verify_event(payload, make_requirements(), now=NOW)

        assert event.payload_type == "permit2Authorization"
        assert event.authorization is None
        permit2 = event.permit2
        assert permit2.spender == "0xdbF0...C6FB"
        assert permit2.deadline_delta_seconds == 300
        assert permit2.permitted_amount_equals_route is True
        assert permit2.witness_to_equals_pay_to is True
        assert permit2.witness_valid_after_delta_seconds == -5
        assert permit2.has_witness_extra is True

    def test_non_numeric_timestamps(self):
        event = build_before_verify_event(authorization_payload(validAfter="soon"), make_requirements(), now=NOW)
        assert event.authorization.valid_after_delta_seconds is None


class TestFailureEvents:
    """Test verify/settle failure events."""

    def test_verify_failure_event(self):
        error = VerifyError("rejected", operation="verify", reason="insufficient_funds", payer=PAYER)
        event = build_verify_failure_event(error, make_requirements())

        assert event.network == "eip155:8453"
        assert event.scheme == "exact"
        assert event.pay_to == "0xfB69...d359"
        assert event.amount == "10000"
        assert event.payer == "0x5aAe...eAed"
        assert event.error["name"] == "VerifyError"
        assert event.error["reason"] == "insufficient_funds"

    def test_settle_failure_event_plain_exception(self):
        event = build_settle_failure_event(RuntimeError("boom"), make_requirements())
        assert event.payer is None
        assert event.error["message"] == "boom"
        assert event.error["reason"] is None


class RecordingHooks(DiagnosticsHooks):
    def __init__(self):
        self.events = []

    def before_verify(self, event):
        self.events.append(("before_verify", event))

    def on_settle_failure(self, event):
        self.events.append(("on_settle_failure", event))


class ExplodingHooks(DiagnosticsHooks):
    def before_verify(self, event):
        raise RuntimeError("observer broke")


class TestObservers:
    """Test the logging and composite observers."""

    def test_logging_hooks(self, caplog):
        event = build_before_verify_event(authorization_payload(), make_requirements(), now=NOW)
        with caplog.at_level(logging.INFO, logger="app.x402.diagnostics"):
            LoggingDiagnosticsHooks().before_verify(event)
        assert "x402_before_verify" in caplog.text
        assert '"payload_type": "authorization"' in caplog.text

    def test_logging_hooks_failure_level(self, caplog):
        event = build_settle_failure_event(SettleError("nope"), make_requirements())
        with caplog.at_level(logging.INFO, logger="app.x402.diagnostics"):
            LoggingDiagnosticsHooks().on_settle_failure(event)
        assert caplog.records[-1].levelno == logging.ERROR
        assert "x402_settle_failure" in caplog.records[-1].getMessage()

    def test_composite_continues_after_failure(self, caplog):
        """A raising observer is logged and the next observer still runs."""
        recorder = RecordingHooks()
        composite = CompositeDiagnosticsHooks(ExplodingHooks(), recorder)
        event = build_before_verify_event(authorization_payload(), make_requirements(), now=NOW)

        with caplog.at_level(logging.ERROR, logger="app.x402.diagnostics"):
            composite.before_verify(event)

        assert recorder.events == [("before_verify", event)]
        assert "ExplodingHooks.before_verify failed" in caplog.text

    def test_base_hooks_are_no_ops(self):
        hooks = DiagnosticsHooks()
        event = build_verify_failure_event(VerifyError("x"), make_requirements())
        assert hooks.on_verify_failure(event) is None
