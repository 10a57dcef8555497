# tests/test_x402_types.py
"""
Unit tests for x402 wire models.
"""
import pytest
from pydantic import ValidationError

from app.x402.assets import AssetAmount, build_usdc_asset_amount
from app.x402.types import (
    PayloadKind,
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    SupportedResponse,
    VerifyResponse,
    detect_payload_kind,
)

PAY_TO = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"


class TestPayloadKind:
    """Test the payload variant decided at parse time."""

    def test_authorization(self):
        payload = PaymentPayload.model_validate({
            "x402Version": 2,
            "payload": {"authorization": {"from": "0x1"}, "signature": "0x"},
        })
        assert payload.kind is PayloadKind.AUTHORIZATION

    def test_permit2(self):
        payload = PaymentPayload.model_validate({
            "x402Version": 2,
            "payload": {"permit2Authorization": {"from": "0x1"}},
        })
        assert payload.kind is PayloadKind.PERMIT2

    def test_transaction(self):
        payload = PaymentPayload.model_validate({
            "x402Version": 2,
            "payload": {"transaction": "0xabc"},
        })
        assert payload.kind is PayloadKind.TRANSACTION

    def test_unknown(self):
        payload = PaymentPayload.model_validate({"x402Version": 2, "payload": {"signature": "0x"}})
        assert payload.kind is PayloadKind.UNKNOWN

    def test_multiple_variants_rejected(self):
        """Authorization and Permit2 in one payload is a validation error."""
        with pytest.raises(ValidationError):
            PaymentPayload.model_validate({
                "x402Version": 2,
                "payload": {
                    "authorization": {"from": "0x1"},
                    "permit2Authorization": {"from": "0x1"},
                },
            })

    def test_detect_non_dict(self):
        assert detect_payload_kind("nope") is PayloadKind.UNKNOWN

    def test_payload_required(self):
        with pytest.raises(ValidationError):
            PaymentPayload.model_validate({"x402Version": 2})


class TestPaymentPayload:
    """Test accessors and serialization."""

    def test_v2_accepted_fields(self):
        payload = PaymentPayload.model_validate({
            "x402Version": 2,
            "accepted": {
                "scheme": "exact",
                "network": "eip155:8453",
                "extra": {"assetTransferMethod": "permit2"},
            },
            "payload": {"permit2Authorization": {}},
        })
        assert payload.accepted_scheme == "exact"
        assert payload.accepted_network == "eip155:8453"
        assert payload.accepted_asset_transfer_method == "permit2"

    def test_v1_top_level_fields(self):
        payload = PaymentPayload.model_validate({
            "x402Version": 1,
            "scheme": "exact",
            "network": "base-sepolia",
            "payload": {"authorization": {"from": "0x1"}},
        })
        assert payload.accepted_scheme == "exact"
        assert payload.accepted_network == "base-sepolia"
        assert payload.accepted_asset_transfer_method is None

    def test_to_wire_keeps_payload_and_extras(self):
        """to_wire keeps the payload dict as is and drops unset optionals."""
        body = {"authorization": {"from": "0x1", "odd": [1, 2]}, "signature": "0xab"}
        payload = PaymentPayload.model_validate({
            "x402Version": 2,
            "accepted": {"scheme": "exact", "network": "eip155:8453", "amount": "10000"},
            "resource": {"url": "https://example.com/api/ping"},
            "payload": body,
        })
        wire = payload.to_wire()
        assert wire["x402Version"] == 2
        assert wire["payload"] == body
        assert wire["accepted"]["amount"] == "10000"
        assert wire["resource"] == {"url": "https://example.com/api/ping"}
        assert "scheme" not in wire


class TestPaymentRequirements:
    """Test requirement pricing and wire format."""

    def test_money_price_resolves_to_usdc(self):
        requirements = PaymentRequirements(pay_to=PAY_TO, price="$0.25", network="eip155:8453")
        assert requirements.amount == "250000"
        assert requirements.asset_amount().asset == "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
        assert requirements.asset_transfer_method is None

    def test_testnet_money_price(self):
        requirements = PaymentRequirements(pay_to=PAY_TO, price="$0.01", network="eip155:84532")
        asset_amount = requirements.asset_amount()
        assert asset_amount.amount == "10000"
        assert asset_amount.asset == "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
        assert asset_amount.extra == {"name": "USDC", "version": "2"}

    def test_explicit_asset_amount(self):
        price = build_usdc_asset_amount("500000", "eip155:8453", "permit2")
        requirements = PaymentRequirements(pay_to=PAY_TO, price=price, network="eip155:8453")
        assert requirements.amount == "500000"
        assert requirements.asset_transfer_method == "permit2"

    def test_to_wire(self):
        requirements = PaymentRequirements(
            pay_to=PAY_TO,
            price="$0.01",
            network="eip155:8453",
            max_timeout_seconds=120,
        )
        assert requirements.to_wire() == {
            "scheme": "exact",
            "network": "eip155:8453",
            "amount": "10000",
            "asset": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
            "payTo": PAY_TO,
            "maxTimeoutSeconds": 120,
            "extra": {"name": "USD Coin", "version": "2"},
        }

    def test_frozen(self):
        requirements = PaymentRequirements(pay_to=PAY_TO, price="$0.01", network="eip155:8453")
        with pytest.raises(ValidationError):
            requirements.network = "eip155:84532"

    def test_alias_construction(self):
        requirements = PaymentRequirements.model_validate({
            "payTo": PAY_TO,
            "price": {"amount": "1", "asset": "0xabc", "extra": {}},
            "network": "eip155:8453",
            "maxTimeoutSeconds": 60,
        })
        assert isinstance(requirements.price, AssetAmount)
        assert requirements.max_timeout_seconds == 60


class TestFacilitatorResponses:
    """Test facilitator response models."""

    def test_verify_response_aliases(self):
        response = VerifyResponse.model_validate({
            "isValid": False,
            "invalidReason": "invalid_payload",
            "invalidMessage": "bad nonce",
            "payer": "0x1",
        })
        assert response.is_valid is False
        assert response.invalid_reason == "invalid_payload"
        assert response.invalid_message == "bad nonce"

    def test_settle_response_defaults(self):
        response = SettleResponse.model_validate({"success": True, "transaction": "0xabc", "network": "eip155:8453"})
        assert response.success is True
        assert response.error_reason is None
        assert response.model_dump(by_alias=True, exclude_none=True) == {
            "success": True,
            "transaction": "0xabc",
            "network": "eip155:8453",
        }

    def test_failed_settle_response_without_transaction(self):
        response = SettleResponse.model_validate({
            "success": False,
            "errorReason": "insufficient_funds",
            "transaction": None,
        })
        assert response.transaction is None
        assert response.network is None
        assert response.error_reason == "insufficient_funds"

    def test_supported_response(self):
        response = SupportedResponse.model_validate({
            "kinds": [{"x402Version": 2, "scheme": "exact", "network": "eip155:8453"}],
        })
        assert response.kinds[0].x402_version == 2
        assert response.extensions == []
