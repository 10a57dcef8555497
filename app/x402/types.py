# app/x402/types.py
"""
Wire models for the x402 protocol (version 2, with v1 payloads accepted).

Facilitator responses and the wire form of payment requirements are the
x402 SDK schemas. Two models stay local:
- PaymentRequirements: a route's payment option, priced in money or an
  explicit AssetAmount, serialized to the SDK's PaymentRequirements
- PaymentPayload: the decoded payment header. It is lenient (partial
  `accepted`, v1 top-level fields) and keeps `payload` as a plain dict so
  normalization can rewrite it in place. Its variant is decided once at
  validation time and stored as `kind`.

SettleResponse widens the SDK model: a failed settlement carries no
transaction hash and may carry no network.
"""
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import ConfigDict, Field, PrivateAttr, model_validator
from x402.schemas import (
    X402_VERSION,
    AssetAmount,
    BaseX402Model,
    SupportedKind,
    SupportedResponse,
    VerifyResponse,
)
from x402.schemas import PaymentRequirements as WirePaymentRequirements
from x402.schemas import SettleResponse as WireSettleResponse

from app.x402.assets import build_usdc_asset_amount, parse_money_price


class PayloadKind(Enum):
    """Which authorization scheme a payment payload carries."""
    AUTHORIZATION = "authorization"
    PERMIT2 = "permit2Authorization"
    TRANSACTION = "transaction"
    UNKNOWN = "unknown"


VARIANT_KEYS = (PayloadKind.AUTHORIZATION, PayloadKind.PERMIT2, PayloadKind.TRANSACTION)


def detect_payload_kind(payload: Any) -> PayloadKind:
    """
    Decide which authorization variant a payload body carries.

    Args:
        payload: The `payload` object of a PaymentPayload

    Returns:
        The matching PayloadKind, UNKNOWN when none of the variant keys is set

    Raises:
        ValueError: If more than one variant key is present
    """
    if not isinstance(payload, dict):
        return PayloadKind.UNKNOWN

    present = [kind for kind in VARIANT_KEYS if payload.get(kind.value)]
    if len(present) > 1:
        names = ", ".join(kind.value for kind in present)
        raise ValueError(f"Payment payload carries more than one authorization variant: {names}")
    return present[0] if present else PayloadKind.UNKNOWN


class PaymentRequirements(BaseX402Model):
    """
    What a route accepts as payment. Immutable.

    `price` is either a money string ("$0.01"), resolved to USDC on the
    requirement's network, or an explicit AssetAmount.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    scheme: str = "exact"
    pay_to: str = Field(alias="payTo")
    price: Union[str, AssetAmount]
    network: str
    max_timeout_seconds: int = Field(300, alias="maxTimeoutSeconds")
    resource: Optional[str] = None

    def asset_amount(self) -> AssetAmount:
        """Resolve `price` into an explicit AssetAmount."""
        if isinstance(self.price, AssetAmount):
            return self.price

        return build_usdc_asset_amount(parse_money_price(self.price), self.network)

    @property
    def amount(self) -> str:
        return self.asset_amount().amount

    @property
    def asset_transfer_method(self) -> Optional[str]:
        return (self.asset_amount().extra or {}).get("assetTransferMethod")

    def to_sdk(self) -> WirePaymentRequirements:
        """Resolve the price and build the SDK's PaymentRequirements."""
        asset_amount = self.asset_amount()
        return WirePaymentRequirements(
            scheme=self.scheme,
            network=self.network,
            asset=asset_amount.asset,
            amount=asset_amount.amount,
            pay_to=self.pay_to,
            max_timeout_seconds=self.max_timeout_seconds,
            extra=dict(asset_amount.extra or {}),
        )

    def to_wire(self) -> Dict[str, Any]:
        """Serialize into the JSON shape facilitators and clients expect."""
        return self.to_sdk().model_dump(by_alias=True, exclude_none=True)


class AcceptedRequirements(BaseX402Model):
    """The requirements a client says it paid against (`accepted` in v2 payloads)."""
    model_config = ConfigDict(extra="allow")

    scheme: str
    network: str
    extra: Optional[Dict[str, Any]] = None


class PaymentPayload(BaseX402Model):
    """
    A decoded X-PAYMENT / PAYMENT-SIGNATURE header.

    `payload` stays a plain dict: normalization rewrites fields in place and
    has to carry malformed values through untouched.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    x402_version: int = Field(alias="x402Version")
    accepted: Optional[AcceptedRequirements] = None
    resource: Optional[Any] = None
    payload: Dict[str, Any]

    # v1 payloads carry scheme/network at the top level instead of `accepted`
    scheme: Optional[str] = None
    network: Optional[str] = None

    _kind: PayloadKind = PrivateAttr(default=PayloadKind.UNKNOWN)

    @model_validator(mode="after")
    def _detect_kind(self) -> "PaymentPayload":
        self._kind = detect_payload_kind(self.payload)
        return self

    @property
    def kind(self) -> PayloadKind:
        return self._kind

    @property
    def accepted_scheme(self) -> Optional[str]:
        return self.accepted.scheme if self.accepted else self.scheme

    @property
    def accepted_network(self) -> Optional[str]:
        return self.accepted.network if self.accepted else self.network

    @property
    def accepted_asset_transfer_method(self) -> Optional[str]:
        if self.accepted and self.accepted.extra:
            return self.accepted.extra.get("assetTransferMethod")
        return None

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude={"payload"}, exclude_none=True)
        data["payload"] = self.payload
        return data


class SettleResponse(WireSettleResponse):
    """Facilitator answer to /settle. `transaction` is null when settlement failed."""

    transaction: Optional[str] = None
    network: Optional[str] = None
