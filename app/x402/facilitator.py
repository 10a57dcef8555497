# app/x402/facilitator.py
"""
Facilitator clients.

A facilitator verifies a signed payment before the paid handler runs and
settles it afterwards. This module provides:

- FacilitatorClient: the interface (verify, settle, list_supported)
- HTTPFacilitatorClient: the HTTP implementation (requests, x402 SDK models)
- classify_facilitator_error(): maps any facilitator failure onto a
  FacilitatorFailure reason
- ResilientFacilitatorClient: primary + fallback facilitator. verify/settle
  retry once on the fallback for payload-format failures only;
  list_supported falls back on any failure.

Calls are blocking; the middleware runs them in the thread pool.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests
from pydantic import ValidationError

from app.core.config import FacilitatorSettings
from app.x402.auth import create_auth_headers_factory
from app.x402.types import (
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    SupportedResponse,
    VerifyResponse,
)

logger = logging.getLogger(__name__)

AuthHeadersFactory = Callable[[], Dict[str, Dict[str, str]]]


# --- Errors ---

class FacilitatorError(Exception):
    """A facilitator call failed."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        reason_message: Optional[str] = None,
        payer: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.status_code = status_code
        self.reason = reason
        self.reason_message = reason_message
        self.payer = payer


class VerifyError(FacilitatorError):
    """The facilitator rejected the payment during verification."""


class SettleError(FacilitatorError):
    """The facilitator could not settle the payment."""


class FacilitatorResponseError(FacilitatorError):
    """The facilitator answered with a body that is not JSON."""


class FacilitatorConnectionError(FacilitatorError):
    """The facilitator could not be reached."""


class FacilitatorTimeoutError(FacilitatorConnectionError):
    """The facilitator did not answer in time."""


def format_facilitator_error(error: Optional[BaseException]) -> Dict[str, Any]:
    """Flatten an error into a log-safe dict."""
    if error is None:
        return {"message": "Unknown error"}
    return {
        "name": type(error).__name__,
        "message": str(error),
        "operation": getattr(error, "operation", None),
        "status_code": getattr(error, "status_code", None),
        "reason": getattr(error, "reason", None),
        "reason_message": getattr(error, "reason_message", None),
        "payer": getattr(error, "payer", None),
    }


# --- Classification ---

class FacilitatorFailure(Enum):
    """Why a facilitator call failed."""
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_SIGNATURE = "invalid_signature"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    AUTHENTICATION = "authentication"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNKNOWN = "unknown"


# Failures worth one retry on the fallback facilitator
FALLBACK_FAILURES = frozenset({FacilitatorFailure.INVALID_PAYLOAD})

_REASON_CODES = {
    "invalid_payload": FacilitatorFailure.INVALID_PAYLOAD,
    "insufficient_funds": FacilitatorFailure.INSUFFICIENT_FUNDS,
    "unsupported_scheme": FacilitatorFailure.UNSUPPORTED_SCHEME,
    "invalid_scheme": FacilitatorFailure.UNSUPPORTED_SCHEME,
    "invalid_network": FacilitatorFailure.UNSUPPORTED_SCHEME,
}


def _classify_reason_code(reason: Optional[str]) -> Optional[FacilitatorFailure]:
    if not reason:
        return None
    if reason in _REASON_CODES:
        return _REASON_CODES[reason]
    if "signature" in reason:
        return FacilitatorFailure.INVALID_SIGNATURE
    if "insufficient_funds" in reason:
        return FacilitatorFailure.INSUFFICIENT_FUNDS
    return None


def _classify_legacy_message(message: str) -> FacilitatorFailure:
    """
    Substring matching on human-readable messages.

    Only reached when neither the exception type, the reason code nor the
    status code decided the classification.
    """
    if (
        "invalid_payload" in message
        or "Unexpected token" in message
        or "Failed to parse" in message
    ):
        return FacilitatorFailure.INVALID_PAYLOAD
    lowered = message.lower()
    if "insufficient" in lowered:
        return FacilitatorFailure.INSUFFICIENT_FUNDS
    if "timed out" in lowered or "timeout" in lowered:
        return FacilitatorFailure.TIMEOUT
    if "signature" in lowered:
        return FacilitatorFailure.INVALID_SIGNATURE
    return FacilitatorFailure.UNKNOWN


def classify_facilitator_error(error: BaseException) -> FacilitatorFailure:
    """
    Classify a facilitator failure.

    Order: exception type, machine-readable reason code, HTTP status, then
    the legacy message shim.

    Args:
        error: Exception raised by a FacilitatorClient

    Returns:
        FacilitatorFailure
    """
    if isinstance(error, FacilitatorResponseError):
        return FacilitatorFailure.INVALID_PAYLOAD
    if isinstance(error, FacilitatorTimeoutError):
        return FacilitatorFailure.TIMEOUT
    if isinstance(error, FacilitatorConnectionError):
        return FacilitatorFailure.NETWORK

    by_reason = _classify_reason_code(getattr(error, "reason", None))
    if by_reason is not None:
        return by_reason

    status_code = getattr(error, "status_code", None)
    if status_code in (401, 403):
        return FacilitatorFailure.AUTHENTICATION

    return _classify_legacy_message(str(error))


def should_fallback(error: BaseException) -> bool:
    return classify_facilitator_error(error) in FALLBACK_FAILURES


# --- Clients ---

class FacilitatorClient(ABC):
    """Remote verification/settlement service."""

    @abstractmethod
    def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        """Verify a payment. Raises VerifyError when the payment is rejected."""

    @abstractmethod
    def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
        """Settle a verified payment. Raises SettleError when settlement fails."""

    @abstractmethod
    def list_supported(self) -> SupportedResponse:
        """List the (version, scheme, network) kinds the facilitator handles."""


@dataclass(frozen=True)
class FacilitatorEndpoint:
    """Where a facilitator lives and how to authenticate against it."""
    url: str
    auth: Optional[AuthHeadersFactory] = None

    def __post_init__(self):
        object.__setattr__(self, "url", self.url.rstrip("/"))


class HTTPFacilitatorClient(FacilitatorClient):
    """
    FacilitatorClient speaking the x402 HTTP facilitator API.

    POST {url}/verify, POST {url}/settle, GET {url}/supported. Request bodies
    are built from the x402 SDK's wire models. Each call is a standalone
    requests call, so one client can serve the whole thread pool.

    A body that answers the question (`isValid` / `success` present) is read
    from the raw JSON before model validation: a rejection always raises
    VerifyError / SettleError with the facilitator's reason code, even when
    the rest of the body does not fit the response model.
    """

    def __init__(self, endpoint: FacilitatorEndpoint, timeout: float = 30.0):
        self.endpoint = endpoint
        self.timeout = timeout

    @property
    def url(self) -> str:
        return self.endpoint.url

    def _headers(self, operation: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.endpoint.auth is not None:
            headers.update(self.endpoint.auth().get(operation, {}))
        return headers

    def _request(self, method: str, operation: str, body: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = f"{self.endpoint.url}/{operation}"
        try:
            return requests.request(
                method,
                url,
                json=body,
                headers=self._headers(operation),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise FacilitatorTimeoutError(
                f"Facilitator {operation} timed out after {self.timeout}s: {e}",
                operation=operation,
            ) from e
        except requests.exceptions.RequestException as e:
            raise FacilitatorConnectionError(
                f"Facilitator {operation} request failed: {e}",
                operation=operation,
            ) from e

    @staticmethod
    def _parse_json(response: requests.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise FacilitatorResponseError(
                f"Failed to parse facilitator {operation} response ({response.status_code}): {e}",
                operation=operation,
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _payment_body(payload: PaymentPayload, requirements: PaymentRequirements) -> Dict[str, Any]:
        return {
            "x402Version": payload.x402_version,
            "paymentPayload": payload.to_wire(),
            "paymentRequirements": requirements.to_wire(),
        }

    @staticmethod
    def _validate(model, data: Dict[str, Any], operation: str, status_code: int):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise FacilitatorError(
                f"Facilitator {operation} response does not match the x402 schema: "
                f"{e.error_count()} error(s)",
                operation=operation,
                status_code=status_code,
            ) from e

    def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        response = self._request("POST", "verify", self._payment_body(payload, requirements))
        data = self._parse_json(response, "verify")

        if not isinstance(data, dict) or "isValid" not in data:
            raise FacilitatorError(
                f"Facilitator verify failed ({response.status_code}): {data}",
                operation="verify",
                status_code=response.status_code,
                reason=data.get("invalidReason") or data.get("error") if isinstance(data, dict) else None,
            )

        if not data["isValid"]:
            reason = data.get("invalidReason")
            raise VerifyError(
                f"Payment verification failed: {reason or 'unknown reason'}",
                operation="verify",
                status_code=response.status_code,
                reason=reason,
                reason_message=data.get("invalidMessage"),
                payer=data.get("payer"),
            )

        return self._validate(VerifyResponse, data, "verify", response.status_code)

    def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
        response = self._request("POST", "settle", self._payment_body(payload, requirements))
        data = self._parse_json(response, "settle")

        if not isinstance(data, dict) or "success" not in data:
            raise FacilitatorError(
                f"Facilitator settle failed ({response.status_code}): {data}",
                operation="settle",
                status_code=response.status_code,
                reason=data.get("errorReason") or data.get("error") if isinstance(data, dict) else None,
            )

        if not data["success"]:
            reason = data.get("errorReason")
            raise SettleError(
                f"Payment settlement failed: {reason or 'unknown reason'}",
                operation="settle",
                status_code=response.status_code,
                reason=reason,
                reason_message=data.get("errorMessage"),
                payer=data.get("payer"),
            )

        return self._validate(SettleResponse, data, "settle", response.status_code)

    def list_supported(self) -> SupportedResponse:
        response = self._request("GET", "supported")
        data = self._parse_json(response, "supported")

        if response.status_code >= 400:
            raise FacilitatorError(
                f"Facilitator supported failed ({response.status_code}): {data}",
                operation="supported",
                status_code=response.status_code,
            )

        return self._validate(SupportedResponse, data, "supported", response.status_code)


class ResilientFacilitatorClient(FacilitatorClient):
    """
    Primary facilitator with a fallback facilitator behind it.

    verify/settle: a primary failure classified as INVALID_PAYLOAD is retried
    once on the fallback with the same (already normalized) arguments; any
    other failure is raised as is. list_supported: any primary failure falls
    back.
    """

    def __init__(self, primary: FacilitatorClient, fallback: FacilitatorClient, fallback_url: str):
        self.primary = primary
        self.fallback = fallback
        self.fallback_url = fallback_url

    def _call_with_fallback(self, operation: str, payload: PaymentPayload, requirements: PaymentRequirements):
        try:
            return getattr(self.primary, operation)(payload, requirements)
        except Exception as error:
            failure = classify_facilitator_error(error)
            if failure not in FALLBACK_FAILURES:
                raise

            logger.warning(
                f"x402_{operation}_retry_with_fallback_facilitator: "
                f"fallback_url={self.fallback_url} reason={failure.value} "
                f"detail={getattr(error, 'reason', None) or error}"
            )
            try:
                return getattr(self.fallback, operation)(payload, requirements)
            except Exception as fallback_error:
                logger.error(
                    f"x402_{operation}_fallback_failed: fallback_url={self.fallback_url} "
                    f"primary_error={format_facilitator_error(error)} "
                    f"fallback_error={format_facilitator_error(fallback_error)}"
                )
                raise

    def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerifyResponse:
        return self._call_with_fallback("verify", payload, requirements)

    def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettleResponse:
        return self._call_with_fallback("settle", payload, requirements)

    def list_supported(self) -> SupportedResponse:
        try:
            return self.primary.list_supported()
        except Exception as error:
            logger.warning(
                f"x402_supported_retry_with_fallback_facilitator: "
                f"fallback_url={self.fallback_url} message={error}"
            )
            return self.fallback.list_supported()


def build_facilitator_client(facilitator_settings: FacilitatorSettings) -> FacilitatorClient:
    """
    Build the facilitator client from startup configuration.

    The primary endpoint carries CDP or bearer authentication when
    configured; the fallback is unauthenticated.
    """
    primary = HTTPFacilitatorClient(
        FacilitatorEndpoint(
            url=facilitator_settings.primary_url,
            auth=create_auth_headers_factory(
                facilitator_settings.primary_url,
                cdp_key_id=facilitator_settings.cdp_key_id,
                cdp_key_secret=facilitator_settings.cdp_key_secret,
                bearer_token=facilitator_settings.bearer_token,
            ),
        ),
        timeout=facilitator_settings.timeout_seconds,
    )

    if not facilitator_settings.enable_fallback or not facilitator_settings.fallback_url:
        return primary

    fallback = HTTPFacilitatorClient(
        FacilitatorEndpoint(url=facilitator_settings.fallback_url),
        timeout=facilitator_settings.timeout_seconds,
    )
    logger.info(
        f"Facilitator fallback enabled: {facilitator_settings.primary_url} -> "
        f"{facilitator_settings.fallback_url}"
    )
    return ResilientFacilitatorClient(primary, fallback, facilitator_settings.fallback_url)
