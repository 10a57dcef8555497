# app/x402/middleware.py
"""
FastAPI middleware for x402 payment verification.

This module provides HTTP middleware that:
1. Intercepts requests to paid routes
2. Returns 402 Payment Required (body + PAYMENT-REQUIRED header) when no
   payment is attached
3. Decodes PAYMENT-SIGNATURE (v2) or X-PAYMENT (v1) headers
4. Normalizes and verifies the payment via the facilitator
5. Runs the handler, then settles the payment
6. Attaches PAYMENT-RESPONSE / X-PAYMENT-RESPONSE to the paid response

Facilitator calls are blocking and run in the thread pool.
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from fastapi import Request, Response
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from x402.http import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    safe_base64_decode,
    safe_base64_encode,
)

from app.core.config import Settings
from app.x402.facilitator import FacilitatorError, VerifyError
from app.x402.pricing import RouteConfig, find_route
from app.x402.server import PaymentProcessor, PaymentSession
from app.x402.types import (
    X402_VERSION,
    PayloadKind,
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
)

logger = logging.getLogger(__name__)

# Transfer method implied by the payload variant when the client does not say
_KIND_TRANSFER_METHODS = {
    PayloadKind.AUTHORIZATION: "eip3009",
    PayloadKind.PERMIT2: "permit2",
}


def encode_header_json(data: Dict[str, Any]) -> str:
    """Encode a dict as base64 JSON for an x402 header."""
    return safe_base64_encode(json.dumps(data, separators=(",", ":")))


def decode_payment_header(header_value: str) -> Optional[PaymentPayload]:
    """
    Decode a PAYMENT-SIGNATURE / X-PAYMENT header into a PaymentPayload.

    Args:
        header_value: Base64-encoded payment payload

    Returns:
        PaymentPayload if successfully decoded, None otherwise
    """
    try:
        # safe_base64_decode returns str, not bytes
        payload_dict = json.loads(safe_base64_decode(header_value.strip()))
    except ValueError as e:
        logger.warning(f"Failed to decode payment header: {e}")
        return None

    if not isinstance(payload_dict, dict):
        logger.warning("Failed to decode payment header: not a JSON object")
        return None

    try:
        return PaymentPayload.model_validate(payload_dict)
    except ValidationError as e:
        logger.warning(f"Failed to validate payment header: {e.error_count()} error(s): {e.errors()[0]['msg']}")
        return None


def select_requirements(
    accepts: Sequence[PaymentRequirements],
    payload: PaymentPayload
) -> Optional[PaymentRequirements]:
    """
    Pick the route option the payment was made against.

    Matches on scheme and network from the payload's `accepted` block, then
    on the asset transfer method (stated by the client, or implied by the
    payload variant).

    Returns:
        The matching PaymentRequirements, or None
    """
    scheme = payload.accepted_scheme
    network = payload.accepted_network
    method = payload.accepted_asset_transfer_method or _KIND_TRANSFER_METHODS.get(payload.kind)

    for requirements in accepts:
        if scheme and requirements.scheme != scheme:
            continue
        if network and requirements.network != network:
            continue
        required_method = requirements.asset_transfer_method
        if method and required_method and required_method != method:
            continue
        return requirements
    return None


def create_402_response(
    route: RouteConfig,
    error_message: str = "Payment required",
    accepts: Optional[List[PaymentRequirements]] = None
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    Args:
        route: The paid route
        error_message: Error message for the response
        accepts: Requirements to echo (defaults to all route options)

    Returns:
        JSONResponse with 402 status, body and PAYMENT-REQUIRED header
    """
    options = accepts if accepts is not None else list(route.accepts)
    response_body = {
        "x402Version": X402_VERSION,
        "error": error_message,
        "resource": route.resource_info(),
        "accepts": [requirements.to_wire() for requirements in options],
    }

    return JSONResponse(
        status_code=402,
        content=response_body,
        headers={PAYMENT_REQUIRED_HEADER: encode_header_json(response_body)}
    )


def encode_payment_response(settle_response: SettleResponse) -> str:
    """Encode a settlement response for the PAYMENT-RESPONSE header."""
    return encode_header_json(settle_response.model_dump(by_alias=True, exclude_none=True))


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment verification middleware for FastAPI.

    When X402_ENABLED=true, this middleware:
    - Checks whether the route is paid
    - Returns HTTP 402 with payment requirements if no valid payment
    - Verifies the payment before the handler runs
    - Settles the payment after a successful handler response

    When X402_ENABLED=false, all requests pass through unchanged.
    """

    def __init__(
        self,
        app,
        routes: Dict[str, RouteConfig],
        processor: PaymentProcessor,
        settings: Settings
    ):
        super().__init__(app)
        self.routes = routes
        self.processor = processor
        self.settings = settings

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not self.settings.X402_ENABLED:
            return await call_next(request)

        route = find_route(self.routes, request.method, request.url.path)
        if route is None:
            return await call_next(request)

        try:
            return await self._process_paid_request(request, call_next, route)
        except Exception as e:
            logger.exception(f"x402: Payment middleware error on {request.method} {request.url.path}: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": "Payment middleware error", "details": str(e) or "Unknown error"}
            )

    async def _process_paid_request(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
        route: RouteConfig
    ) -> Response:
        logger.info(f"x402: Processing paid request: {request.method} {request.url.path}")

        payment_header = (
            request.headers.get(PAYMENT_SIGNATURE_HEADER)
            or request.headers.get(X_PAYMENT_HEADER)
        )
        if not payment_header:
            logger.info(f"x402: No payment header, returning 402 for {route.resource}")
            return create_402_response(route, error_message="Payment required")

        payment_payload = decode_payment_header(payment_header)
        if payment_payload is None:
            return create_402_response(route, error_message="Invalid payment header")

        requirements = select_requirements(route.accepts, payment_payload)
        if requirements is None:
            logger.warning(
                f"x402: No matching payment option for scheme={payment_payload.accepted_scheme} "
                f"network={payment_payload.accepted_network}"
            )
            return create_402_response(route, error_message="No matching payment requirements")

        session = PaymentSession(payment_payload, requirements)

        try:
            await run_in_threadpool(self.processor.verify, session)
        except VerifyError as e:
            logger.warning(f"x402: Payment verification failed: {e.reason or e}")
            return create_402_response(
                route,
                error_message=f"Payment verification failed: {e.reason or 'Unknown reason'}",
                accepts=[requirements],
            )
        except FacilitatorError as e:
            logger.error(f"x402: Facilitator verification failed: {e}")
            return JSONResponse(
                status_code=502,
                content={"error": "Payment verification failed", "detail": str(e)}
            )

        session.start_handler()
        response = await call_next(request)
        session.finish_handler()

        if response.status_code >= 400:
            logger.info(f"x402: Handler returned {response.status_code}, payment not settled")
            return response

        try:
            settle_response = await run_in_threadpool(self.processor.settle, session)
        except FacilitatorError as e:
            logger.error(f"x402: Payment settlement failed: {e}")
            return create_402_response(
                route,
                error_message="Settlement failed",
                accepts=[requirements],
            )

        body = b""
        async for chunk in response.body_iterator:
            body += chunk

        new_response = Response(
            content=body,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type
        )
        encoded_response = encode_payment_response(settle_response)
        new_response.headers[PAYMENT_RESPONSE_HEADER] = encoded_response
        new_response.headers[X_PAYMENT_RESPONSE_HEADER] = encoded_response

        return new_response
