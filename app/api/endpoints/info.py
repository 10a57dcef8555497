# app/api/endpoints/info.py
from fastapi import APIRouter, Request
import logging

from app.api.models.services import EndpointInfo, HealthResponse, ServiceInfoResponse
from app.x402.pricing import DEFAULT_PAY_TO_ADDRESS, format_usd

logger = logging.getLogger(__name__)

router = APIRouter()


def describe_endpoints(request: Request) -> list:
    """List the paid routes with their cheapest price."""
    endpoints = []
    for key, route in request.app.state.routes.items():
        method, path = key.split(" ", 1)
        amount = min(int(requirements.amount) for requirements in route.accepts)
        endpoints.append(EndpointInfo(
            path=path,
            price=format_usd(str(amount)),
            description=route.description,
            method=method,
        ))
    return endpoints


@router.get("/", response_model=ServiceInfoResponse)
async def read_root(request: Request) -> ServiceInfoResponse:
    """
    Service info. Free, no payment required.
    """
    settings = request.app.state.settings
    logger.info("Root endpoint '/' accessed.")
    return ServiceInfoResponse(
        name=settings.PROJECT_NAME,
        description="AI-powered services for agents and developers",
        endpoints=describe_endpoints(request),
        wallet=settings.X402_PAY_TO_ADDRESS or DEFAULT_PAY_TO_ADDRESS,
        network=settings.resolved_network(),
        version=settings.SERVICE_VERSION,
        status="Trading analysis + Code review live!",
    )


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """ Basic health check endpoint. """
    settings = request.app.state.settings
    return HealthResponse(
        service=settings.PROJECT_NAME,
        endpoints=[endpoint.model_dump() for endpoint in describe_endpoints(request)],
        wallet=settings.X402_PAY_TO_ADDRESS or DEFAULT_PAY_TO_ADDRESS,
        network=settings.resolved_network(),
        x402Enabled=settings.X402_ENABLED,
    )
