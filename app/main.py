# app/main.py
from typing import Optional

from fastapi import FastAPI
import logging

from app.core.config import Settings, build_facilitator_settings, get_settings
from app.api.endpoints import info, services
from app.x402.audit import AuditLogHooks
from app.x402.diagnostics import CompositeDiagnosticsHooks, DiagnosticsHooks, LoggingDiagnosticsHooks
from app.x402.facilitator import FacilitatorClient, build_facilitator_client
from app.x402.middleware import X402Middleware
from app.x402.pricing import build_routes
from app.x402.server import PaymentProcessor

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_diagnostics_hooks(settings: Settings) -> DiagnosticsHooks:
    """Log every payment event; also write the audit trail when a path is configured."""
    hooks = [LoggingDiagnosticsHooks()]
    if settings.X402_AUDIT_LOG_PATH:
        hooks.append(AuditLogHooks(settings.X402_AUDIT_LOG_PATH))
    return CompositeDiagnosticsHooks(*hooks)


def create_app(
    settings: Optional[Settings] = None,
    facilitator: Optional[FacilitatorClient] = None,
    hooks: Optional[DiagnosticsHooks] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings (defaults to get_settings())
        facilitator: Facilitator client (defaults to one built from settings)
        hooks: Payment diagnostics observer (defaults to logging + audit log)

    Returns:
        Configured FastAPI app
    """
    settings = settings or get_settings()
    logging.getLogger().setLevel(settings.LOG_LEVEL.upper())

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.SERVICE_VERSION)

    routes = build_routes(settings)
    app.state.settings = settings
    app.state.routes = routes

    # Free routes at the root, paid services under /api
    app.include_router(info.router, tags=["default"])
    app.include_router(services.router, prefix="/api", tags=["services"])

    if settings.X402_ENABLED:
        if facilitator is None:
            facilitator_settings = build_facilitator_settings(settings)
            facilitator = build_facilitator_client(facilitator_settings)
            logger.info(f"Facilitator: {facilitator_settings.primary_url}")
            if settings.CDP_API_KEY and not settings.has_cdp_auth:
                logger.warning(
                    "CDP_API_KEY is set but could not be parsed; "
                    "set CDP_API_KEY_ID + CDP_API_KEY_SECRET for CDP facilitator auth."
                )
        processor = PaymentProcessor(facilitator, hooks or build_diagnostics_hooks(settings))
        app.add_middleware(X402Middleware, routes=routes, processor=processor, settings=settings)
        logger.info(f"x402 payments enabled on {settings.resolved_network()}")
    else:
        logger.warning("x402 payments disabled: paid routes are served for free")

    return app


if __name__ == "__main__":
    import uvicorn

    # Also runnable as: uvicorn app.main:create_app --factory
    uvicorn.run(create_app(), host="0.0.0.0", port=3000)
