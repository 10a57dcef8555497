# app/x402/pricing.py
"""
Route pricing for x402 payment responses.

Each paid route maps "METHOD /path" to a RouteConfig holding the payment
options it accepts, in preference order:
- GET /api/ping: $0.01
- POST /api/trading-analysis: $0.25
- POST /api/code-review: 500000 atomic USDC ($0.50) via EIP-3009, with an
  optional Permit2 option in front of it

Money prices ("$0.25") are resolved against the USDC registry in
app.x402.assets for the configured network.

Configuration is loaded from app/core/config.py:
- X402_PAY_TO_ADDRESS: Wallet receiving payments
- X402_NETWORK: CAIP-2 network (defaults from CDP credentials)
- X402_ENABLE_CODE_REVIEW_PERMIT2: Offer Permit2 for code review
- PUBLIC_BASE_URL: Base URL used in the `resource` of each route
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from app.core.config import Settings
from app.x402.assets import USDC_DECIMALS, build_usdc_asset_amount
from app.x402.types import PaymentRequirements

logger = logging.getLogger(__name__)

DEFAULT_PAY_TO_ADDRESS = "0x57CE15395828cB06Dcd514918df0d8D86F815011"
DEFAULT_PUBLIC_BASE_URL = "https://rook-monetized-services.onrender.com"

PING_PRICE = "$0.01"
TRADING_ANALYSIS_PRICE = "$0.25"
CODE_REVIEW_AMOUNT = "500000"  # $0.50 in USDC atomic units


@dataclass(frozen=True)
class RouteConfig:
    """Payment options and 402 metadata for one paid route."""
    accepts: Tuple[PaymentRequirements, ...]
    description: str
    resource: str
    mime_type: str = "application/json"

    def resource_info(self) -> Dict[str, str]:
        return {
            "url": self.resource,
            "description": self.description,
            "mimeType": self.mime_type,
        }


def format_usd(amount: str, decimals: int = USDC_DECIMALS) -> str:
    """Render atomic USDC units as a dollar string, e.g. "500000" -> "$0.50"."""
    value = int(amount) / (10 ** decimals)
    return f"${value:.2f}"


def build_routes(settings: Settings) -> Dict[str, RouteConfig]:
    """
    Build the paid route table.

    Args:
        settings: Application settings

    Returns:
        Dict mapping "METHOD /path" to RouteConfig
    """
    pay_to = settings.X402_PAY_TO_ADDRESS or DEFAULT_PAY_TO_ADDRESS
    network = settings.resolved_network()
    base_url = (settings.PUBLIC_BASE_URL or DEFAULT_PUBLIC_BASE_URL).rstrip("/")

    code_review_accepts: List[PaymentRequirements] = [
        PaymentRequirements(
            pay_to=pay_to,
            price=build_usdc_asset_amount(CODE_REVIEW_AMOUNT, network, "eip3009"),
            network=network,
            max_timeout_seconds=300,
        ),
    ]
    if settings.X402_ENABLE_CODE_REVIEW_PERMIT2:
        code_review_accepts.insert(0, PaymentRequirements(
            pay_to=pay_to,
            price=build_usdc_asset_amount(CODE_REVIEW_AMOUNT, network, "permit2"),
            network=network,
            max_timeout_seconds=300,
        ))

    routes = {
        "GET /api/ping": RouteConfig(
            accepts=(
                PaymentRequirements(
                    pay_to=pay_to,
                    price=PING_PRICE,
                    network=network,
                    max_timeout_seconds=120,
                ),
            ),
            description="Simple health check that returns server status. Cheapest way to test x402 payments.",
            resource=f"{base_url}/api/ping",
        ),
        "POST /api/code-review": RouteConfig(
            accepts=tuple(code_review_accepts),
            description=(
                "AI-powered code review. Finds bugs, security issues, performance problems, "
                "and best practice violations."
            ),
            resource=f"{base_url}/api/code-review",
        ),
        "POST /api/trading-analysis": RouteConfig(
            accepts=(
                PaymentRequirements(
                    pay_to=pay_to,
                    price=TRADING_ANALYSIS_PRICE,
                    network=network,
                    max_timeout_seconds=180,
                ),
            ),
            description=(
                "Get real-time trading analysis for any crypto pair on HyperLiquid. "
                "Returns EMA20, support/resistance, trend, and funding rate."
            ),
            resource=f"{base_url}/api/trading-analysis",
        ),
    }

    logger.info(
        f"x402 routes configured on {network}: "
        f"code-review transfer method "
        f"{'permit2 + eip3009' if settings.X402_ENABLE_CODE_REVIEW_PERMIT2 else 'eip3009 only'}"
    )
    return routes


def find_route(routes: Dict[str, RouteConfig], method: str, path: str) -> Optional[RouteConfig]:
    """Look up the paid route for a request, ignoring a trailing slash."""
    normalized_path = path.rstrip("/") or "/"
    return routes.get(f"{method.upper()} {normalized_path}")
