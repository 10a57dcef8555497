# app/x402/assets.py
"""
Static network -> USDC asset registry and money price conversion.

Networks are CAIP-2 identifiers. The token name and version are the EIP-712
domain values the client has to sign against, so they travel with the price
in `extra`.

AssetAmount is the x402 SDK model: atomic amount, token contract and extras.
"""
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Dict, Optional

from x402.schemas import AssetAmount

USDC_DECIMALS = 6
DEFAULT_ASSET_NETWORK = "eip155:8453"

# USDC contract addresses and EIP-712 domains by network
USDC_ASSETS_BY_NETWORK: Dict[str, Dict[str, str]] = {
    "eip155:8453": {
        "asset": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "name": "USD Coin",
        "version": "2",
    },
    "eip155:84532": {
        "asset": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        "name": "USDC",
        "version": "2",
    },
}


def build_usdc_asset_amount(
    amount: str,
    network: str,
    asset_transfer_method: Optional[str] = None
) -> AssetAmount:
    """
    Build an explicit USDC price for a network.

    Unknown networks fall back to the Base mainnet entry.

    Args:
        amount: Atomic USDC units (6 decimals)
        network: CAIP-2 network identifier
        asset_transfer_method: "eip3009" or "permit2", if the route pins one

    Returns:
        AssetAmount with the token address and EIP-712 domain in `extra`
    """
    asset_info = USDC_ASSETS_BY_NETWORK.get(network, USDC_ASSETS_BY_NETWORK[DEFAULT_ASSET_NETWORK])
    extra = {
        "name": asset_info["name"],
        "version": asset_info["version"],
    }
    if asset_transfer_method:
        extra["assetTransferMethod"] = asset_transfer_method

    return AssetAmount(amount=amount, asset=asset_info["asset"], extra=extra)


def parse_money_price(price: str, decimals: int = USDC_DECIMALS) -> str:
    """
    Convert a money string such as "$0.25" into atomic token units.

    Args:
        price: Dollar amount, with or without "$" and thousands separators
        decimals: Token decimals (USDC has 6)

    Returns:
        Atomic amount as a base-10 string, rounded down

    Raises:
        ValueError: If the price is not a non-negative number
    """
    cleaned = price.strip().lstrip("$").replace(",", "").strip()
    try:
        dollars = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Invalid money price: {price!r}")
    if not dollars.is_finite() or dollars < 0:
        raise ValueError(f"Invalid money price: {price!r}")

    atomic = (dollars * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return str(int(atomic))
