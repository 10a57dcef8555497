# app/services/trading_analysis.py
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List

import requests
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)

DEFAULT_HYPERLIQUID_API_URL = "https://api.hyperliquid.xyz/info"

INTERVAL_MS = {
    "1h": 3_600_000,
    "4h": 14_400_000,
}
DEFAULT_INTERVAL_MS = 86_400_000
CANDLE_LOOKBACK = 50
MIN_CANDLES = 20
EMA_PERIOD = 20
TREND_THRESHOLD_PERCENT = 2


def calculate_ema(prices: List[float], period: int) -> float:
    """
    Exponential moving average seeded with the first price.

    Args:
        prices: Prices, oldest first (must not be empty)
        period: EMA period

    Returns:
        The EMA after the last price
    """
    multiplier = 2 / (period + 1)
    ema = prices[0]
    for price in prices[1:]:
        ema = (price - ema) * multiplier + ema
    return ema


def to_hyperliquid_coin(symbol: str) -> str:
    """Strip exchange suffixes, e.g. "BTC-PERP" -> "BTC"."""
    return symbol.replace("-PERP-INTX", "").replace("-PERP", "").replace("-USD", "")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _post_info(api_url: str, body: Dict[str, Any]) -> Any:
    response = requests.post(api_url, json=body, timeout=10)
    response.raise_for_status()
    return response.json()


def _classify_trend(mark_price: float, support: float, resistance: float, price_vs_ema: float):
    if price_vs_ema > TREND_THRESHOLD_PERCENT:
        recommendation = "Consider long on pullback" if mark_price > resistance * 0.98 else "Wait for breakout"
        return "bullish", recommendation
    if price_vs_ema < -TREND_THRESHOLD_PERCENT:
        recommendation = "Consider short on bounce" if mark_price < support * 1.02 else "Wait for breakdown"
        return "bearish", recommendation
    return "neutral", "Wait"


def get_trading_analysis(
    symbol: str,
    timeframe: str = "1h",
    api_url: str = DEFAULT_HYPERLIQUID_API_URL
) -> Dict[str, Any]:
    """
    Builds a technical snapshot of a HyperLiquid perpetual.

    Fetches the market context (mark price, funding, open interest, volume)
    and the last 50 candles, then derives EMA20, 20-candle support and
    resistance, the trend relative to EMA20 and a recommendation.

    Args:
        symbol: Coin or pair, e.g. "BTC" or "ETH-PERP"
        timeframe: Candle interval ("1h", "4h", anything else is daily)
        api_url: HyperLiquid info endpoint

    Returns:
        Analysis dict. Failures are reported in an `error` field rather than
        raised.
    """
    try:
        coin = to_hyperliquid_coin(symbol)

        meta, contexts = _post_info(api_url, {"type": "metaAndAssetCtxs"})
        names = [asset.get("name") for asset in meta.get("universe", [])]
        if coin not in names:
            return {"error": f"Symbol {symbol} not found on HyperLiquid"}

        ctx = contexts[names.index(coin)]
        mark_price = float(ctx["markPx"])
        funding = float(ctx["funding"])
        open_interest = float(ctx["openInterest"])
        volume_24h = float(ctx["dayNtlVlm"])

        now_ms = int(time.time() * 1000)
        interval_ms = INTERVAL_MS.get(timeframe, DEFAULT_INTERVAL_MS)
        candles = _post_info(api_url, {
            "type": "candleSnapshot",
            "req": {
                "coin": coin,
                "interval": timeframe,
                "startTime": now_ms - interval_ms * CANDLE_LOOKBACK,
                "endTime": now_ms,
            },
        })

        if not candles or len(candles) < MIN_CANDLES:
            return {
                "symbol": symbol,
                "timeframe": timeframe,
                "error": "Insufficient candle data",
                "currentPrice": mark_price,
                "fundingRate": funding,
                "openInterest": open_interest,
                "volume24h": volume_24h,
            }

        closes = [float(candle["c"]) for candle in candles]
        ema20 = calculate_ema(closes, EMA_PERIOD)

        support = min(float(candle["l"]) for candle in candles[-MIN_CANDLES:])
        resistance = max(float(candle["h"]) for candle in candles[-MIN_CANDLES:])

        price_vs_ema = (mark_price - ema20) / ema20 * 100
        trend, recommendation = _classify_trend(mark_price, support, resistance, price_vs_ema)

        confidence = min(0.95, 0.5 + len(candles) / 100)

        return {
            "symbol": symbol,
            "timeframe": timeframe,
            "currentPrice": mark_price,
            "ema20": ema20,
            "priceVsEMA": f"{price_vs_ema:.2f}",
            "support": f"{support:.2f}",
            "resistance": f"{resistance:.2f}",
            "trend": trend,
            "recommendation": recommendation,
            "confidence": f"{confidence:.2f}",
            "fundingRate": f"{funding * 100:.4f}",
            "openInterest": f"{open_interest:.2f}",
            "volume24h": f"{volume_24h:.0f}",
            "dataSource": "HyperLiquid",
            "timestamp": _utc_timestamp(),
        }

    except RequestException as e:
        logger.error(f"Error fetching HyperLiquid data for {symbol}: {e}")
        return {"symbol": symbol, "timeframe": timeframe, "error": str(e), "timestamp": _utc_timestamp()}
    except (ValueError, KeyError, TypeError, IndexError, AttributeError, ZeroDivisionError) as e:
        logger.error(f"Unexpected HyperLiquid response for {symbol}: {e}")
        return {"symbol": symbol, "timeframe": timeframe, "error": str(e), "timestamp": _utc_timestamp()}
