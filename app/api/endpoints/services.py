# app/api/endpoints/services.py
"""
Paid service endpoints.

Payment is enforced by X402Middleware before these handlers run; the
handlers only deal with their own input. Inputs are read from the JSON body
(whatever the Content-Type says) and fall back to the query string.
"""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from app.api.models.services import (
    CodeReviewRequest,
    MissingInputResponse,
    PingResponse,
    TradingAnalysisRequest,
)
from app.services.code_review import get_code_review
from app.services.trading_analysis import get_trading_analysis

logger = logging.getLogger(__name__)

router = APIRouter()

_STARTED_AT = time.monotonic()


async def read_request_input(request: Request) -> Tuple[Dict[str, Any], str]:
    """
    Merge the request body and query string into one input dict.

    Body values win over query values. A body that is not a JSON object is
    ignored.

    Returns:
        Tuple of (input dict, body type: "empty", "object" or "string")
    """
    raw = await request.body()
    body: Dict[str, Any] = {}
    body_type = "empty"
    if raw.strip():
        body_type = "string"
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            body = parsed
            body_type = "object"

    merged = dict(request.query_params)
    merged.update({key: value for key, value in body.items() if value not in (None, "")})
    return merged, body_type


@router.get("/ping", response_model=PingResponse)
async def ping() -> PingResponse:
    """
    Cheapest paid endpoint, used to test x402 payments end to end.
    """
    return PingResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime=time.monotonic() - _STARTED_AT,
    )


@router.post("/trading-analysis")
async def trading_analysis(request: Request):
    """
    Real-time trading analysis for a HyperLiquid perpetual.

    Returns:
        The analysis dict, or MissingInputResponse when no symbol was sent
    """
    data, body_type = await read_request_input(request)
    try:
        params = TradingAnalysisRequest.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Invalid input: {e}")
        raise HTTPException(status_code=422, detail=f"Invalid input: {e.error_count()} validation error(s)")

    if not params.symbol:
        return MissingInputResponse(
            error="Symbol is required",
            hint='Send JSON body with {"symbol":"BTC","timeframe":"1h"} or ?symbol=BTC',
            bodyType=body_type,
        )

    settings = request.app.state.settings
    logger.info(f"Trading analysis requested for {params.symbol} ({params.timeframe})")
    return await run_in_threadpool(
        get_trading_analysis,
        params.symbol,
        params.timeframe,
        settings.HYPERLIQUID_API_URL,
    )


@router.post("/code-review")
async def code_review(request: Request):
    """
    LLM code review of a snippet.

    Returns:
        The review dict, or MissingInputResponse when no code was sent
    """
    data, body_type = await read_request_input(request)
    try:
        params = CodeReviewRequest.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Invalid input: {e}")
        raise HTTPException(status_code=422, detail=f"Invalid input: {e.error_count()} validation error(s)")

    if not params.code:
        return MissingInputResponse(
            error="Code is required",
            hint='Send JSON body with {"code":"...","language":"javascript"} or ?code=...',
            bodyType=body_type,
        )

    settings = request.app.state.settings
    logger.info(f"Code review requested ({params.language}, {len(params.code)} chars)")
    return await run_in_threadpool(
        get_code_review,
        params.code,
        params.language,
        api_key=settings.OPENAI_API_KEY,
        model=settings.OPENAI_MODEL,
    )
