# app/api/models/services.py
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class TradingAnalysisRequest(BaseModel):
    """
    Input for the trading analysis endpoint.
    """
    model_config = ConfigDict(extra="ignore")

    symbol: Optional[str] = None
    timeframe: str = "1h"


class CodeReviewRequest(BaseModel):
    """
    Input for the code review endpoint.
    """
    model_config = ConfigDict(extra="ignore")

    code: Optional[str] = None
    language: str = "auto"


class MissingInputResponse(BaseModel):
    """
    Returned (with status 200) when a paid endpoint is called without its input.
    """
    ok: bool = False
    error: str
    hint: str
    bodyType: str


class PingResponse(BaseModel):
    status: str = "pong"
    timestamp: str
    uptime: float
    note: str = "x402 payment successful!"


class EndpointInfo(BaseModel):
    path: str
    price: str
    description: str
    method: str


class ServiceInfoResponse(BaseModel):
    """
    Response model for the free service info endpoint.
    """
    name: str
    description: str
    endpoints: List[EndpointInfo]
    wallet: str
    network: str
    version: str
    status: str


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    endpoints: List[Dict[str, Any]]
    wallet: str
    network: str
    x402Enabled: bool
