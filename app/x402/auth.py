# app/x402/auth.py
"""
Authentication headers for facilitator calls.

A facilitator endpoint may carry a header factory. The factory is called once
per facilitator request and returns headers keyed by operation:
`verify`, `settle` and `supported`.

Two factories exist:
- StaticBearerAuth: the same bearer token on every call
- CdpJwtAuth: a short-lived JWT per call, scoped to the HTTP method, host and
  path of that operation, signed with the CDP API key by cdp-sdk
"""
import json
import logging
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

from cdp.auth.utils.jwt import JwtOptions, generate_jwt

logger = logging.getLogger(__name__)

OPERATIONS = {
    "verify": ("POST", "/verify"),
    "settle": ("POST", "/settle"),
    "supported": ("GET", "/supported"),
}

JWT_EXPIRY_SECONDS = 120
SDK_CORRELATION_CONTEXT = "sdk_language=python,source=x402-agent-services"


def parse_legacy_cdp_api_key(raw_value: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Extract a key id and secret from the legacy CDP_API_KEY value.

    Accepted shapes, tried in order:
    - JSON with apiKeyId/name/apiKeyName/keyId and apiKeySecret/privateKey/secret
    - two or more lines: first line is the id, the rest is the secret
    - "id:secret"

    Args:
        raw_value: Contents of CDP_API_KEY

    Returns:
        Tuple of (key_id, key_secret), (None, None) if nothing usable
    """
    if not raw_value:
        return None, None

    trimmed = raw_value.strip()

    try:
        parsed = json.loads(trimmed)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        key_id = parsed.get("apiKeyId") or parsed.get("name") or parsed.get("apiKeyName") or parsed.get("keyId")
        secret = parsed.get("apiKeySecret") or parsed.get("privateKey") or parsed.get("secret")
        if key_id and secret:
            return key_id, secret

    lines = [line.strip() for line in trimmed.splitlines() if line.strip()]
    if len(lines) >= 2:
        return lines[0], "\n".join(lines[1:])

    separator_index = trimmed.find(":")
    if separator_index > 0:
        return trimmed[:separator_index], trimmed[separator_index + 1:]

    return None, None


class StaticBearerAuth:
    """Sends one fixed bearer token with every facilitator call."""

    def __init__(self, token: str):
        self._token = token

    def __call__(self) -> Dict[str, Dict[str, str]]:
        header = {"Authorization": f"Bearer {self._token}"}
        return {operation: dict(header) for operation in OPERATIONS}


class CdpJwtAuth:
    """
    Signs a fresh CDP JWT for every facilitator call via cdp-sdk.

    Each token is bound to one request ("POST api.cdp.coinbase.com/platform/v2/x402/verify")
    and expires after JWT_EXPIRY_SECONDS. cdp-sdk picks ES256 for PEM EC
    secrets and EdDSA for base64 Ed25519 secrets.
    """

    def __init__(self, key_id: str, key_secret: str, base_url: str):
        if not key_id or not key_secret:
            raise ValueError("CDP JWT authentication needs both a key id and a key secret")
        self.key_id = key_id
        self._key_secret = key_secret
        parsed = urlparse(base_url)
        self._host = parsed.netloc
        self._base_path = parsed.path.rstrip("/")

    def jwt_options(self, method: str, path: str) -> JwtOptions:
        """
        Describe the request a token is scoped to.

        Args:
            method: HTTP method, e.g. "POST"
            path: Operation path appended to the base URL path, e.g. "/verify"

        Returns:
            JwtOptions for cdp-sdk's generate_jwt
        """
        return JwtOptions(
            api_key_id=self.key_id,
            api_key_secret=self._key_secret,
            request_method=method,
            request_host=self._host,
            request_path=f"{self._base_path}{path}",
            expires_in=JWT_EXPIRY_SECONDS,
        )

    def __call__(self) -> Dict[str, Dict[str, str]]:
        headers = {}
        for operation, (method, path) in OPERATIONS.items():
            token = generate_jwt(self.jwt_options(method, path))
            headers[operation] = {
                "Authorization": f"Bearer {token}",
                "Correlation-Context": SDK_CORRELATION_CONTEXT,
            }
        return headers


def create_auth_headers_factory(
    base_url: str,
    cdp_key_id: Optional[str] = None,
    cdp_key_secret: Optional[str] = None,
    bearer_token: Optional[str] = None,
):
    """
    Pick the header factory for a facilitator endpoint.

    CDP credentials win over a static bearer token. Returns None when the
    endpoint needs no authentication.
    """
    if cdp_key_id and cdp_key_secret:
        logger.info(f"Using CDP JWT authentication for facilitator {base_url}")
        return CdpJwtAuth(cdp_key_id, cdp_key_secret, base_url)
    if bearer_token:
        logger.info(f"Using static bearer authentication for facilitator {base_url}")
        return StaticBearerAuth(bearer_token)
    return None
