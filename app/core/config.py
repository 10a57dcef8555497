# app/core/config.py
from dataclasses import dataclass
from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache
from dotenv import load_dotenv

from app.x402.auth import parse_legacy_cdp_api_key

# Load .env file if it exists
load_dotenv()

MAINNET_NETWORK = "eip155:8453"
TESTNET_NETWORK = "eip155:84532"
CDP_FACILITATOR_URL = "https://api.cdp.coinbase.com/platform/v2/x402"
PUBLIC_FACILITATOR_URL = "https://www.x402.org/facilitator"


class Settings(BaseSettings):
    PROJECT_NAME: str = "Rook Monetized Services"
    SERVICE_VERSION: str = "1.2.0"
    LOG_LEVEL: str = "INFO"

    # x402 payment gate
    X402_ENABLED: bool = True
    X402_PAY_TO_ADDRESS: Optional[str] = None
    X402_NETWORK: Optional[str] = None  # defaults from CDP credentials, see resolved_network()
    X402_ENABLE_CODE_REVIEW_PERMIT2: bool = False
    X402_AUDIT_LOG_PATH: Optional[str] = None
    PUBLIC_BASE_URL: Optional[str] = None

    # Facilitators
    X402_FACILITATOR_URL: Optional[str] = None
    CDP_FACILITATOR_URL: Optional[str] = None
    X402_FALLBACK_FACILITATOR_URL: str = PUBLIC_FACILITATOR_URL
    X402_ENABLE_FACILITATOR_FALLBACK: bool = True
    X402_FACILITATOR_TIMEOUT_SECONDS: float = 30.0
    X402_FACILITATOR_BEARER_TOKEN: Optional[str] = None

    # CDP credentials (preferred: ID + SECRET; CDP_API_KEY is the legacy single value)
    CDP_API_KEY_ID: Optional[str] = None
    CDP_API_KEY_NAME: Optional[str] = None
    CDP_API_KEY_SECRET: Optional[str] = None
    CDP_API_KEY: Optional[str] = None

    # Business handlers
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-5-mini"
    HYPERLIQUID_API_URL: str = "https://api.hyperliquid.xyz/info"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env
        frozen = True

    def cdp_credentials(self) -> tuple:
        """
        Resolve the CDP API key id and secret.

        Explicit CDP_API_KEY_ID/CDP_API_KEY_NAME and CDP_API_KEY_SECRET win over
        whatever can be parsed out of the legacy CDP_API_KEY value. Escaped
        newlines in the secret are expanded so PEM keys survive .env files.

        Returns:
            Tuple of (key_id, key_secret); either may be None
        """
        legacy_id, legacy_secret = parse_legacy_cdp_api_key(self.CDP_API_KEY)
        key_id = self.CDP_API_KEY_ID or self.CDP_API_KEY_NAME or legacy_id
        key_secret = self.CDP_API_KEY_SECRET or legacy_secret
        if key_secret:
            key_secret = key_secret.replace("\\n", "\n")
        return key_id, key_secret

    @property
    def has_cdp_auth(self) -> bool:
        key_id, key_secret = self.cdp_credentials()
        return bool(key_id and key_secret)

    def resolved_network(self) -> str:
        if self.X402_NETWORK:
            return self.X402_NETWORK
        return MAINNET_NETWORK if self.has_cdp_auth else TESTNET_NETWORK


def normalize_facilitator_url(raw_url: Optional[str]) -> Optional[str]:
    """Strip a single trailing slash so paths can be appended safely."""
    if not raw_url:
        return raw_url
    return raw_url[:-1] if raw_url.endswith("/") else raw_url


@dataclass(frozen=True)
class FacilitatorSettings:
    """
    Immutable facilitator wiring derived once from Settings at startup.
    """
    primary_url: str
    fallback_url: Optional[str]
    enable_fallback: bool
    timeout_seconds: float
    cdp_key_id: Optional[str] = None
    cdp_key_secret: Optional[str] = None
    bearer_token: Optional[str] = None


def build_facilitator_settings(settings: Settings) -> FacilitatorSettings:
    """
    Derive facilitator URLs and credentials from the application settings.

    The primary facilitator is CDP_FACILITATOR_URL, then X402_FACILITATOR_URL,
    then the CDP production facilitator when CDP credentials exist, and the
    public x402.org facilitator otherwise. The fallback is only enabled when
    it points somewhere other than the primary.
    """
    key_id, key_secret = settings.cdp_credentials()
    has_cdp_auth = bool(key_id and key_secret)

    primary_url = normalize_facilitator_url(
        settings.CDP_FACILITATOR_URL
        or settings.X402_FACILITATOR_URL
        or (CDP_FACILITATOR_URL if has_cdp_auth else PUBLIC_FACILITATOR_URL)
    )
    fallback_url = normalize_facilitator_url(settings.X402_FALLBACK_FACILITATOR_URL)
    enable_fallback = (
        settings.X402_ENABLE_FACILITATOR_FALLBACK
        and bool(fallback_url)
        and fallback_url != primary_url
    )

    return FacilitatorSettings(
        primary_url=primary_url,
        fallback_url=fallback_url if enable_fallback else None,
        enable_fallback=enable_fallback,
        timeout_seconds=settings.X402_FACILITATOR_TIMEOUT_SECONDS,
        cdp_key_id=key_id if has_cdp_auth else None,
        cdp_key_secret=key_secret if has_cdp_auth else None,
        bearer_token=settings.X402_FACILITATOR_BEARER_TOKEN,
    )


@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()
