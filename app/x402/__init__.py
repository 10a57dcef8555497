# app/x402/__init__.py
"""
x402 Payment Protocol Integration Module.

This module implements the x402 payment protocol for the paid agent
services, gating each paid route behind a signed USDC payment.

Key components:
- canonical / signature / authorization: payload normalization (EIP-55
  addresses, integer strings, nonces, ERC-6492 signature unwrapping)
- facilitator: facilitator HTTP client and the primary/fallback wrapper
- auth: CDP JWT and bearer authentication for facilitator calls
- diagnostics / audit: redacted payment observers and the audit trail
- server: per-request payment lifecycle
- middleware: FastAPI middleware returning 402 and settling payments
- pricing: paid route table

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "1.2.0"
