"""Incoming authentication - Cloudflare Access JWT verification.

Verifies the assertion Access attaches to each proxied request against
the team's published signing keys.
"""

from cloudflare_gate.access.keys import CachedKey, KeyCache, certs_url, team_issuer
from cloudflare_gate.access.verifier import (
    AccessIdentity,
    AccessVerifier,
    VerificationResult,
    create_access_verifier,
    verify_token,
)

__all__ = [
    "AccessIdentity",
    "AccessVerifier",
    "CachedKey",
    "KeyCache",
    "VerificationResult",
    "certs_url",
    "create_access_verifier",
    "team_issuer",
    "verify_token",
]
