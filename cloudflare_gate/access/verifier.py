"""Cloudflare Access JWT verification.

Access signs an assertion for every proxied request and forwards it in the
``Cf-Access-Jwt-Assertion`` header.  Only ``RS256`` and ``ES256`` tokens
are accepted, and the algorithm named in the token header must match the
algorithm of the key it resolves to.

:func:`verify_token` reports a :class:`VerificationResult` so the failure
reason stays inspectable; :class:`AccessVerifier` collapses that to an
identity or ``None`` and never raises.

Usage::

    verifier = create_access_verifier("myteam", audience="aud-tag")
    identity = await verifier.verify(token)
    if identity is not None:
        print(identity.email)
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import jwt
from jwt.utils import base64url_decode

from cloudflare_gate.access.keys import KeyCache, certs_url, team_issuer
from cloudflare_gate.constants import DEFAULT_CLOCK_SKEW, SUPPORTED_ALGORITHMS
from cloudflare_gate.errors import (
    ClaimsError,
    MalformedTokenError,
    SignatureError,
    UnsupportedAlgorithmError,
    VerificationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessIdentity:
    """The verified identity asserted by Cloudflare Access."""

    email: str


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one verification: an identity, or the reason there is none."""

    identity: Optional[AccessIdentity] = None
    error: Optional[VerificationError] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.identity is not None

    @property
    def reason(self) -> str:
        return str(self.error) if self.error is not None else ""


async def verify_token(
    token: str,
    cache: KeyCache,
    team_domain: str,
    audience: Optional[str] = None,
    *,
    leeway: float = DEFAULT_CLOCK_SKEW,
    now: Optional[float] = None,
) -> VerificationResult:
    """Verify *token* against *cache* for *team_domain*.

    Never raises: every failure is returned as a result carrying the
    :class:`VerificationError` that ended verification.
    """
    try:
        claims = await _verify(token, cache, team_domain, audience, leeway, now)
        email = claims.get("email") or claims.get("sub")
        if not isinstance(email, str) or not email:
            raise ClaimsError("Token carries neither an email nor a subject")
    except VerificationError as exc:
        return VerificationResult(error=exc)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Unexpected error verifying Access token", exc_info=True)
        return VerificationResult(error=VerificationError(f"Unexpected error: {exc}"))
    return VerificationResult(identity=AccessIdentity(email=email), claims=claims)


async def _verify(
    token: str,
    cache: KeyCache,
    team_domain: str,
    audience: Optional[str],
    leeway: float,
    now: Optional[float],
) -> Dict[str, Any]:
    header, payload, signing_input, signature = _split_token(token)

    alg = header.get("alg")
    if alg not in SUPPORTED_ALGORITHMS:
        raise UnsupportedAlgorithmError(f"Unsupported algorithm: {alg!r}")

    kid = header.get("kid")
    if not isinstance(kid, str) or not kid:
        raise MalformedTokenError("Token header has no key id")

    cached = await cache.resolve(kid)
    if cached.algorithm != alg:
        raise SignatureError(
            f"Token algorithm {alg} does not match key {kid} ({cached.algorithm})"
        )
    if not cached.key.Algorithm.verify(signing_input, cached.key.key, signature):
        raise SignatureError("Signature verification failed")

    _check_claims(payload, team_issuer(team_domain), audience, leeway, now)
    return payload


def _split_token(token: str) -> Tuple[Dict[str, Any], Dict[str, Any], bytes, bytes]:
    """Split a compact JWT into header, payload, signing input and signature."""
    if not isinstance(token, str):
        raise MalformedTokenError("Token is not a string")
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedTokenError(f"Expected 3 token segments, got {len(parts)}")

    header_seg, payload_seg, signature_seg = parts
    try:
        header = json.loads(base64url_decode(header_seg))
        payload = json.loads(base64url_decode(payload_seg))
        signature = base64url_decode(signature_seg)
    except ValueError as exc:
        raise MalformedTokenError(f"Invalid token encoding: {exc}") from exc

    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise MalformedTokenError("Token header and payload must be JSON objects")

    signing_input = f"{header_seg}.{payload_seg}".encode("ascii", errors="replace")
    return header, payload, signing_input, signature


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_claims(
    payload: Dict[str, Any],
    issuer: str,
    audience: Optional[str],
    leeway: float,
    now: Optional[float],
) -> None:
    current = time.time() if now is None else now

    if payload.get("iss") != issuer:
        raise ClaimsError(f"Unexpected issuer: {payload.get('iss')!r}")

    exp = payload.get("exp")
    if not _is_number(exp):
        raise ClaimsError("Token has no numeric exp claim")
    if exp + leeway <= current:
        raise ClaimsError("Token has expired")

    nbf = payload.get("nbf")
    if nbf is not None:
        if not _is_number(nbf):
            raise ClaimsError("Token nbf claim is not numeric")
        if nbf - leeway > current:
            raise ClaimsError("Token is not yet valid")

    if audience:
        aud = payload.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if audience not in audiences:
            raise ClaimsError(f"Token audience {aud!r} does not include {audience!r}")


class AccessVerifier:
    """Verifies Access tokens for one team domain and optional audience.

    Holds the :class:`KeyCache` as its only state across calls.
    """

    def __init__(
        self,
        team_domain: str,
        audience: Optional[str] = None,
        *,
        cache: Optional[KeyCache] = None,
        leeway: float = DEFAULT_CLOCK_SKEW,
    ) -> None:
        self._team_domain = team_domain
        self._audience = audience or None
        self._cache = cache or KeyCache(certs_url(team_domain))
        self._leeway = leeway

    @property
    def team_domain(self) -> str:
        return self._team_domain

    @property
    def audience(self) -> Optional[str]:
        return self._audience

    @property
    def issuer(self) -> str:
        return team_issuer(self._team_domain)

    @property
    def cache(self) -> KeyCache:
        return self._cache

    async def verify(self, token: str) -> Optional[AccessIdentity]:
        """Return the identity asserted by *token*, or ``None``."""
        result = await verify_token(
            token,
            self._cache,
            self._team_domain,
            self._audience,
            leeway=self._leeway,
        )
        if not result.ok:
            logger.debug("Access token rejected: %s", result.reason)
        return result.identity

    async def close(self) -> None:
        await self._cache.close()


def create_access_verifier(
    team_domain: str,
    audience: Optional[str] = None,
    **kwargs: Any,
) -> AccessVerifier:
    """Build an :class:`AccessVerifier` for *team_domain*."""
    return AccessVerifier(team_domain, audience, **kwargs)
