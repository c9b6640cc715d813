"""Signing key cache for Cloudflare Access.

Keys are fetched from the team's certs endpoint
(``https://<team>.cloudflareaccess.com/cdn-cgi/access/certs``) and held
in memory, keyed by ``kid``.  Three timers govern network traffic:

* the key set is refetched when it is older than ``ttl`` (10 minutes);
* an unknown ``kid`` forces a refetch once the current set is at least
  ``rotation_guard`` seconds old, so freshly rotated keys are picked up
  immediately;
* a ``kid`` that is still unknown after a refetch arms a ``miss_cooldown``
  window during which no unknown ``kid`` triggers another fetch.

Concurrent callers that miss at the same time share one in-flight fetch.

Requires the ``PyJWT``, ``cryptography`` and ``httpx`` packages.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
import jwt

from cloudflare_gate.constants import (
    ACCESS_DOMAIN_SUFFIX,
    CERTS_PATH,
    JWKS_FETCH_TIMEOUT,
    JWKS_MISS_COOLDOWN,
    JWKS_ROTATION_GUARD,
    JWKS_TTL,
    SUPPORTED_ALGORITHMS,
)
from cloudflare_gate.errors import JWKSFetchError, KeyNotFoundError

logger = logging.getLogger(__name__)


def team_issuer(team_domain: str) -> str:
    """Return the ``iss`` value Access uses for *team_domain*."""
    return f"https://{team_domain}.{ACCESS_DOMAIN_SUFFIX}"


def certs_url(team_domain: str) -> str:
    """Return the JWKS endpoint for *team_domain*."""
    return f"{team_issuer(team_domain)}{CERTS_PATH}"


@dataclass(frozen=True)
class CachedKey:
    """A public key from the key set, bound to its algorithm."""

    key_id: str
    key: jwt.PyJWK
    algorithm: str


class KeyCache:
    """In-memory cache of Access signing keys.

    Parameters
    ----------
    url:
        The JWKS endpoint to fetch.
    ttl:
        Age in seconds after which the key set is refreshed before lookup.
    miss_cooldown:
        Seconds during which unknown key ids do not trigger a fetch, armed
        when a refresh fails to produce a requested key.
    rotation_guard:
        Minimum age of the key set before an unknown key id forces a fetch.
    timeout:
        HTTP request timeout in seconds.
    client:
        Optional pre-built ``httpx.AsyncClient`` (not closed by :meth:`close`).
    clock:
        Monotonic time source, in seconds.
    """

    def __init__(
        self,
        url: str,
        *,
        ttl: float = JWKS_TTL,
        miss_cooldown: float = JWKS_MISS_COOLDOWN,
        rotation_guard: float = JWKS_ROTATION_GUARD,
        timeout: float = JWKS_FETCH_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._ttl = ttl
        self._miss_cooldown = miss_cooldown
        self._rotation_guard = rotation_guard
        self._timeout = timeout
        self._clock = clock
        self._client = client
        self._owns_client = client is None

        self._entries: Dict[str, CachedKey] = {}
        self._last_fetch_at: Optional[float] = None
        self._miss_cooldown_until: float = 0.0
        self._inflight: Optional[asyncio.Task[None]] = None
        self._fetch_count = 0

    # ── properties ──────────────────────────────────────────────────

    @property
    def url(self) -> str:
        return self._url

    @property
    def entries(self) -> Dict[str, CachedKey]:
        """Current entries keyed by ``kid`` (read-only view)."""
        return dict(self._entries)

    @property
    def last_fetch_at(self) -> Optional[float]:
        """Clock value of the last successful fetch, or ``None``."""
        return self._last_fetch_at

    @property
    def miss_cooldown_until(self) -> float:
        return self._miss_cooldown_until

    @property
    def fetch_count(self) -> int:
        """Number of network fetches attempted so far."""
        return self._fetch_count

    def in_miss_cooldown(self) -> bool:
        return self._clock() < self._miss_cooldown_until

    # ── lookup policy ───────────────────────────────────────────────

    def get(self, kid: str) -> Optional[CachedKey]:
        """Return the cached key for *kid* without touching the network."""
        return self._entries.get(kid)

    def should_refresh(self, kid: str) -> bool:
        """Decide whether looking up *kid* warrants a fetch first."""
        if self._last_fetch_at is None:
            return True
        age = self._clock() - self._last_fetch_at
        if age >= self._ttl:
            return True
        if kid in self._entries:
            return False
        if self.in_miss_cooldown():
            return False
        return age >= self._rotation_guard

    async def resolve(self, kid: str) -> CachedKey:
        """Return the key for *kid*, refreshing per the cache policy.

        Raises :class:`KeyNotFoundError` when the key is still unknown and
        :class:`JWKSFetchError` when a required fetch fails.
        """
        refreshed = False
        if self.should_refresh(kid):
            await self.refresh()
            refreshed = True

        entry = self._entries.get(kid)
        if entry is not None:
            return entry

        if refreshed:
            self._miss_cooldown_until = self._clock() + self._miss_cooldown
            logger.info(
                "Key id %s absent after refresh; suppressing refetches for %.0fs",
                kid,
                self._miss_cooldown,
            )
        raise KeyNotFoundError(kid)

    # ── refresh ─────────────────────────────────────────────────────

    async def refresh(self) -> None:
        """Fetch the key set and replace all entries.

        A refresh already in flight is joined rather than duplicated.  On
        failure the cache is left unchanged and :class:`JWKSFetchError` is
        raised.
        """
        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._fetch())
            task.add_done_callback(self._on_refresh_done)
            self._inflight = task
        await asyncio.shield(task)

    def _on_refresh_done(self, task: "asyncio.Task[None]") -> None:
        if self._inflight is task:
            self._inflight = None
        # Waiters re-raise the failure themselves.
        if not task.cancelled():
            task.exception()

    async def _fetch(self) -> None:
        self._fetch_count += 1
        client = self._ensure_client()
        logger.debug("Fetching Access signing keys: %s", self._url)
        try:
            resp = await client.get(self._url)
            resp.raise_for_status()
            data: Any = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Access key fetch failed (%s): %s", self._url, exc)
            raise JWKSFetchError(self._url, exc) from exc

        if not isinstance(data, dict) or not isinstance(data.get("keys"), list):
            logger.warning("Access key set at %s has no 'keys' array", self._url)
            raise JWKSFetchError(self._url, ValueError("document has no 'keys' array"))

        entries = _parse_keys(data["keys"])
        self._entries = entries
        self._last_fetch_at = self._clock()
        logger.info(
            "Access signing keys refreshed from %s (%d key(s): %s)",
            self._url,
            len(entries),
            ", ".join(sorted(entries)) or "-",
        )

    # ── lifecycle ───────────────────────────────────────────────────

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this cache created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _parse_keys(raw_keys: list) -> Dict[str, CachedKey]:
    """Build cache entries from a JWKS ``keys`` array.

    Keys without a ``kid``, with an unusable algorithm, or that fail to
    load are skipped.
    """
    entries: Dict[str, CachedKey] = {}
    for raw in raw_keys:
        if not isinstance(raw, dict):
            continue
        kid = raw.get("kid")
        if not isinstance(kid, str) or not kid:
            continue
        if raw.get("use", "sig") != "sig":
            continue
        try:
            jwk = jwt.PyJWK(raw)
        except (jwt.PyJWTError, ValueError, KeyError) as exc:
            logger.debug("Skipping unusable key %s: %s", kid, exc)
            continue
        if jwk.algorithm_name not in SUPPORTED_ALGORITHMS:
            logger.debug("Skipping key %s with algorithm %s", kid, jwk.algorithm_name)
            continue
        entries[kid] = CachedKey(key_id=kid, key=jwk, algorithm=jwk.algorithm_name)
    return entries
