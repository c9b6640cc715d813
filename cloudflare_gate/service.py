"""Cloudflare Gate service - lifecycle of the verifier and the tunnel.

GateService is what a host application holds.  Construction applies the
configuration rules (disabled modes, missing token, missing team domain);
``start()`` builds the Access verifier and exposes the gateway; ``stop()``
tears both down.  The identity-header logic lives here too so that any
HTTP layer can reuse it (see :mod:`cloudflare_gate.server.middleware`).

Usage::

    service = GateService(config.tunnel)
    await service.start()
    # ... serve requests, calling service.apply_identity(headers) ...
    await service.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, MutableMapping, Optional, Sequence, Union

from cloudflare_gate.access.verifier import (
    AccessIdentity,
    AccessVerifier,
    create_access_verifier,
)
from cloudflare_gate.config.schema import TunnelConfig
from cloudflare_gate.constants import (
    ACCESS_DOMAIN_SUFFIX,
    AUTH_SOURCE_HEADER,
    AUTH_SOURCE_TAG,
    JWT_ASSERTION_HEADER,
    USER_EMAIL_HEADER,
)
from cloudflare_gate.tunnel.exposure import ExposureMode, StopFunction, start_exposure

logger = logging.getLogger(__name__)

HeaderValue = Union[str, Sequence[str]]

IDENTITY_HEADERS = (USER_EMAIL_HEADER, AUTH_SOURCE_HEADER)


def first_header_value(value: Optional[HeaderValue]) -> Optional[str]:
    """Return the first value of a possibly repeated header.

    Only the first value counts; an empty one means no value.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        value = value[0] if value else ""
    return value or None


class GateService:
    """Owns the Access verifier and the managed tunnel for one host."""

    def __init__(
        self,
        config: TunnelConfig,
        *,
        logger: Union[logging.Logger, logging.LoggerAdapter] = logger,
    ) -> None:
        self._config = config
        self._log = logger
        self._verifier: Optional[AccessVerifier] = None
        self._stop_tunnel: Optional[StopFunction] = None
        self._start_task: Optional["asyncio.Future[Optional[StopFunction]]"] = None
        self._started = False
        self._active = self._check_config()

    def _check_config(self) -> bool:
        cfg = self._config
        if cfg.mode is ExposureMode.OFF:
            return False
        if cfg.mode is ExposureMode.MANAGED and not cfg.tunnel_token:
            self._log.error(
                "Cloudflare managed mode requires tunnel_token "
                "(config or $CLOUDFLARE_GATE_TUNNEL_TOKEN); gate disabled"
            )
            return False
        if not cfg.team_domain:
            self._log.warning(
                "Cloudflare %s mode: no team_domain configured, "
                "Access identity verification disabled",
                cfg.mode.value,
            )
        return True

    # ── properties ──────────────────────────────────────────────────

    @property
    def active(self) -> bool:
        """False when the configuration disables the gate entirely."""
        return self._active

    @property
    def started(self) -> bool:
        return self._started

    @property
    def verifier(self) -> Optional[AccessVerifier]:
        return self._verifier

    @property
    def tunnel_running(self) -> bool:
        return self._stop_tunnel is not None

    # ── lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Build the verifier (when a team domain is set) and expose the gateway.

        A :meth:`stop` issued while the tunnel is still coming up cancels
        the start; ``start()`` then returns without a tunnel.
        """
        if not self._active or self._started:
            return
        cfg = self._config
        self._started = True

        if cfg.team_domain:
            self._verifier = create_access_verifier(
                cfg.team_domain, cfg.audience, leeway=cfg.clock_skew
            )
            self._log.info(
                "Access JWT verifier active for %s.%s",
                cfg.team_domain,
                ACCESS_DOMAIN_SUFFIX,
            )

        task = asyncio.ensure_future(
            start_exposure(
                cfg.mode,
                cfg.tunnel_token,
                self._log,
                timeout=cfg.start_timeout,
                binary=cfg.binary,
            )
        )
        self._start_task = task
        try:
            stop_tunnel = await task
        except asyncio.CancelledError:
            if self._start_task is not task:
                # Cancelled by stop().
                return
            raise
        finally:
            stopped = self._start_task is not task
            if not stopped:
                self._start_task = None

        if stopped:
            # stop() ran meanwhile and owns the result.
            return
        self._stop_tunnel = stop_tunnel

    async def stop(self) -> None:
        """Stop the tunnel (running or still starting) and drop the verifier."""
        start_task, self._start_task = self._start_task, None
        stop_tunnel, self._stop_tunnel = self._stop_tunnel, None
        verifier, self._verifier = self._verifier, None
        self._started = False

        if start_task is not None:
            self._log.info("Cloudflare gate stopping while the tunnel is starting")
            stop_tunnel = await _cancel_start(start_task) or stop_tunnel
        if stop_tunnel is not None:
            await stop_tunnel()
        if verifier is not None:
            await verifier.close()

    # ── identity ────────────────────────────────────────────────────

    async def identify(self, token: Optional[str]) -> Optional[AccessIdentity]:
        """Verify *token* with the active verifier; ``None`` when unavailable."""
        verifier = self._verifier
        if verifier is None or not token:
            return None
        return await verifier.verify(token)

    async def apply_identity(self, headers: MutableMapping[str, HeaderValue]) -> bool:
        """Replace identity headers in *headers* (lower-cased names) in place.

        Client-supplied identity headers are always removed first; the
        verified email and auth source are set only after verification
        succeeds.  Returns whether an identity was set.
        """
        for name in IDENTITY_HEADERS:
            headers.pop(name, None)

        token = first_header_value(headers.get(JWT_ASSERTION_HEADER))
        identity = await self.identify(token)
        if identity is None:
            return False

        headers[USER_EMAIL_HEADER] = identity.email
        headers[AUTH_SOURCE_HEADER] = AUTH_SOURCE_TAG
        return True


def identity_headers(identity: AccessIdentity) -> List[tuple]:
    """Header pairs that forward *identity* downstream."""
    return [(USER_EMAIL_HEADER, identity.email), (AUTH_SOURCE_HEADER, AUTH_SOURCE_TAG)]


async def _cancel_start(
    task: "asyncio.Future[Optional[StopFunction]]",
) -> Optional[StopFunction]:
    """Cancel an in-flight exposure start and wait for it to unwind.

    Returns the stop function when the start had already completed.
    """
    task.cancel()
    await asyncio.wait({task})
    if task.cancelled() or task.exception() is not None:
        return None
    return task.result()
