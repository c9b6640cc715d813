"""ASGI integration for Starlette hosts.

:class:`AccessIdentityMiddleware` rewrites the request headers of every
HTTP request before the wrapped app sees them:

1. any client-supplied ``x-auth-user-email`` / ``x-auth-source`` is removed;
2. the first ``cf-access-jwt-assertion`` value is verified;
3. on success the verified email and ``cloudflare-access`` tag are added.

Requests are never rejected here; authorization is left to the app.

Usage::

    service = GateService(config.tunnel)
    app = Starlette(routes=..., lifespan=gate_lifespan(service))
    app.add_middleware(AccessIdentityMiddleware, service=service)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, List, Optional, Tuple

from starlette.types import ASGIApp, Receive, Scope, Send

from cloudflare_gate.constants import JWT_ASSERTION_HEADER
from cloudflare_gate.service import IDENTITY_HEADERS, GateService, identity_headers

logger = logging.getLogger(__name__)

_STRIPPED = frozenset(name.encode("latin-1") for name in IDENTITY_HEADERS)
_ASSERTION = JWT_ASSERTION_HEADER.encode("latin-1")


class AccessIdentityMiddleware:
    """Pure ASGI middleware forwarding the verified Access identity."""

    def __init__(self, app: ASGIApp, service: GateService) -> None:
        self.app = app
        self.service = service

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers: List[Tuple[bytes, bytes]] = []
        assertion: Optional[bytes] = None
        for name, value in scope.get("headers", []):
            lname = name.lower()
            if lname in _STRIPPED:
                continue
            if lname == _ASSERTION and assertion is None:
                assertion = value
            headers.append((name, value))

        token = assertion.decode("latin-1") if assertion else None
        identity = await self.service.identify(token)
        if identity is not None:
            headers.extend(
                (name.encode("latin-1"), value.encode("utf-8"))
                for name, value in identity_headers(identity)
            )

        scope = dict(scope)
        scope["headers"] = headers
        await self.app(scope, receive, send)


def gate_lifespan(service: GateService) -> Callable[[Any], Any]:
    """Return a Starlette ``lifespan`` that starts and stops *service*."""

    @asynccontextmanager
    async def _lifespan(app: Any) -> AsyncIterator[None]:
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    return _lifespan
