"""HTTP integration: identity middleware and lifespan helpers."""

from cloudflare_gate.server.middleware import AccessIdentityMiddleware, gate_lifespan

__all__ = [
    "AccessIdentityMiddleware",
    "gate_lifespan",
]
