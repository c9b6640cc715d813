"""
Cloudflare Gate - identity verification and tunnel supervision behind
Cloudflare Access.

Cloudflare Gate verifies the ``Cf-Access-Jwt-Assertion`` tokens that the
Access edge attaches to proxied requests and, optionally, supervises a
``cloudflared`` connector process that establishes the tunnel to that edge.
"""

from cloudflare_gate.constants import SERVER_NAME, SERVER_VERSION

__version__ = SERVER_VERSION
__app_name__ = SERVER_NAME

__all__ = [
    "SERVER_NAME",
    "SERVER_VERSION",
    "__version__",
    "__app_name__",
]
