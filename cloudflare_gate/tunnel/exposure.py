"""Gateway exposure through Cloudflare.

Decides, from the configured :class:`ExposureMode`, whether a managed
cloudflared connector is started at all:

* ``off``          - nothing happens;
* ``access-only``  - the tunnel is run externally, only identity headers
  are handled in-process;
* ``managed``      - a connector is started with the tunnel token.

A failed start degrades to "no tunnel": the error is logged and ``None``
is returned instead of raising.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from cloudflare_gate.constants import CONNECTOR_START_TIMEOUT
from cloudflare_gate.errors import ConfigurationError, ConnectorStartError
from cloudflare_gate.logging_config import secret_redaction_filter
from cloudflare_gate.tunnel.binary import resolve_connector_binary
from cloudflare_gate.tunnel.connector import start_connector

logger = logging.getLogger(__name__)

StopFunction = Callable[[], Awaitable[None]]


class ExposureMode(str, Enum):
    """How the gateway is exposed through Cloudflare."""

    OFF = "off"
    MANAGED = "managed"
    ACCESS_ONLY = "access-only"

    @classmethod
    def parse(cls, value: Union[str, "ExposureMode"]) -> "ExposureMode":
        """Return the mode named by *value*; unknown names are a config error."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ConfigurationError(
                f"Unknown Cloudflare exposure mode {value!r} (expected one of: {allowed})"
            ) from None


async def start_exposure(
    mode: Union[str, ExposureMode],
    tunnel_token: Optional[str] = None,
    logger: Union[logging.Logger, logging.LoggerAdapter] = logger,
    *,
    timeout: float = CONNECTOR_START_TIMEOUT,
    binary: Optional[str] = None,
) -> Optional[StopFunction]:
    """Expose the gateway according to *mode*.

    Returns the connector's stop function when a managed tunnel is
    running, else ``None``.  Raises :class:`ConfigurationError` only for
    an unknown *mode*.
    """
    mode = ExposureMode.parse(mode)

    if mode is ExposureMode.OFF:
        return None

    if mode is ExposureMode.ACCESS_ONLY:
        logger.info(
            "Cloudflare access-only mode: expecting cloudflared to be run externally"
        )
        return None

    if mode is ExposureMode.MANAGED:
        if not tunnel_token:
            logger.error("Cloudflare managed mode: no tunnel token provided")
            return None

        secret_redaction_filter.register(tunnel_token)
        try:
            bin_path = binary or await resolve_connector_binary(logger=logger)
            handle = await start_connector(tunnel_token, timeout=timeout, binary=bin_path)
        except ConnectorStartError as exc:
            logger.error("Cloudflare tunnel failed to start: %s", exc)
            return None

        logger.info(
            "Cloudflare tunnel running (connectorId=%s, pid=%s)",
            handle.connector_id,
            handle.pid,
        )
        return handle.stop

    raise ConfigurationError(f"Unhandled Cloudflare exposure mode: {mode!r}")
