"""Tunnel exposure - cloudflared discovery, supervision and mode dispatch."""

from cloudflare_gate.tunnel.binary import find_connector_binary, resolve_connector_binary
from cloudflare_gate.tunnel.connector import ConnectorHandle, parse_connector_id, start_connector
from cloudflare_gate.tunnel.exposure import ExposureMode, StopFunction, start_exposure

__all__ = [
    "ConnectorHandle",
    "ExposureMode",
    "StopFunction",
    "find_connector_binary",
    "parse_connector_id",
    "resolve_connector_binary",
    "start_connector",
    "start_exposure",
]
