"""Configuration loading for Cloudflare Gate."""

from cloudflare_gate.config.loader import build_config, expand_env_vars, load_config
from cloudflare_gate.config.schema import GateConfig, TunnelConfig

__all__ = [
    "GateConfig",
    "TunnelConfig",
    "build_config",
    "expand_env_vars",
    "load_config",
]
