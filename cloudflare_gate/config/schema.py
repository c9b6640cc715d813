"""Pydantic configuration models for Cloudflare Gate."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from cloudflare_gate.constants import CONNECTOR_START_TIMEOUT, DEFAULT_CLOCK_SKEW
from cloudflare_gate.tunnel.exposure import ExposureMode


class TunnelConfig(BaseModel):
    """Cloudflare exposure and Access verification settings."""

    mode: ExposureMode = Field(
        default=ExposureMode.OFF,
        description="Exposure mode: 'off', 'managed' or 'access-only'.",
    )
    tunnel_token: Optional[str] = Field(
        default=None,
        description="Tunnel token for managed mode. Supports ${ENV_VAR}.",
    )
    team_domain: Optional[str] = Field(
        default=None,
        description="Access team name, as in <team>.cloudflareaccess.com.",
    )
    audience: Optional[str] = Field(
        default=None,
        description="Application audience (AUD) tag required in tokens.",
    )
    start_timeout: float = Field(
        default=CONNECTOR_START_TIMEOUT,
        gt=0,
        description="Seconds to wait for cloudflared to register a connection.",
    )
    clock_skew: float = Field(
        default=DEFAULT_CLOCK_SKEW,
        ge=0,
        description="Leeway in seconds applied to exp / nbf checks.",
    )
    binary: Optional[str] = Field(
        default=None,
        description="Path to the cloudflared executable (discovered when unset).",
    )

    @field_validator("mode", mode="before")
    @classmethod
    def _yaml_off(cls, v: object) -> object:
        # YAML 1.1 reads a bare ``off`` as False.
        if v is False:
            return ExposureMode.OFF
        return v

    @field_validator("tunnel_token", "team_domain", "audience", "binary")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("team_domain")
    @classmethod
    def _bare_team_name(cls, v: Optional[str]) -> Optional[str]:
        if v and v.endswith(".cloudflareaccess.com"):
            return v[: -len(".cloudflareaccess.com")]
        return v


class GateConfig(BaseModel):
    """Top-level configuration file model."""

    tunnel: TunnelConfig = Field(default_factory=TunnelConfig)
    log_level: str = Field(default="INFO")
