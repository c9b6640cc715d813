"""Configuration file loading and validation.

Loads a YAML configuration file, expands ``${ENV_VAR}`` placeholders,
and validates against the Pydantic models defined in :mod:`schema`.
"""

import logging
import os
import re
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from cloudflare_gate.config.schema import GateConfig
from cloudflare_gate.constants import GATE_TUNNEL_TOKEN_ENV
from cloudflare_gate.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Recognised config file extensions.
_YAML_EXTS = frozenset({".yaml", ".yml"})

# Regex for ${VAR_NAME}
_ENV_VAR_RE = re.compile(r"\$\{(\w+)\}")


def expand_env_vars(value: Any) -> Any:
    """Recursively expand ``${VAR}`` references in string values.

    - If the env var is not set, the placeholder is left unchanged.
    - Non-string leaves are returned as-is.
    - Dicts and lists are walked recursively.
    """
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def _read_config_file(cfg_fpath: str) -> Dict[str, Any]:
    """Read and parse a YAML config file from *cfg_fpath*.

    Raises :class:`ConfigurationError` on I/O or parse errors.
    """
    ext = os.path.splitext(cfg_fpath)[1].lower()
    if ext not in _YAML_EXTS:
        raise ConfigurationError(
            f"Unsupported config file extension '{ext}'. "
            "Only YAML files (.yaml, .yml) are supported."
        )

    try:
        with open(cfg_fpath, "r", encoding="utf-8") as f:
            raw_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Error reading configuration file: {cfg_fpath}\n  {exc}") from exc

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ConfigurationError(
            "Top-level configuration content must be a YAML mapping (dictionary)."
        )
    return raw_data


def build_config(raw_data: Optional[Dict[str, Any]] = None) -> GateConfig:
    """Validate a raw mapping into a :class:`GateConfig`.

    Falls back to ``$CLOUDFLARE_GATE_TUNNEL_TOKEN`` when no tunnel token
    is configured.
    """
    try:
        config = GateConfig.model_validate(expand_env_vars(raw_data or {}))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration:\n{exc}") from exc

    if not config.tunnel.tunnel_token:
        env_token = os.environ.get(GATE_TUNNEL_TOKEN_ENV, "").strip()
        if env_token:
            logger.debug("Using tunnel token from $%s", GATE_TUNNEL_TOKEN_ENV)
            config.tunnel.tunnel_token = env_token
    return config


def load_config(cfg_fpath: str) -> GateConfig:
    """Load, expand and validate the configuration file at *cfg_fpath*."""
    config = build_config(_read_config_file(cfg_fpath))
    logger.info(
        "Configuration loaded from %s (mode=%s, team_domain=%s)",
        cfg_fpath,
        config.tunnel.mode.value,
        config.tunnel.team_domain or "-",
    )
    return config
