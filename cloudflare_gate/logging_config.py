"""Logging configuration setup."""

import copy
import logging
import logging.config
import re
import sys
from typing import Any, Optional, Set

from cloudflare_gate.constants import DEFAULT_LOG_LEVEL

# ── Secret redaction filter ──────────────────────────────────────────────

_REDACTED = "***REDACTED***"


class SecretRedactionFilter(logging.Filter):
    """Masks the Cloudflare tunnel token (and any other registered secret).

    The exposure layer registers the token just before cloudflared is
    spawned, so connector start errors and echoed connector output never
    carry it into the console or the log file.  Values shorter than four
    characters are ignored.
    """

    def __init__(self) -> None:
        super().__init__()
        self._secrets: Set[str] = set()
        self._pattern: Optional[re.Pattern[str]] = None

    def register(self, value: str) -> None:
        if not value or len(value) < 4 or value in self._secrets:
            return
        self._secrets.add(value)
        # Longest first so a token containing another secret is masked whole.
        ordered = sorted(self._secrets, key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(s) for s in ordered))

    def redact(self, text: str) -> str:
        if self._pattern is None:
            return text
        return self._pattern.sub(_REDACTED, text)

    def _scrub(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, BaseException):
            # Start errors embed connector output in their message.
            return self.redact(str(value))
        return value

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True
        record.msg = self._scrub(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self._scrub(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._scrub(a) for a in record.args)
        return True


# Shared instance: setup_logging() attaches it, start_exposure() feeds it.
secret_redaction_filter = SecretRedactionFilter()

BASE_LOG_CFG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {
            "format": "%(asctime)s - %(name)25s:%(lineno)-4d - %(levelname)-7s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console_handler": {
            "class": "logging.StreamHandler",
            "level": "DEBUG",
            "formatter": "simple",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "cloudflare_gate": {
            "handlers": ["console_handler"],
            "propagate": False,
            "level": "INFO",
        },
        "httpx": {
            "handlers": ["console_handler"],
            "propagate": False,
            "level": "WARNING",
        },
    },
    "root": {
        "handlers": ["console_handler"],
        "level": "WARNING",
    },
}


def setup_logging(log_lvl_str: str = DEFAULT_LOG_LEVEL, log_file: Optional[str] = None) -> str:
    """
    Set up the logging system.

    Args:
        log_lvl_str: The desired log level string (e.g., 'debug', 'info').
        log_file: Optional path of a file that receives the same records.

    Returns:
        The validated log level.
    """
    log_lvl_valid = log_lvl_str.upper()
    valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if log_lvl_valid not in valid_levels:
        print(f"Warning: invalid log level '{log_lvl_str}'. Using 'INFO'.", file=sys.stderr)
        log_lvl_valid = "INFO"

    log_cfg: dict = copy.deepcopy(BASE_LOG_CFG)
    if log_file:
        log_cfg["handlers"]["file_handler"] = {
            "class": "logging.FileHandler",
            "level": "DEBUG",
            "formatter": "simple",
            "filename": log_file,
            "encoding": "utf-8",
        }
        for logger_cfg in list(log_cfg["loggers"].values()) + [log_cfg["root"]]:
            logger_cfg["handlers"].append("file_handler")

    log_cfg["loggers"]["cloudflare_gate"]["level"] = log_lvl_valid
    log_cfg["root"]["level"] = log_lvl_valid if log_lvl_valid == "DEBUG" else "WARNING"

    logging.config.dictConfig(log_cfg)
    for name in ("cloudflare_gate", "httpx", ""):
        for handler in logging.getLogger(name or None).handlers:
            handler.addFilter(secret_redaction_filter)

    return log_lvl_valid
