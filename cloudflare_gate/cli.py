"""CLI argument parsing and main entry point.

Provides two subcommands:

* ``cloudflare-gate tunnel`` - run the gate service (managed cloudflared
  tunnel and/or Access verifier) until SIGINT/SIGTERM.
* ``cloudflare-gate verify`` - verify one Access token and print its email.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from cloudflare_gate.access.verifier import create_access_verifier, verify_token
from cloudflare_gate.config import load_config
from cloudflare_gate.constants import DEFAULT_LOG_LEVEL, SERVER_NAME, SERVER_VERSION
from cloudflare_gate.errors import ConfigurationError
from cloudflare_gate.logging_config import setup_logging
from cloudflare_gate.service import GateService

module_logger = logging.getLogger(__name__)

# Config file search order (first match wins)
_CONFIG_SEARCH_ORDER = ("cloudflare-gate.yaml", "cloudflare-gate.yml")


def _find_config_file() -> str:
    """Locate the config file in the working directory.

    Falls back to ``CWD/cloudflare-gate.yaml`` if nothing exists (loader will error).
    """
    for name in _CONFIG_SEARCH_ORDER:
        candidate = os.path.join(os.getcwd(), name)
        if os.path.isfile(candidate):
            return candidate
    return os.path.join(os.getcwd(), _CONFIG_SEARCH_ORDER[0])


# ── ``cloudflare-gate tunnel`` ───────────────────────────────────────────


async def _run_tunnel(service: GateService) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await service.start()
    try:
        if not service.tunnel_running and service.verifier is None:
            module_logger.warning("Nothing to run; check the tunnel configuration.")
            return
        module_logger.info("%s running, press Ctrl+C to stop.", SERVER_NAME)
        await stop_event.wait()
        module_logger.info("Shutting down...")
    finally:
        await service.stop()


def _cmd_tunnel(args: argparse.Namespace) -> int:
    """Entry-point for ``cloudflare-gate tunnel``."""
    cfg_path = args.config or _find_config_file()
    try:
        config = load_config(cfg_path)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    setup_logging(args.log_level or config.log_level)
    service = GateService(config.tunnel)
    if not service.active:
        print("Cloudflare gate is disabled by configuration.", file=sys.stderr)
        return 1

    asyncio.run(_run_tunnel(service))
    return 0


# ── ``cloudflare-gate verify`` ───────────────────────────────────────────


async def _verify_once(team_domain: str, audience: Optional[str], token: str) -> int:
    verifier = create_access_verifier(team_domain, audience)
    try:
        result = await verify_token(token, verifier.cache, team_domain, audience)
    finally:
        await verifier.close()

    if result.identity is None:
        print(f"Token rejected: {result.reason}", file=sys.stderr)
        return 1
    print(result.identity.email)
    return 0


def _cmd_verify(args: argparse.Namespace) -> int:
    """Entry-point for ``cloudflare-gate verify``."""
    setup_logging(args.log_level or DEFAULT_LOG_LEVEL)
    token = args.token
    if token == "-":
        token = sys.stdin.read().strip()
    return asyncio.run(_verify_once(args.team_domain, args.audience, token))


# ── CLI parser construction ──────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser with tunnel/verify subcommands."""
    parser = argparse.ArgumentParser(
        description=f"{SERVER_NAME} v{SERVER_VERSION}",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warning", "error", "critical"],
        help="Log level (default: from config, else info)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # ── tunnel ──────────────────────────────────────────────────
    sp_tunnel = subparsers.add_parser(
        "tunnel",
        help="Run the managed tunnel / Access verifier until interrupted",
    )
    sp_tunnel.add_argument(
        "--config",
        default=None,
        help="Path to the YAML config file (default: ./cloudflare-gate.yaml)",
    )
    sp_tunnel.set_defaults(func=_cmd_tunnel)

    # ── verify ──────────────────────────────────────────────────
    sp_verify = subparsers.add_parser(
        "verify",
        help="Verify a Cloudflare Access token and print the asserted email",
    )
    sp_verify.add_argument("--team-domain", required=True, help="Access team name")
    sp_verify.add_argument("--audience", default=None, help="Required AUD tag")
    sp_verify.add_argument("token", help="Compact JWT, or '-' to read from stdin")
    sp_verify.set_defaults(func=_cmd_verify)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Program entry point: parse arguments and dispatch to subcommand."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)
    sys.exit(args.func(args))
