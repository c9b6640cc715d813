"""Locate (or download) the cloudflared executable.

Discovery order:

1. ``cloudflared`` on ``PATH``;
2. well-known install locations, including the gate's own
   ``~/.cloudflare-gate/bin``.

Each candidate must exist and answer ``--version`` before it is accepted.
When nothing is found, :func:`resolve_connector_binary` downloads the
latest release from GitHub into ``~/.cloudflare-gate/bin``.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import platform
import shutil
import sys
import tarfile
from typing import Awaitable, Callable, Dict, List, Optional, Union

import httpx

from cloudflare_gate.constants import CONNECTOR_RELEASE_URL, CONNECTOR_VERSION_TIMEOUT
from cloudflare_gate.errors import ConnectorInstallError

logger = logging.getLogger(__name__)

BinaryCheck = Callable[[str], Awaitable[bool]]

INSTALL_DIR = os.path.join(os.path.expanduser("~"), ".cloudflare-gate", "bin")

_ARCH_MAP: Dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "i386": "386",
    "i686": "386",
}

_resolved_binary: Optional[str] = None


def known_binary_paths() -> List[str]:
    return [
        os.path.join(INSTALL_DIR, "cloudflared"),
        "/usr/local/bin/cloudflared",
        "/usr/bin/cloudflared",
        "/opt/homebrew/bin/cloudflared",
    ]


async def answers_version(path: str) -> bool:
    """Return True if *path* exists and ``<path> --version`` succeeds."""
    if not path or not os.path.exists(path):
        return False
    try:
        proc = await asyncio.create_subprocess_exec(
            path,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    try:
        returncode = await asyncio.wait_for(proc.wait(), CONNECTOR_VERSION_TIMEOUT)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return False
    return returncode == 0


async def find_connector_binary(check: BinaryCheck = answers_version) -> Optional[str]:
    """Return the path of a working cloudflared, or ``None``."""
    from_path = shutil.which("cloudflared")
    if from_path and await check(from_path):
        return from_path

    for candidate in known_binary_paths():
        if await check(candidate):
            return candidate
    return None


def release_asset_name(
    system: Optional[str] = None, machine: Optional[str] = None
) -> str:
    """Return the GitHub release asset for this platform."""
    system = system or sys.platform
    machine = (machine or platform.machine()).lower()
    arch = _ARCH_MAP.get(machine)
    if arch is None:
        raise ConnectorInstallError(f"Unsupported architecture: {machine}")
    if system.startswith("linux"):
        return f"cloudflared-linux-{arch}"
    if system == "darwin":
        return f"cloudflared-darwin-{arch}.tgz"
    raise ConnectorInstallError(f"Unsupported platform for auto-install: {system}")


async def install_connector_binary(
    logger: Union[logging.Logger, logging.LoggerAdapter] = logger,
    *,
    install_dir: str = INSTALL_DIR,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Download the latest cloudflared release and return its path."""
    asset = release_asset_name()
    url = f"{CONNECTOR_RELEASE_URL}/{asset}"
    install_path = os.path.join(install_dir, "cloudflared")
    logger.info("cloudflared not found, downloading from %s...", url)

    try:
        if client is None:
            async with httpx.AsyncClient(follow_redirects=True, timeout=120.0) as own_client:
                resp = await own_client.get(url)
        else:
            resp = await client.get(url)
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        raise ConnectorInstallError(f"Failed to download cloudflared: {exc}") from exc

    try:
        os.makedirs(install_dir, exist_ok=True)
        if asset.endswith(".tgz"):
            _extract_binary(resp.content, install_path)
        else:
            with open(install_path, "wb") as fh:
                fh.write(resp.content)
        os.chmod(install_path, 0o755)
    except (OSError, tarfile.TarError) as exc:
        raise ConnectorInstallError(f"Failed to install cloudflared: {exc}") from exc

    logger.info("cloudflared installed to %s", install_path)
    return install_path


def _extract_binary(archive: bytes, install_path: str) -> None:
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
        member = next(
            (m for m in tar.getmembers() if m.isfile() and os.path.basename(m.name) == "cloudflared"),
            None,
        )
        if member is None:
            raise tarfile.TarError("archive does not contain a cloudflared executable")
        src = tar.extractfile(member)
        if src is None:
            raise tarfile.TarError("cloudflared entry in archive is unreadable")
        with src, open(install_path, "wb") as fh:
            shutil.copyfileobj(src, fh)


async def resolve_connector_binary(
    logger: Union[logging.Logger, logging.LoggerAdapter] = logger,
    *,
    check: BinaryCheck = answers_version,
) -> str:
    """Return a usable cloudflared path, installing one when none is found.

    The result is remembered for the lifetime of the process.
    """
    global _resolved_binary
    if _resolved_binary is None:
        found = await find_connector_binary(check)
        _resolved_binary = found or await install_connector_binary(logger)
    return _resolved_binary


def reset_resolved_binary() -> None:
    """Forget the remembered cloudflared path."""
    global _resolved_binary
    _resolved_binary = None
