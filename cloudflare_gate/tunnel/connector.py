"""cloudflared connector supervision.

Starts ``cloudflared tunnel run`` with the tunnel token in the child's
environment (never on the command line, where ``ps`` would show it),
collects its combined output, and waits for the first
``Registered tunnel connection ... connectorID=<id>`` line.

Readiness is a race between three events, settled by the first one:

* a registration line is seen      → :class:`ConnectorHandle` is returned;
* the process exits first          → :class:`ConnectorExitedError`;
* ``timeout`` seconds pass first   → :class:`ConnectorTimeoutError`.

A process that fails to become ready is stopped before the error is raised.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from collections import deque
from typing import Deque, List, Optional, Sequence

from cloudflare_gate.constants import (
    CONNECTOR_ARGS,
    CONNECTOR_DRAIN_TIMEOUT,
    CONNECTOR_LOG_LINES,
    CONNECTOR_START_TIMEOUT,
    CONNECTOR_STOP_GRACE,
    CONNECTOR_STREAM_LIMIT,
    CONNECTOR_TOKEN_ENV,
)
from cloudflare_gate.errors import (
    ConnectorExitedError,
    ConnectorSpawnError,
    ConnectorStartError,
    ConnectorTimeoutError,
)

logger = logging.getLogger(__name__)

_REGISTERED_RE = re.compile(
    r"Registered tunnel connection\b.*?\bconnectorID=([0-9a-f]+(?:-[0-9a-f]+)*)",
    re.IGNORECASE,
)


def parse_connector_id(line: str) -> Optional[str]:
    """Return the connector id announced by *line*, if any."""
    match = _REGISTERED_RE.search(line)
    return match.group(1) if match else None


def _signal_name(returncode: Optional[int]) -> Optional[str]:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class ConnectorHandle:
    """A running connector process.

    Owned by whoever called :func:`start_connector`; :meth:`stop` ends the
    process and may be called any number of times.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        grace: float = CONNECTOR_STOP_GRACE,
        max_lines: int = CONNECTOR_LOG_LINES,
    ) -> None:
        self._process = process
        self._grace = grace
        self._log_lines: Deque[str] = deque(maxlen=max_lines)
        self._connector_id: Optional[str] = None
        self._registered = asyncio.Event()
        self._readers: List[asyncio.Task[None]] = []
        self._stop_task: Optional[asyncio.Task[None]] = None

    # ── properties ──────────────────────────────────────────────────

    @property
    def connector_id(self) -> Optional[str]:
        return self._connector_id

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    @property
    def log_lines(self) -> List[str]:
        """Captured output lines, oldest first (bounded)."""
        return list(self._log_lines)

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    # ── output collection ───────────────────────────────────────────

    def _watch(self, *streams: Optional[asyncio.StreamReader]) -> None:
        for stream in streams:
            if stream is not None:
                self._readers.append(asyncio.ensure_future(self._pump(stream)))

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; drop what is buffered.
                continue
            if not raw:
                return
            self._record(raw.decode("utf-8", errors="replace"))

    def _record(self, text: str) -> None:
        for part in text.splitlines():
            line = part.strip()
            if not line:
                continue
            self._log_lines.append(line)
            logger.debug("cloudflared: %s", line)
            if self._connector_id is None:
                connector_id = parse_connector_id(line)
                if connector_id is not None:
                    self._connector_id = connector_id
                    self._registered.set()

    async def _drain(self, timeout: float = CONNECTOR_DRAIN_TIMEOUT) -> None:
        """Give the readers a moment to collect output already written."""
        pending = [t for t in self._readers if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def _wait_ready(self, timeout: float) -> None:
        registered = asyncio.ensure_future(self._registered.wait())
        exited = asyncio.ensure_future(self._process.wait())
        try:
            done, _ = await asyncio.wait(
                {registered, exited},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (registered, exited):
                if not task.done():
                    task.cancel()

        if registered in done:
            return
        if exited in done:
            await self._drain()
            returncode = self._process.returncode
            raise ConnectorExitedError(returncode, _signal_name(returncode), self.log_lines)
        raise ConnectorTimeoutError(timeout, self.log_lines)

    # ── shutdown ────────────────────────────────────────────────────

    async def stop(self) -> None:
        """Terminate the process, escalating to SIGKILL after the grace period.

        Returns once the process has exited.  Concurrent and repeated calls
        share the same shutdown.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._terminate())
        await asyncio.shield(self._stop_task)

    async def _terminate(self) -> None:
        proc = self._process
        if proc.returncode is None:
            logger.debug("Sending SIGTERM to cloudflared (PID %s)", proc.pid)
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), self._grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "cloudflared (PID %s) did not exit within %.1fs, sending SIGKILL",
                    proc.pid,
                    self._grace,
                )
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        await self._drain()
        for task in self._readers:
            if not task.done():
                task.cancel()
        logger.info("cloudflared stopped (PID %s, exit %s)", proc.pid, proc.returncode)


async def start_connector(
    token: str,
    timeout: float = CONNECTOR_START_TIMEOUT,
    binary: str = "cloudflared",
    *,
    args: Sequence[str] = CONNECTOR_ARGS,
    grace: float = CONNECTOR_STOP_GRACE,
    max_lines: int = CONNECTOR_LOG_LINES,
) -> ConnectorHandle:
    """Start a connector for *token* and wait for it to register.

    Raises a :class:`ConnectorStartError` subclass when the process cannot
    be launched, exits before registering, or does not register within
    *timeout* seconds.
    """
    env = os.environ.copy()
    env[CONNECTOR_TOKEN_ENV] = token

    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            limit=CONNECTOR_STREAM_LIMIT,
        )
    except (OSError, ValueError) as exc:
        # ValueError: NUL byte in the binary path, arguments or token.
        raise ConnectorSpawnError(binary, exc) from exc

    logger.info("cloudflared started (PID %s), waiting for registration", process.pid)
    handle = ConnectorHandle(process, grace=grace, max_lines=max_lines)
    handle._watch(process.stdout, process.stderr)

    try:
        await handle._wait_ready(timeout)
    except ConnectorStartError:
        await handle.stop()
        raise
    except asyncio.CancelledError:
        await asyncio.shield(handle.stop())
        raise

    logger.info(
        "cloudflared registered tunnel connection (PID %s, connectorID=%s)",
        handle.pid,
        handle.connector_id,
    )
    return handle
