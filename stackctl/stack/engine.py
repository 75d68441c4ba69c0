"""Provisioning engine adapter.

The engine that computes and applies resource diffs is an external program.
stackctl only starts it with a command name (``up``, ``destroy``,
``refresh``) and relays the events it prints, one JSON object per line::

    {"type": "progress", "resource": "Bucket", "status": "created"}
    {"type": "diagnostic", "level": "warning", "message": "..."}

Lines that are not JSON are relayed as info diagnostics.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Sequence

import structlog

from stackctl.backend.base import StageKey
from stackctl.infra.errors import EngineError
from stackctl.stack.events import Diagnostic, EngineEvent, Progress

logger = structlog.get_logger()

_STDERR_TAIL = 2000
# Longest stdout line the engine may print; asyncio defaults to 64 KiB.
LINE_LIMIT = 16 * 1024 * 1024


class ProvisioningEngine(ABC):
    """Black box that runs one stack command and streams its events."""

    @abstractmethod
    def run(self, command: str, key: StageKey) -> AsyncGenerator[EngineEvent, None]:
        """Start ``command`` and yield events in the order the engine emits them.

        Raises EngineError if the engine cannot start or exits unsuccessfully.
        """
        ...

    @abstractmethod
    async def stop(self, timeout: float) -> None:
        """Ask a running command to stop; force it after ``timeout`` seconds."""
        ...


def parse_engine_line(line: str) -> EngineEvent | None:
    """Pure function: one stdout line -> event, or None for blank lines."""
    text = line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return Diagnostic(level="info", message=text)
    if not isinstance(payload, dict):
        return Diagnostic(level="info", message=text)
    kind = payload.get("type")
    if kind == "progress":
        return Progress(
            resource=str(payload.get("resource", "")),
            status=str(payload.get("status", "")),
        )
    if kind == "diagnostic":
        return Diagnostic(
            level=str(payload.get("level", "info")),
            message=str(payload.get("message", "")),
        )
    return Diagnostic(level="info", message=text)


class SubprocessEngine(ProvisioningEngine):
    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: str | None = None,
        stop_timeout: float = 10.0,
        line_limit: int = LINE_LIMIT,
    ) -> None:
        if not argv:
            raise ValueError("engine command must not be empty")
        self._argv = list(argv)
        self._cwd = cwd
        self._stop_timeout = stop_timeout
        self._line_limit = line_limit
        self._proc: asyncio.subprocess.Process | None = None

    async def run(self, command: str, key: StageKey) -> AsyncGenerator[EngineEvent, None]:
        argv = [*self._argv, command]
        env = {**os.environ, "STACKCTL_APP": key.app, "STACKCTL_STAGE": key.stage}
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=env,
                limit=self._line_limit,
            )
        except OSError as e:
            raise EngineError(f"Could not start provisioning engine {argv[0]!r}: {e}") from e

        self._proc = proc
        logger.info("engine_started", command=command, stage_key=str(key), pid=proc.pid)
        assert proc.stdout is not None and proc.stderr is not None
        stderr_task = asyncio.create_task(proc.stderr.read())
        try:
            while True:
                try:
                    raw = await proc.stdout.readline()
                except ValueError as e:
                    raise EngineError(
                        f"Provisioning engine printed a line longer than {self._line_limit} bytes"
                    ) from e
                if not raw:
                    break
                event = parse_engine_line(raw.decode("utf-8", errors="replace"))
                if event is not None:
                    yield event
            returncode = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
            if returncode != 0:
                raise EngineError(
                    f"Provisioning engine exited with status {returncode}: "
                    f"{stderr[-_STDERR_TAIL:].strip()}"
                )
            logger.info("engine_finished", command=command, stage_key=str(key))
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            # Left before the engine exited; never leave it running behind us.
            if proc.returncode is None:
                await asyncio.shield(self._terminate(proc, self._stop_timeout))
            if self._proc is proc:
                self._proc = None

    async def stop(self, timeout: float) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        await self._terminate(proc, timeout)

    async def _terminate(self, proc: asyncio.subprocess.Process, timeout: float) -> None:
        """SIGINT, then SIGKILL after ``timeout``; always reaps the child."""
        logger.info("engine_stop_requested", pid=proc.pid)
        try:
            proc.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout)
        except TimeoutError:
            logger.warning("engine_stop_timeout", pid=proc.pid, timeout_s=timeout)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
