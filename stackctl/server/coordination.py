"""Per-project coordination server.

At most one server runs per project. The singleton guard is the listening
socket itself: the port is derived from the project root, so a second
process fails to bind it and attaches to the running server instead. The OS
frees the port when the owner exits, crash included, so there is no stale
guard to clean up. ``server.json`` is informational only.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import json
import os
import socket
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import asdict, dataclass
from pathlib import Path

import structlog
import uvicorn

from stackctl.backend.base import StageKey
from stackctl.config.settings import ServerSettings
from stackctl.infra.errors import ServerError, StackctlError
from stackctl.project import ProjectPaths
from stackctl.server.app import CoordinationHub, Frame, create_app
from stackctl.server.protocol import SessionData
from stackctl.server.watcher import watch_file
from stackctl.stack.lifecycle import StackLifecycle

logger = structlog.get_logger()


@dataclass(frozen=True)
class CoordinationSession:
    pid: int | None
    app: str
    stage: str
    address: str

    def to_data(self) -> SessionData:
        return SessionData(**asdict(self))


@dataclass
class Owns:
    """This process bound the port and must serve it."""

    session: CoordinationSession
    sock: socket.socket


@dataclass(frozen=True)
class Attached:
    """Another process already serves this project."""

    session: CoordinationSession


StartResult = Owns | Attached


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the CLI."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class CoordinationServer:
    def __init__(self, paths: ProjectPaths, key: StageKey, settings: ServerSettings) -> None:
        self._paths = paths
        self._key = key
        self._settings = settings

    def address(self) -> tuple[str, int]:
        offset = int(self._paths.fingerprint()[:8], 16) % self._settings.port_span
        return self._settings.host, self._settings.port_base + offset

    def _ws_url(self) -> str:
        host, port = self.address()
        return f"ws://{host}:{port}/ws"

    def start(self) -> StartResult:
        """Bind the project's port. Owns on success, Attached if already served."""
        host, port = self.address()
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(128)
        except OSError as e:
            sock.close()
            if e.errno == errno.EADDRINUSE:
                session = self.read_session() or CoordinationSession(
                    pid=None, app=self._key.app, stage=self._key.stage, address=self._ws_url()
                )
                logger.info("server_attached", address=session.address, pid=session.pid)
                return Attached(session=session)
            raise ServerError(f"Could not bind coordination server on {host}:{port}: {e}") from e

        sock.setblocking(False)
        session = CoordinationSession(
            pid=os.getpid(), app=self._key.app, stage=self._key.stage, address=self._ws_url()
        )
        self._write_session(session)
        logger.info("server_bound", address=session.address, pid=session.pid)
        return Owns(session=session, sock=sock)

    def read_session(self) -> CoordinationSession | None:
        try:
            data = json.loads(self._paths.server_file.read_text("utf-8"))
            return CoordinationSession(
                pid=data.get("pid"),
                app=str(data["app"]),
                stage=str(data["stage"]),
                address=str(data["address"]),
            )
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def _write_session(self, session: CoordinationSession) -> None:
        path = self._paths.server_file
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(asdict(session), indent=2) + "\n", "utf-8")
        except OSError as e:
            logger.warning("server_file_write_failed", path=str(path), error=str(e))

    def _remove_session(self, session: CoordinationSession) -> None:
        current = self.read_session()
        if current is not None and current.pid == session.pid:
            self._paths.server_file.unlink(missing_ok=True)

    async def serve(
        self,
        owned: Owns,
        lifecycle: StackLifecycle,
        *,
        watch: Path | None = None,
        deploy_on_start: bool = False,
        on_frame: Callable[[Frame], Awaitable[None]] | None = None,
    ) -> None:
        """Serve the owned socket until cancelled, then shut down and release it.

        ``watch`` re-runs ``up`` whenever that file changes. ``on_frame``
        receives the same frames a websocket client would, for local rendering.
        """
        hub = CoordinationHub(
            lifecycle, owned.session.to_data(), buffer=self._settings.event_buffer
        )
        config = uvicorn.Config(
            create_app(hub), log_config=None, access_log=False, lifespan="off"
        )
        server = _EmbeddedServer(config)
        tasks: list[asyncio.Task[object]] = []
        local_id: str | None = None
        try:
            tasks.append(asyncio.create_task(server.serve(sockets=[owned.sock])))
            if on_frame is not None:
                local_id, queue = hub.attach()
                tasks.append(asyncio.create_task(_forward(queue, on_frame)))
            if watch is not None:
                tasks.append(
                    asyncio.create_task(
                        watch_file(
                            watch,
                            lambda: hub.run("up", wait=True),
                            interval=self._settings.watch_interval_s,
                        )
                    )
                )
            logger.info("server_started", address=owned.session.address)
            if deploy_on_start:
                await _run_logged(hub, "up")
            # stopped through should_exit below
            await asyncio.shield(tasks[0])
        finally:
            server.should_exit = True
            for task in tasks[1:]:
                task.cancel()
            await hub.aclose()
            if local_id is not None:
                hub.detach(local_id)
            await asyncio.gather(*tasks, return_exceptions=True)
            owned.sock.close()
            self._remove_session(owned.session)
            logger.info("server_stopped", address=owned.session.address)


async def _run_logged(hub: CoordinationHub, command: str) -> None:
    try:
        await hub.run(command, wait=True)
    except StackctlError as e:
        logger.warning("initial_run_failed", code=e.code, error=str(e))


async def _forward(
    queue: asyncio.Queue[Frame | None], on_frame: Callable[[Frame], Awaitable[None]]
) -> None:
    while True:
        frame = await queue.get()
        if frame is None:
            return
        await on_frame(frame)
