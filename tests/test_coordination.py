"""Integration tests for the per-project coordination server.

These bind real loopback sockets.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import pytest

from stackctl.backend.base import StageKey
from stackctl.config.settings import ServerSettings
from stackctl.infra.errors import ServerError
from stackctl.project import ProjectPaths
from stackctl.server.client import request_run, stream_frames
from stackctl.server.coordination import Attached, CoordinationServer, Owns
from stackctl.server.protocol import EventFrame, RPCResponse, SessionFrame
from stackctl.stack.events import Progress
from stackctl.stack.lifecycle import StackLifecycle, StackState


@pytest.fixture
def paths(tmp_path: Path) -> ProjectPaths:
    root = tmp_path / "proj"
    root.mkdir()
    config = root / "stackctl.config.json"
    config.write_text('{"name": "myapp"}\n', encoding="utf-8")
    return ProjectPaths(root=root, config=config)


@pytest.fixture
def server(paths: ProjectPaths, key: StageKey) -> CoordinationServer:
    return CoordinationServer(paths, key, ServerSettings())


@pytest.mark.integration
class TestStart:
    def test_address_is_derived_from_project(self, paths: ProjectPaths, key: StageKey) -> None:
        settings = ServerSettings()
        first = CoordinationServer(paths, key, settings).address()
        second = CoordinationServer(paths, key, settings).address()

        assert first == second
        assert first[0] == "127.0.0.1"
        assert settings.port_base <= first[1] < settings.port_base + settings.port_span

    def test_second_start_attaches(
        self, server: CoordinationServer, paths: ProjectPaths, key: StageKey
    ) -> None:
        first = server.start()
        try:
            assert isinstance(first, Owns)
            second = CoordinationServer(paths, key, ServerSettings()).start()

            assert isinstance(second, Attached)
            assert second.session == first.session
            assert paths.server_file.exists()
        finally:
            first.sock.close()

    def test_port_is_free_again_after_owner_closes(self, server: CoordinationServer) -> None:
        first = server.start()
        assert isinstance(first, Owns)
        first.sock.close()

        again = server.start()
        try:
            assert isinstance(again, Owns)
        finally:
            again.sock.close()

    def test_attached_without_session_file(
        self, server: CoordinationServer, paths: ProjectPaths, key: StageKey
    ) -> None:
        first = server.start()
        try:
            paths.server_file.unlink()
            second = CoordinationServer(paths, key, ServerSettings()).start()

            assert isinstance(second, Attached)
            assert second.session.pid is None
            assert second.session.address == first.session.address
        finally:
            first.sock.close()


@pytest.mark.integration
class TestServe:
    @pytest.mark.asyncio
    async def test_remote_run_streams_events_and_cleans_up(
        self, server, paths, local_backend, fake_engine, key, tmp_path
    ) -> None:
        owned = server.start()
        assert isinstance(owned, Owns)
        lifecycle = StackLifecycle(
            local_backend, fake_engine, key, state_dir=tmp_path / "state", holder_id="server"
        )
        task = asyncio.create_task(server.serve(owned, lifecycle))
        try:
            frames = [f async for f in request_run(owned.session.address, "up", open_timeout=5)]
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        assert isinstance(frames[0], SessionFrame)
        assert frames[0].data.app == "myapp"
        kinds = [f.data["kind"] for f in frames if isinstance(f, EventFrame)]
        assert kinds == ["started", "progress", "progress", "completed"]
        assert isinstance(frames[-1], RPCResponse)
        assert frames[-1].data.outcome == "success"
        assert fake_engine.commands == ["up"]
        assert not paths.server_file.exists()
        assert await local_backend.get_lock(key) is None

    @pytest.mark.asyncio
    async def test_deploy_on_start_forwards_frames_locally(
        self, server, local_backend, fake_engine, key, tmp_path
    ) -> None:
        owned = server.start()
        assert isinstance(owned, Owns)
        lifecycle = StackLifecycle(local_backend, fake_engine, key, state_dir=tmp_path / "state")
        seen: list[EventFrame] = []
        done = asyncio.Event()

        async def on_frame(frame) -> None:
            if isinstance(frame, EventFrame):
                seen.append(frame)
                if frame.data["kind"] == "completed":
                    done.set()

        task = asyncio.create_task(
            server.serve(owned, lifecycle, deploy_on_start=True, on_frame=on_frame)
        )
        try:
            await asyncio.wait_for(done.wait(), 5)
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        assert [f.data["kind"] for f in seen] == ["started", "progress", "progress", "completed"]

    @pytest.mark.asyncio
    async def test_unreachable_server(self, server: CoordinationServer) -> None:
        host, port = server.address()

        with pytest.raises(ServerError) as exc_info:
            async for _ in stream_frames(f"ws://{host}:{port}/ws", open_timeout=1):
                pass

        assert exc_info.value.code == "SERVER_UNREACHABLE"

    @pytest.mark.asyncio
    async def test_requester_leaving_mid_run_does_not_wedge_server(
        self, server, local_backend, fake_engine, key, tmp_path
    ) -> None:
        fake_engine.events = [Progress(resource=f"R{i}", status="created") for i in range(100)]
        fake_engine.delay = 0.01
        owned = server.start()
        assert isinstance(owned, Owns)
        lifecycle = StackLifecycle(
            local_backend, fake_engine, key, state_dir=tmp_path / "state", holder_id="server"
        )
        task = asyncio.create_task(server.serve(owned, lifecycle))
        try:
            async with contextlib.aclosing(
                request_run(owned.session.address, "up", open_timeout=5)
            ) as frames:
                async for frame in frames:
                    if isinstance(frame, EventFrame):
                        break

            for _ in range(100):
                if fake_engine.commands and lifecycle.state == StackState.idle:
                    break
                await asyncio.sleep(0.05)
            fake_engine.delay = 0.0
            again = [f async for f in request_run(owned.session.address, "refresh", open_timeout=5)]
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        assert isinstance(again[-1], RPCResponse)
        assert again[-1].data.outcome == "success"
        assert fake_engine.commands == ["up", "refresh"]
        assert await local_backend.get_lock(key) is None

    @pytest.mark.asyncio
    async def test_shutdown_mid_run_stops_engine_and_releases(
        self, server, local_backend, fake_engine, key, tmp_path
    ) -> None:
        fake_engine.block = True
        owned = server.start()
        assert isinstance(owned, Owns)
        lifecycle = StackLifecycle(
            local_backend, fake_engine, key, state_dir=tmp_path / "state", holder_id="server"
        )
        task = asyncio.create_task(server.serve(owned, lifecycle))
        frames = request_run(owned.session.address, "up", open_timeout=5)
        try:
            async with contextlib.aclosing(frames):
                await asyncio.wait_for(frames.__anext__(), 5)
                await asyncio.wait_for(fake_engine.started.wait(), 5)
                assert await local_backend.get_lock(key) is not None

                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await asyncio.wait_for(task, 10)
        finally:
            if not task.done():
                task.cancel()

        assert fake_engine.stop_calls
        assert await local_backend.get_lock(key) is None
