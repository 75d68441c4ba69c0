"""Tests for the config watcher and the coordination wire protocol."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from stackctl.infra.errors import LockHeldError, ServerError
from stackctl.server.protocol import (
    EventFrame,
    RPCError,
    SessionFrame,
    StackRunParams,
    parse_rpc_request,
    parse_server_frame,
)
from stackctl.server.watcher import watch_file


def _touch(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")
    st = path.stat()
    # bump mtime explicitly; some filesystems have coarse timestamps
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))


class TestWatchFile:
    @pytest.mark.asyncio
    async def test_change_triggers_callback(self, tmp_path: Path) -> None:
        config = tmp_path / "stackctl.config.json"
        config.write_text("{}", encoding="utf-8")
        changed = asyncio.Event()

        async def on_change() -> None:
            changed.set()

        task = asyncio.create_task(watch_file(config, on_change, interval=0.01))
        try:
            await asyncio.sleep(0.05)
            assert not changed.is_set()
            _touch(config, '{"name": "x"}')
            await asyncio.wait_for(changed.wait(), 2)
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

    @pytest.mark.asyncio
    async def test_known_errors_do_not_stop_watching(self, tmp_path: Path) -> None:
        config = tmp_path / "stackctl.config.json"
        config.write_text("{}", encoding="utf-8")
        calls = 0
        second = asyncio.Event()

        async def on_change() -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise LockHeldError("myapp/alice", "other")
            second.set()

        task = asyncio.create_task(watch_file(config, on_change, interval=0.01))
        try:
            await asyncio.sleep(0.03)
            _touch(config, "{ }")
            await asyncio.sleep(0.1)
            _touch(config, "{  }")
            await asyncio.wait_for(second.wait(), 2)
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        assert calls == 2


class TestProtocol:
    def test_parse_request_defaults(self) -> None:
        request = parse_rpc_request('{"type": "request", "method": "stack.run"}')
        assert request.id
        assert request.params == {}

    def test_parse_request_rejects_garbage(self) -> None:
        with pytest.raises(ServerError) as exc_info:
            parse_rpc_request("[1, 2")
        assert exc_info.value.code == "PARSE_ERROR"

    def test_parse_request_rejects_wrong_type(self) -> None:
        with pytest.raises(ServerError, match="Invalid RPC request"):
            parse_rpc_request('{"type": "event", "method": "stack.run"}')

    def test_run_params_normalized(self) -> None:
        assert StackRunParams(command=" UP ").command == "up"
        with pytest.raises(ValueError, match="command must be one of"):
            StackRunParams(command="preview")

    def test_server_frames_by_type(self) -> None:
        session = parse_server_frame(
            '{"type": "session", "data": {"pid": null, "app": "a", "stage": "s", "address": "ws://x"}}'
        )
        event = parse_server_frame('{"type": "event", "run_id": "r", "data": {"kind": "completed"}}')
        error = parse_server_frame(
            '{"type": "error", "id": "1", "error": {"code": "LOCK_HELD", "message": "m"}}'
        )

        assert isinstance(session, SessionFrame)
        assert session.data.pid is None
        assert isinstance(event, EventFrame)
        assert isinstance(error, RPCError)
        assert error.error.code == "LOCK_HELD"

    def test_unknown_frame_type(self) -> None:
        with pytest.raises(ServerError) as exc_info:
            parse_server_frame('{"type": "banana"}')
        assert exc_info.value.code == "PARSE_ERROR"
