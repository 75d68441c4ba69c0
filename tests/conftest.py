"""Shared pytest fixtures for stackctl tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from stackctl.backend.base import StageKey
from stackctl.backend.local import LocalBackend
from stackctl.stack.engine import ProvisioningEngine
from stackctl.stack.events import EngineEvent, Progress


class FakeEngine(ProvisioningEngine):
    """Scriptable engine: yields ``events`` (``delay`` apart), then raises ``error`` or blocks."""

    def __init__(self, events: list[EngineEvent] | None = None) -> None:
        self.events: list[EngineEvent] = (
            events
            if events is not None
            else [Progress(resource="A", status="created"), Progress(resource="B", status="created")]
        )
        self.error: BaseException | None = None
        self.block = False
        self.delay = 0.0
        self.commands: list[str] = []
        self.started = asyncio.Event()
        self.stop_calls: list[float] = []

    async def run(self, command: str, key: StageKey) -> AsyncGenerator[EngineEvent, None]:
        self.commands.append(command)
        self.started.set()
        for event in self.events:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield event
        if self.error is not None:
            raise self.error
        if self.block:
            await asyncio.Event().wait()

    async def stop(self, timeout: float) -> None:
        self.stop_calls.append(timeout)


@pytest.fixture
def key() -> StageKey:
    return StageKey(app="myapp", stage="alice")


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def engine_factory() -> type[FakeEngine]:
    return FakeEngine


@pytest.fixture
def local_backend(tmp_path: Path) -> LocalBackend:
    return LocalBackend(tmp_path / "home")


@pytest.fixture
def project_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A project root with a config file, made the working directory."""
    root = tmp_path / "proj"
    root.mkdir()
    (root / "stackctl.config.json").write_text('{"name": "myapp"}\n', encoding="utf-8")
    monkeypatch.chdir(root)
    monkeypatch.setenv("STACKCTL_BACKEND_HOME_DIR", str(tmp_path / "home"))
    return root
