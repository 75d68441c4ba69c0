from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from stackctl.backend import Backend, StageKey, open_backend
from stackctl.cli.dispatch import Invocation
from stackctl.cli.registry import Command
from stackctl.cli.ui import ConsoleUI
from stackctl.config.settings import Settings
from stackctl.infra.errors import ProjectError, ReadableError, StageError
from stackctl.infra.logging import LogSink, setup_logging
from stackctl.project import Project, discover, load_project
from stackctl.stack.engine import ProvisioningEngine, SubprocessEngine
from stackctl.stack.lifecycle import StackLifecycle
from stackctl.stage.resolver import load_stage_env, resolve_stage

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProjectContext:
    project: Project
    stage: str

    @property
    def key(self) -> StageKey:
        return StageKey(app=self.project.name, stage=self.stage)


class Cli:
    """Everything a command handler needs: parsed invocation plus process resources.

    Project, backend and lifecycle are created lazily, so commands that do
    not touch a project (``version``, ``introspect``) never discover one.
    """

    def __init__(
        self,
        invocation: Invocation,
        *,
        root: Command,
        settings: Settings,
        sink: LogSink,
        ui: ConsoleUI | None = None,
        prompt: Callable[[str], str] = input,
    ) -> None:
        self.invocation = invocation
        self.root = root
        self.settings = settings
        self.sink = sink
        self.ui = ui or ConsoleUI()
        self._prompt = prompt
        self._project: ProjectContext | None = None
        self._backend: Backend | None = None

    # -- invocation accessors ----------------------------------------------

    def string(self, name: str) -> str:
        return self.invocation.string(name)

    def positional(self, index: int) -> str:
        return self.invocation.positional(index)

    @property
    def positionals(self) -> tuple[str, ...]:
        return self.invocation.positionals

    # -- lazily built resources --------------------------------------------

    def init_project(self) -> ProjectContext:
        if self._project is not None:
            return self._project
        try:
            paths = discover(config_name=self.settings.config_name)
        except ProjectError as e:
            raise ReadableError(f"Could not find {self.settings.config_name}") from e
        project = load_project(paths)
        try:
            stage = resolve_stage(self.string("stage"), paths.stage_marker, prompt=self._prompt)
        except StageError as e:
            raise ReadableError(f"Could not find stage: {e}") from e
        load_stage_env(paths.root, stage)

        try:
            if self.sink.rebind(paths.log_file):
                setup_logging(self.sink.writer)
        except OSError as e:
            raise ReadableError("Could not create log file") from e

        logger.info("loaded_config", app=project.name, stage=stage)
        self._project = ProjectContext(project=project, stage=stage)
        return self._project

    async def backend(self) -> Backend:
        if self._backend is None:
            self._backend = await open_backend(self.settings.backend)
        return self._backend

    def engine(self) -> ProvisioningEngine:
        ctx = self.init_project()
        return SubprocessEngine(
            self.settings.engine.command,
            cwd=str(ctx.project.paths.root),
            stop_timeout=self.settings.engine.stop_timeout_s,
        )

    async def lifecycle(self) -> StackLifecycle:
        ctx = self.init_project()
        return StackLifecycle(
            await self.backend(),
            self.engine(),
            ctx.key,
            state_dir=ctx.project.paths.state_dir,
            stop_timeout=self.settings.engine.stop_timeout_s,
        )

    async def aclose(self) -> None:
        if self._backend is not None:
            await self._backend.close()
            self._backend = None
