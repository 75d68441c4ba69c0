"""Project discovery and per-project paths.

A project is the directory holding ``stackctl.config.json``. Everything
stackctl persists locally for that project lives under ``<root>/.stackctl``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path

import structlog

from stackctl.constants import (
    CONFIG_NAME,
    LOG_FILE_NAME,
    SERVER_FILE_NAME,
    STAGE_MARKER_NAME,
    WORK_DIR_NAME,
)
from stackctl.backend.base import check_name
from stackctl.infra.errors import ProjectError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProjectPaths:
    root: Path
    config: Path

    @property
    def work_dir(self) -> Path:
        return self.root / WORK_DIR_NAME

    @property
    def stage_marker(self) -> Path:
        return self.work_dir / STAGE_MARKER_NAME

    @property
    def log_file(self) -> Path:
        return self.work_dir / LOG_FILE_NAME

    @property
    def state_dir(self) -> Path:
        return self.work_dir / "state"

    @property
    def server_file(self) -> Path:
        return self.work_dir / SERVER_FILE_NAME

    def fingerprint(self) -> str:
        """Stable digest of the project root, used to derive per-project addresses."""
        return hashlib.sha256(str(self.root).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Project:
    paths: ProjectPaths
    name: str


def discover(start: Path | None = None, *, config_name: str = CONFIG_NAME) -> ProjectPaths:
    """Walk up from ``start`` until a directory containing the config file is found."""
    current = (start or Path.cwd()).expanduser().resolve()
    for candidate in (current, *current.parents):
        config = candidate / config_name
        if config.is_file():
            return ProjectPaths(root=candidate, config=config)
    raise ProjectError(f"Could not find {config_name} in {current} or any parent directory")


def load_project(paths: ProjectPaths) -> Project:
    """Read the app name from the config, falling back to the directory name."""
    try:
        raw = paths.config.read_text("utf-8")
        data = json.loads(raw) if raw.strip() else {}
    except (OSError, json.JSONDecodeError) as e:
        raise ProjectError(f"Could not read {paths.config}: {e}") from e
    if not isinstance(data, dict):
        raise ProjectError(f"{paths.config} must contain a JSON object")
    name = data.get("name") or paths.root.name
    if not isinstance(name, str) or not name.strip():
        raise ProjectError(f"{paths.config}: name must be a non-empty string")
    name = name.strip()
    try:
        check_name(name, "app")
    except ValueError as e:
        raise ProjectError(f"{paths.config}: {e}") from e
    logger.info("project_loaded", root=str(paths.root), app=name)
    return Project(paths=paths, name=name)
