"""Stage resolution: explicit flag -> personal stage marker -> username -> prompt.

The stage chosen by the username guess or the prompt is persisted as the
personal stage, so subsequent runs resolve from the marker without asking.
"""

from __future__ import annotations

import getpass
from collections.abc import Callable
from pathlib import Path

import structlog
from dotenv import load_dotenv

from stackctl.backend.base import check_name
from stackctl.infra.errors import StageError

logger = structlog.get_logger()

# Usernames too generic to be a safe personal stage.
DENYLISTED_USERNAMES = frozenset({"root", "admin", "prod", "dev", "production"})

PROMPT = "Enter a stage name for your personal stage: "


def guess_stage(username: str) -> str:
    """Pure function: username -> stage guess, or "" when it must not be used."""
    stage = username.strip().lower()
    if stage in DENYLISTED_USERNAMES or not _is_valid(stage):
        return ""
    return stage


def _is_valid(stage: str) -> bool:
    try:
        check_name(stage, "stage")
    except ValueError:
        return False
    return True


def _checked(stage: str, source: str) -> str:
    try:
        return check_name(stage, "stage")
    except ValueError as e:
        raise StageError(f"{e} (from {source})") from e


def load_personal_stage(marker: Path) -> str:
    try:
        return marker.read_text("utf-8").strip()
    except FileNotFoundError:
        return ""
    except OSError as e:
        raise StageError(f"Could not read personal stage from {marker}: {e}") from e


def set_personal_stage(marker: Path, stage: str) -> None:
    try:
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(stage, encoding="utf-8")
    except OSError as e:
        raise StageError(f"Could not persist personal stage to {marker}: {e}") from e


def _current_username() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return ""


def _prompt_stage(prompt: Callable[[str], str]) -> str:
    while True:
        try:
            answer = prompt(PROMPT)
        except EOFError as e:
            # stdin closed: nobody can answer, so looping would never end
            raise StageError(
                "No stage given and stdin is not interactive. Pass --stage."
            ) from e
        stage = answer.strip()
        if stage and _is_valid(stage):
            return stage


def resolve_stage(
    explicit: str | None,
    marker: Path,
    *,
    prompt: Callable[[str], str] = input,
    username: Callable[[], str] = _current_username,
) -> str:
    """Resolve the stage for this invocation.

    Never prompts when ``explicit`` is non-empty. May write ``marker`` and may
    block on ``prompt``.
    """
    if explicit:
        return _checked(explicit.strip(), "--stage")

    stage = load_personal_stage(marker)
    if stage:
        return _checked(stage, str(marker))

    stage = guess_stage(username())
    source = "username"
    if not stage:
        stage = _prompt_stage(prompt)
        source = "prompt"

    set_personal_stage(marker, stage)
    logger.info("personal_stage_set", stage=stage, source=source, marker=str(marker))
    return stage


def load_stage_env(project_root: Path, stage: str) -> bool:
    """Load ``.env.<stage>`` from the project root without overriding the environment."""
    return load_dotenv(project_root / f".env.{stage}", override=False)
