from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class Started:
    """A run began on a stage."""

    command: str
    stage_key: str


@dataclass
class Progress:
    """The engine reports a resource changing status."""

    resource: str
    status: str


@dataclass
class Diagnostic:
    """A message from the engine (info, warning, error)."""

    level: str
    message: str


@dataclass
class Completed:
    """Terminal: the run finished. outcome is "success" or "cancelled"."""

    outcome: str = "success"


@dataclass
class Failed:
    """Terminal: the run failed."""

    error: str
    code: str = "STACK_ERROR"


LifecycleEvent = Started | Progress | Diagnostic | Completed | Failed
EngineEvent = Progress | Diagnostic

_KINDS: dict[str, type] = {
    "started": Started,
    "progress": Progress,
    "diagnostic": Diagnostic,
    "completed": Completed,
    "failed": Failed,
}
_NAMES = {cls: name for name, cls in _KINDS.items()}


def event_to_dict(event: LifecycleEvent) -> dict[str, Any]:
    return {"kind": _NAMES[type(event)], **asdict(event)}


def event_from_dict(payload: dict[str, Any]) -> LifecycleEvent:
    """Inverse of event_to_dict. Raises ValueError on unknown kinds or fields."""
    data = dict(payload)
    kind = data.pop("kind", None)
    cls = _KINDS.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise ValueError(f"Unknown event kind: {kind!r}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ValueError(f"Invalid {kind} event: {e}") from e
