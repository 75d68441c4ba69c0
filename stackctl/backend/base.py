from __future__ import annotations

import json
import os
import socket
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

# Written by pull_state when the stage has no state yet.
EMPTY_STATE = b"{}\n"


def check_name(value: str, what: str) -> str:
    """Reject names that cannot be a single path segment or storage key part."""
    if (
        not value
        or value != value.strip()
        or value in (".", "..")
        or any(c in value for c in "/\\")
        or not value.isprintable()
    ):
        raise ValueError(
            f"Invalid {what} name {value!r}: it must be a single name without "
            "slashes or surrounding whitespace, and not '.' or '..'"
        )
    return value


@dataclass(frozen=True)
class StageKey:
    """(app, stage): the unit of isolation for locking and state."""

    app: str
    stage: str

    def __post_init__(self) -> None:
        check_name(self.app, "app")
        check_name(self.stage, "stage")

    def __str__(self) -> str:
        return f"{self.app}/{self.stage}"


class LockRecord(BaseModel):
    """Advisory lock on one StageKey, present only while a mutation is in flight."""

    holder_id: str
    app: str
    stage: str
    acquired_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def stage_key(self) -> StageKey:
        return StageKey(self.app, self.stage)

    def is_stale(self, stale_after_seconds: int | None, *, now: datetime | None = None) -> bool:
        if stale_after_seconds is None:
            return False
        now = now or datetime.now(UTC)
        acquired = self.acquired_at
        if acquired.tzinfo is None:
            acquired = acquired.replace(tzinfo=UTC)
        return (now - acquired).total_seconds() > stale_after_seconds


@dataclass(frozen=True)
class AlreadyLocked:
    """Result of acquire_lock when another holder owns the lock."""

    holder: LockRecord


def new_holder_id() -> str:
    """Identify this process: host, pid and a random token (only the holder can release)."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


def validate_state_blob(data: bytes) -> None:
    """Raise ValueError unless ``data`` is a non-empty JSON document."""
    if not data.strip():
        raise ValueError("state is empty")
    try:
        json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"state is not valid JSON: {e}") from e


class Backend(ABC):
    """Durable key/value + blob store behind the lock and state machine.

    Implementations guarantee atomicity of each call across processes; the
    lifecycle relies on acquire_lock being a linearizable compare-and-create.
    """

    @abstractmethod
    async def get_secrets(self, key: StageKey) -> dict[str, str]: ...

    @abstractmethod
    async def put_secrets(self, key: StageKey, secrets: dict[str, str]) -> None: ...

    @abstractmethod
    async def get_links(self, key: StageKey) -> dict[str, Any]: ...

    @abstractmethod
    async def put_links(self, key: StageKey, links: dict[str, Any]) -> None: ...

    @abstractmethod
    async def acquire_lock(self, key: StageKey, holder_id: str) -> LockRecord | AlreadyLocked:
        """Create the lock record if absent (or stale). Never waits for the holder."""
        ...

    @abstractmethod
    async def release_lock(self, key: StageKey, holder_id: str) -> bool:
        """Delete the lock only if ``holder_id`` owns it. Returns False otherwise."""
        ...

    @abstractmethod
    async def break_lock(self, key: StageKey) -> LockRecord | None:
        """Delete the lock regardless of holder. Returns the record that was removed."""
        ...

    @abstractmethod
    async def get_lock(self, key: StageKey) -> LockRecord | None: ...

    @abstractmethod
    async def pull_state(self, key: StageKey, dest: Path) -> Path:
        """Write the stored state blob verbatim to ``dest`` and return it."""
        ...

    @abstractmethod
    async def push_state(self, key: StageKey, source: Path) -> int:
        """Store the bytes of ``source`` as the new state. Returns the new version."""
        ...

    @abstractmethod
    async def import_resource(
        self,
        key: StageKey,
        resource_type: str,
        name: str,
        resource_id: str,
        parent: str | None = None,
    ) -> None: ...

    async def close(self) -> None:  # noqa: B027
        """Release connections or handles. No-op by default."""


def add_imported_resource(
    blob: bytes,
    resource_type: str,
    name: str,
    resource_id: str,
    parent: str | None = None,
) -> bytes:
    """Return ``blob`` with the resource appended to its ``resources`` list.

    Raises ValueError if the blob is not a JSON object or the resource is
    already tracked under the same type and name.
    """
    state = json.loads(blob) if blob.strip() else {}
    if not isinstance(state, dict):
        raise ValueError("state root must be a JSON object")
    resources = state.setdefault("resources", [])
    if not isinstance(resources, list):
        raise ValueError("state resources must be a list")
    for existing in resources:
        if (
            isinstance(existing, dict)
            and existing.get("type") == resource_type
            and existing.get("name") == name
        ):
            raise ValueError(f"{resource_type} {name!r} is already tracked")
    entry: dict[str, Any] = {"type": resource_type, "name": name, "id": resource_id, "imported": True}
    if parent:
        entry["parent"] = parent
    resources.append(entry)
    return (json.dumps(state, indent=2, sort_keys=True) + "\n").encode("utf-8")
