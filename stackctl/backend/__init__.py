"""Backend module: home providers for secrets, links, locks and state."""

from __future__ import annotations

from typing import TYPE_CHECKING

from stackctl.backend.base import AlreadyLocked, Backend, LockRecord, StageKey, new_holder_id
from stackctl.backend.local import LocalBackend
from stackctl.backend.sql import SqlBackend

if TYPE_CHECKING:
    from stackctl.config.settings import BackendSettings


async def open_backend(settings: BackendSettings) -> Backend:
    """Build the configured home provider, creating SQL tables when needed."""
    if settings.kind == "sql":
        from stackctl.backend.database import create_db_engine, ensure_schema

        engine = create_db_engine(settings.url)
        await ensure_schema(engine)
        return SqlBackend(engine, lock_stale_after_seconds=settings.lock_stale_after_seconds)
    return LocalBackend(
        settings.home_dir.expanduser(),
        lock_stale_after_seconds=settings.lock_stale_after_seconds,
    )


__all__ = [
    "AlreadyLocked",
    "Backend",
    "LocalBackend",
    "LockRecord",
    "SqlBackend",
    "StageKey",
    "new_holder_id",
    "open_backend",
]
