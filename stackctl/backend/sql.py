"""SQL home provider with database-level atomic semantics.

Multi-process safe: the lock is a row keyed by (app, stage) created with
INSERT ... ON CONFLICT DO NOTHING, so exactly one concurrent acquirer gets a
row back. No in-memory locks are involved.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from stackctl.backend.base import (
    EMPTY_STATE,
    AlreadyLocked,
    Backend,
    LockRecord,
    StageKey,
    add_imported_resource,
)
from stackctl.backend.models import (
    StackLinkRecord,
    StackLockRecord,
    StackSecretRecord,
    StackStateRecord,
)
from stackctl.infra.errors import BackendError

logger = structlog.get_logger()


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class SqlBackend(Backend):
    def __init__(self, engine: AsyncEngine, *, lock_stale_after_seconds: int | None = None) -> None:
        self._engine = engine
        self._stale_after = lock_stale_after_seconds

    def _insert(self, table: Any) -> Any:
        if self._engine.dialect.name == "postgresql":
            return pg_insert(table)
        if self._engine.dialect.name == "sqlite":
            return sqlite_insert(table)
        raise BackendError(f"Unsupported database dialect: {self._engine.dialect.name}")

    @contextlib.asynccontextmanager
    async def _begin(self) -> AsyncIterator[AsyncConnection]:
        try:
            async with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise BackendError(f"Backend database error: {e}") from e

    async def _get_map(self, conn: AsyncConnection, record: Any, key: StageKey) -> dict:
        result = await conn.execute(
            select(record.data).where(record.app == key.app, record.stage == key.stage)
        )
        data = result.scalar_one_or_none()
        return dict(data) if data else {}

    async def _put_map(self, conn: AsyncConnection, record: Any, key: StageKey, data: dict) -> None:
        stmt = (
            self._insert(record)
            .values(app=key.app, stage=key.stage, data=data)
            .on_conflict_do_update(index_elements=["app", "stage"], set_={"data": data})
        )
        await conn.execute(stmt)

    # -- secrets / links ---------------------------------------------------

    async def get_secrets(self, key: StageKey) -> dict[str, str]:
        async with self._begin() as conn:
            data = await self._get_map(conn, StackSecretRecord, key)
        return {str(k): str(v) for k, v in data.items()}

    async def put_secrets(self, key: StageKey, secrets: dict[str, str]) -> None:
        async with self._begin() as conn:
            await self._put_map(conn, StackSecretRecord, key, dict(secrets))

    async def get_links(self, key: StageKey) -> dict[str, Any]:
        async with self._begin() as conn:
            return await self._get_map(conn, StackLinkRecord, key)

    async def put_links(self, key: StageKey, links: dict[str, Any]) -> None:
        async with self._begin() as conn:
            await self._put_map(conn, StackLinkRecord, key, dict(links))

    # -- lock --------------------------------------------------------------

    async def _select_lock(self, conn: AsyncConnection, key: StageKey) -> LockRecord | None:
        result = await conn.execute(
            select(StackLockRecord.holder_id, StackLockRecord.acquired_at).where(
                StackLockRecord.app == key.app, StackLockRecord.stage == key.stage
            )
        )
        row = result.one_or_none()
        if row is None:
            return None
        return LockRecord(
            holder_id=row.holder_id,
            app=key.app,
            stage=key.stage,
            acquired_at=_aware(row.acquired_at),
        )

    async def acquire_lock(self, key: StageKey, holder_id: str) -> LockRecord | AlreadyLocked:
        record = LockRecord(holder_id=holder_id, app=key.app, stage=key.stage)
        async with self._begin() as conn:
            if self._stale_after is not None:
                cutoff = record.acquired_at - timedelta(seconds=self._stale_after)
                stale = await conn.execute(
                    delete(StackLockRecord)
                    .where(
                        StackLockRecord.app == key.app,
                        StackLockRecord.stage == key.stage,
                        StackLockRecord.acquired_at < cutoff,
                    )
                    .returning(StackLockRecord.holder_id)
                )
                previous = stale.scalar_one_or_none()
                if previous is not None:
                    logger.warning(
                        "stale_lock_overridden", stage_key=str(key), previous_holder=previous
                    )

            # Atomic compare-and-create: RETURNING is empty when the row exists.
            stmt = (
                self._insert(StackLockRecord)
                .values(
                    app=key.app,
                    stage=key.stage,
                    holder_id=holder_id,
                    acquired_at=record.acquired_at,
                )
                .on_conflict_do_nothing(index_elements=["app", "stage"])
                .returning(StackLockRecord.holder_id)
            )
            created = (await conn.execute(stmt)).scalar_one_or_none()
            if created is not None:
                return record
            current = await self._select_lock(conn, key)

        if current is None:
            # Released between our insert and select; report it as held rather
            # than retrying inside the same transaction.
            current = LockRecord(holder_id="unknown", app=key.app, stage=key.stage)
        return AlreadyLocked(holder=current)

    async def release_lock(self, key: StageKey, holder_id: str) -> bool:
        async with self._begin() as conn:
            result = await conn.execute(
                delete(StackLockRecord)
                .where(
                    StackLockRecord.app == key.app,
                    StackLockRecord.stage == key.stage,
                    StackLockRecord.holder_id == holder_id,
                )
                .returning(StackLockRecord.holder_id)
            )
            return result.scalar_one_or_none() is not None

    async def break_lock(self, key: StageKey) -> LockRecord | None:
        async with self._begin() as conn:
            current = await self._select_lock(conn, key)
            await conn.execute(
                delete(StackLockRecord).where(
                    StackLockRecord.app == key.app, StackLockRecord.stage == key.stage
                )
            )
        return current

    async def get_lock(self, key: StageKey) -> LockRecord | None:
        async with self._begin() as conn:
            return await self._select_lock(conn, key)

    # -- state -------------------------------------------------------------

    async def _select_state(self, conn: AsyncConnection, key: StageKey) -> tuple[bytes, int]:
        result = await conn.execute(
            select(StackStateRecord.blob, StackStateRecord.version).where(
                StackStateRecord.app == key.app, StackStateRecord.stage == key.stage
            )
        )
        row = result.one_or_none()
        if row is None:
            return EMPTY_STATE, 0
        return bytes(row.blob), row.version

    async def _store_state(
        self, conn: AsyncConnection, key: StageKey, blob: bytes, version: int
    ) -> None:
        now = datetime.now(UTC)
        stmt = (
            self._insert(StackStateRecord)
            .values(app=key.app, stage=key.stage, blob=blob, version=version, updated_at=now)
            .on_conflict_do_update(
                index_elements=["app", "stage"],
                set_={"blob": blob, "version": version, "updated_at": now},
            )
        )
        await conn.execute(stmt)

    async def pull_state(self, key: StageKey, dest: Path) -> Path:
        async with self._begin() as conn:
            blob, _ = await self._select_state(conn, key)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(blob)
        except OSError as e:
            raise BackendError(f"Could not write local state copy {dest}: {e}") from e
        return dest

    async def push_state(self, key: StageKey, source: Path) -> int:
        try:
            data = source.read_bytes()
        except OSError as e:
            raise BackendError(f"Could not read local state {source}: {e}") from e
        async with self._begin() as conn:
            _, version = await self._select_state(conn, key)
            await self._store_state(conn, key, data, version + 1)
        logger.info("state_pushed", stage_key=str(key), version=version + 1, size=len(data))
        return version + 1

    async def import_resource(
        self,
        key: StageKey,
        resource_type: str,
        name: str,
        resource_id: str,
        parent: str | None = None,
    ) -> None:
        async with self._begin() as conn:
            blob, version = await self._select_state(conn, key)
            try:
                updated = add_imported_resource(blob, resource_type, name, resource_id, parent)
            except ValueError as e:
                raise BackendError(f"Could not import {resource_type} {name!r}: {e}") from e
            await self._store_state(conn, key, updated, version + 1)

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("db_engine_disposed")
