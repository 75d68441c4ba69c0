"""Filesystem home provider.

Layout under ``home_dir``::

    <app>/<stage>/lock.json      LockRecord, present only while locked
    <app>/<stage>/state.json     state blob, stored verbatim
    <app>/<stage>/state.meta     state version
    <app>/<stage>/secrets.json
    <app>/<stage>/links.json
    <app>/<stage>/.guard         flock target serializing read-modify-write

Every read-modify-write runs under an exclusive ``fcntl.flock`` on the
stage's guard file, so concurrent processes on the same host see each
compare-and-create as atomic. The flock blocks, so that work runs in a
worker thread and never stalls the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import json
import os
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from stackctl.backend.base import (
    EMPTY_STATE,
    AlreadyLocked,
    Backend,
    LockRecord,
    StageKey,
    add_imported_resource,
)
from stackctl.infra.errors import BackendError

logger = structlog.get_logger()


class LocalBackend(Backend):
    def __init__(self, home_dir: Path, *, lock_stale_after_seconds: int | None = None) -> None:
        self._home = home_dir
        self._stale_after = lock_stale_after_seconds

    def _stage_dir(self, key: StageKey) -> Path:
        return self._home / key.app / key.stage

    @contextlib.contextmanager
    def _locked(self, key: StageKey) -> Iterator[Path]:
        stage_dir = self._stage_dir(key)
        try:
            stage_dir.mkdir(parents=True, exist_ok=True)
            handle = (stage_dir / ".guard").open("a+", encoding="utf-8")
        except OSError as e:
            raise BackendError(f"Could not open backend home for {key}: {e}") from e
        with handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield stage_dir
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read_json(self, path: Path, default: Any) -> Any:
        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError:
            return default
        except OSError as e:
            raise BackendError(f"Could not read {path}: {e}") from e
        try:
            return json.loads(raw) if raw.strip() else default
        except json.JSONDecodeError as e:
            raise BackendError(f"Corrupted backend file {path}: {e}") from e

    def _write_bytes(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise BackendError(f"Could not write {path}: {e}") from e

    def _write_json(self, path: Path, payload: Any) -> None:
        self._write_bytes(path, json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"))

    def _read_lock(self, stage_dir: Path) -> LockRecord | None:
        path = stage_dir / "lock.json"
        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackendError(f"Could not read {path}: {e}") from e
        try:
            return LockRecord.model_validate_json(raw)
        except ValidationError as e:
            raise BackendError(f"Corrupted lock file {path}: {e}") from e

    # -- secrets / links ---------------------------------------------------

    async def get_secrets(self, key: StageKey) -> dict[str, str]:
        data = await asyncio.to_thread(self._read_stage_json, key, "secrets.json")
        return {str(k): str(v) for k, v in data.items()}

    async def put_secrets(self, key: StageKey, secrets: dict[str, str]) -> None:
        await asyncio.to_thread(self._write_stage_json, key, "secrets.json", secrets)

    async def get_links(self, key: StageKey) -> dict[str, Any]:
        return await asyncio.to_thread(self._read_stage_json, key, "links.json")

    async def put_links(self, key: StageKey, links: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write_stage_json, key, "links.json", links)

    def _read_stage_json(self, key: StageKey, name: str) -> Any:
        with self._locked(key) as stage_dir:
            return self._read_json(stage_dir / name, {})

    def _write_stage_json(self, key: StageKey, name: str, payload: Any) -> None:
        with self._locked(key) as stage_dir:
            self._write_json(stage_dir / name, payload)

    # -- lock --------------------------------------------------------------

    async def acquire_lock(self, key: StageKey, holder_id: str) -> LockRecord | AlreadyLocked:
        return await asyncio.to_thread(self._acquire_lock, key, holder_id)

    def _acquire_lock(self, key: StageKey, holder_id: str) -> LockRecord | AlreadyLocked:
        with self._locked(key) as stage_dir:
            current = self._read_lock(stage_dir)
            if current is not None:
                if not current.is_stale(self._stale_after):
                    return AlreadyLocked(holder=current)
                logger.warning(
                    "stale_lock_overridden",
                    stage_key=str(key),
                    previous_holder=current.holder_id,
                    acquired_at=current.acquired_at.isoformat(),
                )
            record = LockRecord(holder_id=holder_id, app=key.app, stage=key.stage)
            self._write_bytes(stage_dir / "lock.json", record.model_dump_json().encode("utf-8"))
        return record

    async def release_lock(self, key: StageKey, holder_id: str) -> bool:
        return await asyncio.to_thread(self._release_lock, key, holder_id)

    def _release_lock(self, key: StageKey, holder_id: str) -> bool:
        with self._locked(key) as stage_dir:
            current = self._read_lock(stage_dir)
            if current is None or current.holder_id != holder_id:
                return False
            (stage_dir / "lock.json").unlink(missing_ok=True)
        return True

    async def break_lock(self, key: StageKey) -> LockRecord | None:
        return await asyncio.to_thread(self._break_lock, key)

    def _break_lock(self, key: StageKey) -> LockRecord | None:
        with self._locked(key) as stage_dir:
            current = self._read_lock(stage_dir)
            (stage_dir / "lock.json").unlink(missing_ok=True)
        return current

    async def get_lock(self, key: StageKey) -> LockRecord | None:
        return await asyncio.to_thread(self._get_lock, key)

    def _get_lock(self, key: StageKey) -> LockRecord | None:
        with self._locked(key) as stage_dir:
            return self._read_lock(stage_dir)

    # -- state -------------------------------------------------------------

    async def pull_state(self, key: StageKey, dest: Path) -> Path:
        return await asyncio.to_thread(self._pull_state, key, dest)

    def _pull_state(self, key: StageKey, dest: Path) -> Path:
        with self._locked(key) as stage_dir:
            try:
                data = (stage_dir / "state.json").read_bytes()
            except FileNotFoundError:
                data = EMPTY_STATE
            except OSError as e:
                raise BackendError(f"Could not read state for {key}: {e}") from e
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(data)
        except OSError as e:
            raise BackendError(f"Could not write local state copy {dest}: {e}") from e
        return dest

    async def push_state(self, key: StageKey, source: Path) -> int:
        return await asyncio.to_thread(self._push_state, key, source)

    def _push_state(self, key: StageKey, source: Path) -> int:
        try:
            data = source.read_bytes()
        except OSError as e:
            raise BackendError(f"Could not read local state {source}: {e}") from e
        with self._locked(key) as stage_dir:
            version = int(self._read_json(stage_dir / "state.meta", {}).get("version", 0)) + 1
            self._write_bytes(stage_dir / "state.json", data)
            self._write_json(stage_dir / "state.meta", {"version": version})
        logger.info("state_pushed", stage_key=str(key), version=version, size=len(data))
        return version

    async def import_resource(
        self,
        key: StageKey,
        resource_type: str,
        name: str,
        resource_id: str,
        parent: str | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._import_resource, key, resource_type, name, resource_id, parent
        )

    def _import_resource(
        self,
        key: StageKey,
        resource_type: str,
        name: str,
        resource_id: str,
        parent: str | None,
    ) -> None:
        with self._locked(key) as stage_dir:
            state_path = stage_dir / "state.json"
            try:
                blob = state_path.read_bytes()
            except FileNotFoundError:
                blob = EMPTY_STATE
            except OSError as e:
                raise BackendError(f"Could not read state for {key}: {e}") from e
            try:
                updated = add_imported_resource(blob, resource_type, name, resource_id, parent)
            except ValueError as e:
                raise BackendError(f"Could not import {resource_type} {name!r}: {e}") from e
            version = int(self._read_json(stage_dir / "state.meta", {}).get("version", 0)) + 1
            self._write_bytes(state_path, updated)
            self._write_json(stage_dir / "state.meta", {"version": version})
