"""Stack lifecycle: lock -> run -> unlock for one StageKey.

Mutual exclusion across processes and machines comes from the backend lock
record, not from anything held in memory here. The one invariant every
method protects: a lock this handle acquired is released on every exit
path, including errors and cancellation.

    idle -> locking -> running -> unlocking -> idle
    locking -> failed (lock held)       any -> failed (error)
    running -> cancelling -> unlocking -> idle
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from enum import StrEnum
from pathlib import Path

import structlog

from stackctl.backend.base import (
    AlreadyLocked,
    Backend,
    LockRecord,
    StageKey,
    new_holder_id,
    validate_state_blob,
)
from stackctl.constants import MUTATING_COMMANDS
from stackctl.infra.errors import LockHeldError, StackctlError, StackError, StateError
from stackctl.stack.channel import EventChannel
from stackctl.stack.engine import ProvisioningEngine
from stackctl.stack.events import Completed, Failed, LifecycleEvent, Started

logger = structlog.get_logger()


class StackState(StrEnum):
    idle = "idle"
    locking = "locking"
    locked = "locked"
    running = "running"
    cancelling = "cancelling"
    unlocking = "unlocking"
    failed = "failed"


class StackLifecycle:
    """Owns the lock/run/unlock/cancel/import/pull/push operations for one stage."""

    def __init__(
        self,
        backend: Backend,
        engine: ProvisioningEngine,
        key: StageKey,
        *,
        state_dir: Path,
        holder_id: str | None = None,
        stop_timeout: float = 10.0,
    ) -> None:
        self._backend = backend
        self._engine = engine
        self._key = key
        self._state_dir = state_dir
        self._holder_id = holder_id or new_holder_id()
        self._stop_timeout = stop_timeout
        self._state = StackState.idle
        self._lock: LockRecord | None = None
        self._pulled: Path | None = None

    @property
    def key(self) -> StageKey:
        return self._key

    @property
    def holder_id(self) -> str:
        return self._holder_id

    @property
    def state(self) -> StackState:
        return self._state

    @property
    def holds_lock(self) -> bool:
        return self._lock is not None

    # -- lock --------------------------------------------------------------

    async def lock(self) -> LockRecord:
        """Acquire the stage lock. Fails fast with LockHeldError, never waits."""
        if self._lock is not None:
            return self._lock
        if self._state in (StackState.running, StackState.cancelling):
            raise StackError(f"A run is already in progress for {self._key}")

        self._state = StackState.locking
        try:
            result = await self._backend.acquire_lock(self._key, self._holder_id)
        except Exception:
            self._state = StackState.failed
            raise

        if isinstance(result, AlreadyLocked):
            self._state = StackState.failed
            logger.warning(
                "lock_held",
                stage_key=str(self._key),
                holder=result.holder.holder_id,
                acquired_at=result.holder.acquired_at.isoformat(),
            )
            raise LockHeldError(
                self._key, result.holder.holder_id, result.holder.acquired_at.isoformat()
            )

        self._lock = result
        self._state = StackState.locked
        logger.info("lock_acquired", stage_key=str(self._key), holder=self._holder_id)
        return result

    async def unlock(self) -> None:
        """Release the lock if this handle holds it.

        If someone overrode the lock in the meantime (stale takeover or
        ``unlock`` from another terminal) the release is a logged no-op.
        """
        if self._lock is None:
            return
        self._state = StackState.unlocking
        try:
            released = await self._backend.release_lock(self._key, self._holder_id)
        except Exception:
            self._state = StackState.failed
            logger.exception("lock_release_failed", stage_key=str(self._key))
            raise
        if not released:
            logger.warning(
                "lock_release_not_holder",
                stage_key=str(self._key),
                holder=self._holder_id,
                msg="Lock was taken over or cleared by someone else",
            )
        self._lock = None
        self._pulled = None
        self._state = StackState.idle
        logger.info("lock_released", stage_key=str(self._key), holder=self._holder_id)

    async def _unlock_despite_cancel(self) -> None:
        """Unlock and wait for it even if the current task is cancelled again."""
        task = asyncio.ensure_future(self.unlock())
        cancelled = False
        while True:
            try:
                await asyncio.shield(task)
                break
            except asyncio.CancelledError:
                if task.done():
                    break
                cancelled = True
        if cancelled:
            raise asyncio.CancelledError
        task.result()

    @contextlib.asynccontextmanager
    async def locked(self) -> AsyncIterator[LockRecord]:
        """``async with lifecycle.locked():`` holds the lock for the block, releases on exit."""
        record = await self.lock()
        try:
            yield record
        finally:
            await self._unlock_despite_cancel()

    async def cancel(self) -> LockRecord | None:
        """Force-clear the stage lock regardless of who holds it.

        Manual recovery only: a process that is actually still running keeps
        running; only the advisory lock is removed.
        """
        removed = await self._backend.break_lock(self._key)
        if self._lock is not None:
            self._lock = None
            self._pulled = None
            if self._state == StackState.locked:
                self._state = StackState.idle
        logger.warning(
            "lock_cleared",
            stage_key=str(self._key),
            previous_holder=removed.holder_id if removed else None,
        )
        return removed

    # -- run ---------------------------------------------------------------

    async def run(self, command: str, channel: EventChannel | None = None) -> str:
        """Run a stack command through the engine, relaying its events to ``channel``.

        Mutating commands acquire the lock if it is not already held. The lock
        is released when the run ends, whatever the outcome. The channel
        receives Started, the engine's events in order, exactly one terminal
        event, and is then closed. Returns the outcome ("success").
        """
        if self._state in (StackState.running, StackState.cancelling):
            raise StackError(f"A run is already in progress for {self._key}")
        channel = channel or EventChannel()

        if command in MUTATING_COMMANDS and self._lock is None:
            try:
                await self.lock()
            except StackctlError as e:
                await self._finish(channel, Failed(error=str(e), code=e.code))
                raise

        self._state = StackState.running
        terminal: LifecycleEvent = Failed(error="Run did not complete", code="INTERNAL_ERROR")
        log = logger.bind(stage_key=str(self._key), command=command)
        log.info("run_started")
        try:
            await channel.publish(Started(command=command, stage_key=str(self._key)))
            async with contextlib.aclosing(self._engine.run(command, self._key)) as events:
                async for event in events:
                    await channel.publish(event)
            terminal = Completed(outcome="success")
            log.info("run_completed")
            return terminal.outcome
        except asyncio.CancelledError:
            self._state = StackState.cancelling
            log.warning("run_cancelled")
            terminal = Completed(outcome="cancelled")
            raise
        except StackctlError as e:
            terminal = Failed(error=str(e), code=e.code)
            log.warning("run_failed", code=e.code, error=str(e))
            raise
        except Exception as e:
            terminal = Failed(error=f"Unexpected error: {type(e).__name__}", code="INTERNAL_ERROR")
            log.exception("run_crashed")
            raise
        finally:
            try:
                # The engine must be gone before the lock is, whatever ended the run.
                if not (isinstance(terminal, Completed) and terminal.outcome == "success"):
                    await self._stop_engine()
                await self._finish(channel, terminal)
            finally:
                try:
                    await self._unlock_despite_cancel()
                finally:
                    if self._lock is None:
                        failed = isinstance(terminal, Failed)
                        self._state = StackState.failed if failed else StackState.idle

    async def _stop_engine(self) -> None:
        try:
            await asyncio.wait_for(
                asyncio.shield(self._engine.stop(self._stop_timeout)), self._stop_timeout + 1
            )
        except TimeoutError:
            logger.warning("engine_stop_unacknowledged", stage_key=str(self._key))
        except Exception:
            logger.exception("engine_stop_failed", stage_key=str(self._key))

    async def _finish(self, channel: EventChannel, terminal: LifecycleEvent) -> None:
        if channel.closed:
            return
        await channel.publish(terminal)
        await channel.close()

    # -- import ------------------------------------------------------------

    async def import_resource(
        self,
        resource_type: str,
        name: str,
        resource_id: str,
        parent: str | None = None,
    ) -> None:
        """Adopt an existing resource into tracked state. Holds the lock throughout."""
        async with self.locked():
            await self._backend.import_resource(
                self._key, resource_type, name, resource_id, parent or None
            )
        logger.info(
            "resource_imported",
            stage_key=str(self._key),
            type=resource_type,
            name=name,
            id=resource_id,
            parent=parent,
        )

    # -- manual state edits --------------------------------------------------

    def _local_state_path(self) -> Path:
        return self._state_dir / f"{self._key.app}.{self._key.stage}.json"

    async def pull_state(self) -> Path:
        """Materialize the state blob locally for editing. Requires the lock."""
        if self._lock is None:
            raise StackError(f"{self._key} must be locked before pulling state")
        path = await self._backend.pull_state(self._key, self._local_state_path())
        self._pulled = path
        logger.info("state_pulled", stage_key=str(self._key), path=str(path))
        return path

    async def push_state(self) -> int:
        """Validate and upload the pulled local copy. Requires the lock."""
        if self._lock is None:
            raise StackError(f"{self._key} must be locked before pushing state")
        if self._pulled is None:
            raise StackError("No pulled state to push; pull it first")
        try:
            data = self._pulled.read_bytes()
        except OSError as e:
            raise StateError(f"Could not read edited state {self._pulled}: {e}") from e
        try:
            validate_state_blob(data)
        except ValueError as e:
            raise StateError(f"Refusing to push state: {e}") from e
        return await self._backend.push_state(self._key, self._pulled)
