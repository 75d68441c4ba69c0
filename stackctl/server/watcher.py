from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog

from stackctl.infra.errors import StackctlError

logger = structlog.get_logger()


def _signature(path: Path) -> tuple[int, int] | None:
    try:
        st = path.stat()
    except FileNotFoundError:
        return None
    return st.st_mtime_ns, st.st_size


async def watch_file(
    path: Path,
    on_change: Callable[[], Awaitable[object]],
    *,
    interval: float = 0.5,
) -> None:
    """Poll ``path`` and await ``on_change`` after every modification. Runs until cancelled.

    Errors from ``on_change`` that stackctl knows how to describe (lock held,
    engine failure, ...) are logged and watching continues.
    """
    last = _signature(path)
    logger.info("watch_started", path=str(path), interval_s=interval)
    while True:
        await asyncio.sleep(interval)
        current = _signature(path)
        if current == last:
            continue
        last = current
        logger.info("watch_changed", path=str(path))
        try:
            await on_change()
        except StackctlError as e:
            logger.warning("watch_rerun_failed", code=e.code, error=str(e))
