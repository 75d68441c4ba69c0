"""Structured logging configuration using structlog.

The process log destination has an explicit lifecycle owned by LogSink:
a temp file at startup, rebound exactly once to the project's log file when
the project directory becomes known, closed at exit. Call setup_logging()
with the sink's writer whenever the destination changes.
"""

from __future__ import annotations

import logging
import shutil
import sys
import tempfile
from pathlib import Path
from typing import IO

import structlog


class TeeWriter:
    """File-like writer that duplicates output to several streams."""

    def __init__(self, *streams: IO[str]) -> None:
        self._streams = streams

    def write(self, data: str) -> int:
        for stream in self._streams:
            stream.write(data)
        return len(data)

    def flush(self) -> None:
        for stream in self._streams:
            stream.flush()


class LogSink:
    """Owner of the process-wide log file handle."""

    def __init__(self, *, verbose: bool = False) -> None:
        self._verbose = verbose
        self._file: IO[str] = tempfile.NamedTemporaryFile(  # noqa: SIM115
            mode="w+", prefix="stackctl-", suffix=".log", delete=False, encoding="utf-8"
        )
        self._path = Path(self._file.name)
        self._rebound = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def rebound(self) -> bool:
        return self._rebound

    @property
    def writer(self) -> IO[str] | TeeWriter:
        if self._verbose:
            return TeeWriter(self._file, sys.stderr)
        return self._file

    def rebind(self, target: Path) -> bool:
        """Move logging into ``target``, carrying over what was written so far.

        Returns False (and changes nothing) if the sink was already rebound.
        """
        if self._rebound:
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        self._file.flush()
        self._file.seek(0)
        next_file = target.open("w+", encoding="utf-8")
        shutil.copyfileobj(self._file, next_file)
        previous = self._path
        self._file.close()
        previous.unlink(missing_ok=True)
        self._file = next_file
        self._path = target
        self._rebound = True
        return True

    def close(self, *, keep: bool = True) -> None:
        """Close the destination. ``keep=False`` deletes a never-rebound temp file."""
        if not self._file.closed:
            self._file.flush()
            self._file.close()
        if not keep and not self._rebound:
            self._path.unlink(missing_ok=True)


def setup_logging(
    writer: IO[str] | TeeWriter | None = None,
    *,
    json_output: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structlog for the application.

    Args:
        writer: Destination stream. Defaults to stderr.
        json_output: If True, render logs as JSON. If False, key=value lines.
        log_level: Minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "event"], drop_missing=True
        )

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping()[log_level.upper()]
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=writer or sys.stderr),
        cache_logger_on_first_use=False,
    )
