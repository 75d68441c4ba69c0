"""Terminal rendering of lifecycle events and errors."""

from __future__ import annotations

import sys
from typing import IO

from stackctl.stack.channel import Subscription
from stackctl.stack.events import (
    Completed,
    Diagnostic,
    Failed,
    LifecycleEvent,
    Progress,
    Started,
)

# ── Error code → short hint shown after the message ─────────────────────────

_ERROR_HINTS: dict[str, str] = {
    "LOCK_HELD": "Another deploy is in progress for this stage.",
    "SERVER_RUNNING": "Attach to it with `stackctl dev` instead.",
    "BACKEND_ERROR": "Nothing was retried; run the command again once the backend is reachable.",
}

_COMMAND_VERBS: dict[str, str] = {
    "up": "Deploying",
    "destroy": "Removing",
    "refresh": "Refreshing",
}

GENERIC_ERROR = (
    "Unexpected error occurred. Please check the logs or run with --verbose for more details."
)


def error_hint(code: str | None) -> str:
    if code and code in _ERROR_HINTS:
        return _ERROR_HINTS[code]
    return ""


def format_event(event: LifecycleEvent) -> str:
    """Pure function: event -> one display line."""
    if isinstance(event, Started):
        verb = _COMMAND_VERBS.get(event.command, f"Running {event.command} on")
        return f"{verb} {event.stage_key}"
    if isinstance(event, Progress):
        return f"|  {event.status:<10} {event.resource}"
    if isinstance(event, Diagnostic):
        if event.level == "info":
            return f"|  {event.message}"
        return f"|  {event.level.upper()}: {event.message}"
    if isinstance(event, Completed):
        if event.outcome == "cancelled":
            return "✕  Cancelled"
        return "✓  Complete"
    if isinstance(event, Failed):
        return f"✕  Failed: {event.error}"
    raise TypeError(f"Unknown event type: {type(event).__name__}")


class ConsoleUI:
    def __init__(self, stream: IO[str] | None = None, err: IO[str] | None = None) -> None:
        self._stream = stream or sys.stdout
        self._err = err or sys.stderr

    def event(self, event: LifecycleEvent) -> None:
        print(format_event(event), file=self._stream, flush=True)

    async def follow(self, sub: Subscription) -> None:
        """Render every event of one run until the channel closes."""
        async for event in sub:
            self.event(event)

    def info(self, message: str) -> None:
        print(message, file=self._stream, flush=True)

    def error(self, message: str, code: str | None = None) -> None:
        print(f"Error: {message}", file=self._err, flush=True)
        hint = error_hint(code)
        if hint:
            print(f"       {hint}", file=self._err, flush=True)
