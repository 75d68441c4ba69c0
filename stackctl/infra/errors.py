"""Custom exception hierarchy for stackctl.

All application-specific exceptions inherit from StackctlError, which carries
an error code so callers (and the coordination server's error frames) can
branch on the kind of failure instead of matching message text.
"""

from __future__ import annotations


class StackctlError(Exception):
    """Base exception for all stackctl errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ReadableError(StackctlError):
    """Wraps a failure with a message that is safe to show to the operator.

    The original cause is kept as ``__cause__`` (raise ... from exc) and only
    reaches the log file.
    """

    def __init__(self, message: str, *, code: str = "READABLE_ERROR") -> None:
        super().__init__(message, code=code)


class CommandError(StackctlError):
    """Errors in command tree construction."""

    def __init__(self, message: str, *, code: str = "COMMAND_ERROR") -> None:
        super().__init__(message, code=code)


class ProjectError(StackctlError):
    """Project config could not be discovered or loaded."""

    def __init__(self, message: str, *, code: str = "PROJECT_ERROR") -> None:
        super().__init__(message, code=code)


class StageError(StackctlError):
    """Stage could not be resolved or persisted."""

    def __init__(self, message: str, *, code: str = "STAGE_ERROR") -> None:
        super().__init__(message, code=code)


class BackendError(StackctlError):
    """Backend I/O failed. Never retried automatically."""

    def __init__(self, message: str, *, code: str = "BACKEND_ERROR") -> None:
        super().__init__(message, code=code)


class SecretNotFoundError(BackendError):
    def __init__(self, name: str, stage: str) -> None:
        super().__init__(
            f'Secret "{name}" does not exist for stage "{stage}"',
            code="SECRET_NOT_FOUND",
        )
        self.name = name
        self.stage = stage


class StackError(StackctlError):
    """Errors in the stack lifecycle state machine."""

    def __init__(self, message: str, *, code: str = "STACK_ERROR") -> None:
        super().__init__(message, code=code)


class LockHeldError(StackError):
    """The stage lock is held by someone else. Fail fast, never queue."""

    def __init__(self, stage_key: object, holder: str, acquired_at: object = None) -> None:
        detail = f" since {acquired_at}" if acquired_at is not None else ""
        super().__init__(
            f"{stage_key} is locked by {holder}{detail}. "
            "Wait for it to finish or run `stackctl unlock` if that process died.",
            code="LOCK_HELD",
        )
        self.stage_key = stage_key
        self.holder = holder


class StateError(StackError):
    """The local state blob is unusable (empty or not valid JSON)."""

    def __init__(self, message: str, *, code: str = "STATE_INVALID") -> None:
        super().__init__(message, code=code)


class EngineError(StackError):
    """The provisioning engine failed to start or exited with an error."""

    def __init__(self, message: str, *, code: str = "ENGINE_ERROR") -> None:
        super().__init__(message, code=code)


class ServerError(StackctlError):
    """Errors in the local coordination server."""

    def __init__(self, message: str, *, code: str = "SERVER_ERROR") -> None:
        super().__init__(message, code=code)


class ServerAlreadyRunningError(ServerError):
    def __init__(self, message: str = "Server already running") -> None:
        super().__init__(message, code="SERVER_RUNNING")
