from __future__ import annotations

import json
import uuid
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from stackctl.constants import MUTATING_COMMANDS


class StackRunParams(BaseModel):
    command: str

    @field_validator("command")
    @classmethod
    def _validate_command(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in MUTATING_COMMANDS:
            msg = f"command must be one of {sorted(MUTATING_COMMANDS)} (got '{v}')"
            raise ValueError(msg)
        return v


class RPCRequest(BaseModel):
    """Client -> server request. method determines which params to expect."""

    type: Literal["request"] = "request"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class SessionData(BaseModel):
    pid: int | None
    app: str
    stage: str
    address: str


class SessionFrame(BaseModel):
    """First frame on every connection: describes the owning session."""

    type: Literal["session"] = "session"
    data: SessionData


class EventFrame(BaseModel):
    type: Literal["event"] = "event"
    run_id: str
    data: dict[str, Any]


class RunResultData(BaseModel):
    run_id: str
    outcome: str


class RPCResponse(BaseModel):
    type: Literal["response"] = "response"
    id: str
    data: RunResultData


class RPCErrorData(BaseModel):
    code: str
    message: str


class RPCError(BaseModel):
    type: Literal["error"] = "error"
    id: str
    error: RPCErrorData


ServerFrame = Annotated[
    SessionFrame | EventFrame | RPCResponse | RPCError, Field(discriminator="type")
]
_SERVER_FRAME = TypeAdapter(ServerFrame)


def parse_rpc_request(raw: str) -> RPCRequest:
    """Parse a raw JSON string into an RPCRequest.

    Raises ServerError(code="PARSE_ERROR") on invalid JSON or schema mismatch.
    """
    from stackctl.infra.errors import ServerError

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ServerError(f"Invalid JSON: {e}", code="PARSE_ERROR") from e
    try:
        return RPCRequest.model_validate(data)
    except ValidationError as e:
        raise ServerError(f"Invalid RPC request: {e}", code="PARSE_ERROR") from e


def parse_server_frame(raw: str | bytes) -> SessionFrame | EventFrame | RPCResponse | RPCError:
    """Parse a frame sent by the coordination server. Raises ServerError on garbage."""
    from stackctl.infra.errors import ServerError

    try:
        return _SERVER_FRAME.validate_json(raw)
    except ValidationError as e:
        raise ServerError(f"Invalid frame from coordination server: {e}", code="PARSE_ERROR") from e
