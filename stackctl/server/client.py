from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing

import structlog
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from stackctl.infra.errors import ServerError
from stackctl.server.protocol import (
    EventFrame,
    RPCError,
    RPCRequest,
    RPCResponse,
    SessionFrame,
    parse_server_frame,
)

logger = structlog.get_logger()

_SERVER_CLOSE_CODES = frozenset({1000, 1001, 1012})


async def stream_frames(
    address: str,
    *,
    request: RPCRequest | None = None,
    open_timeout: float = 2.0,
) -> AsyncIterator[SessionFrame | EventFrame | RPCResponse | RPCError]:
    """Connect to a coordination server and yield its frames until it closes.

    If ``request`` is given it is sent right after connecting. A failure to
    connect raises ServerError(code="SERVER_UNREACHABLE"); nothing was sent.
    """
    try:
        ws = await connect(address, open_timeout=open_timeout)
    except (OSError, TimeoutError, WebSocketException) as e:
        raise ServerError(
            f"Could not connect to coordination server at {address}: {e}",
            code="SERVER_UNREACHABLE",
        ) from e
    try:
        async with ws:
            logger.info("server_connected", address=address)
            if request is not None:
                await ws.send(request.model_dump_json())
            async for raw in ws:
                yield parse_server_frame(raw)
    except ConnectionClosed as e:
        # 1012: the server is shutting down
        if e.rcvd is None or e.rcvd.code not in _SERVER_CLOSE_CODES:
            raise ServerError(f"Lost connection to coordination server at {address}: {e}") from e
    except (OSError, WebSocketException) as e:
        raise ServerError(f"Lost connection to coordination server at {address}: {e}") from e
    logger.info("server_disconnected", address=address)


async def request_run(address: str, command: str, *, open_timeout: float = 2.0) -> AsyncIterator[
    SessionFrame | EventFrame | RPCResponse | RPCError
]:
    """Ask the server to run ``command``; yield frames up to and including the reply."""
    request = RPCRequest(method="stack.run", params={"command": command})
    async with aclosing(
        stream_frames(address, request=request, open_timeout=open_timeout)
    ) as frames:
        async for frame in frames:
            yield frame
            if isinstance(frame, (RPCResponse, RPCError)) and frame.id == request.id:
                return
