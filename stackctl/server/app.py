from __future__ import annotations

import asyncio
import uuid
from typing import Any

import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from stackctl import __version__
from stackctl.infra.errors import LockHeldError, ServerError, StackctlError
from stackctl.server.protocol import (
    EventFrame,
    RPCError,
    RPCErrorData,
    RPCResponse,
    RunResultData,
    SessionData,
    SessionFrame,
    StackRunParams,
    parse_rpc_request,
)
from stackctl.stack.channel import EventChannel, Subscription
from stackctl.stack.events import event_to_dict
from stackctl.stack.lifecycle import StackLifecycle

logger = structlog.get_logger()

Frame = SessionFrame | EventFrame | RPCResponse | RPCError

# Close code for a client whose queue overflowed ("try again later").
CLOSE_TOO_SLOW = 1013


class CoordinationHub:
    """Shared state of a running coordination server.

    One lifecycle run at a time: a request that arrives while a run is in
    progress fails fast with LOCK_HELD instead of queueing. Every attached
    client receives every run's events in emission order; a client too slow
    to drain its queue is dropped so it can never stall a run.
    """

    def __init__(self, lifecycle: StackLifecycle, session: SessionData, *, buffer: int = 256) -> None:
        self._lifecycle = lifecycle
        self._session = session
        self._buffer = buffer
        self._run_lock = asyncio.Lock()
        # None in a queue tells its writer the client was dropped
        self._clients: dict[str, asyncio.Queue[Frame | None]] = {}
        self._requests: set[asyncio.Task[None]] = set()

    @property
    def session(self) -> SessionData:
        return self._session

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def attach(self) -> tuple[str, asyncio.Queue[Frame | None]]:
        client_id = uuid.uuid4().hex[:8]
        queue: asyncio.Queue[Frame | None] = asyncio.Queue(maxsize=self._buffer)
        self._clients[client_id] = queue
        logger.info("client_attached", client_id=client_id, clients=len(self._clients))
        return client_id, queue

    def detach(self, client_id: str) -> None:
        if self._clients.pop(client_id, None) is not None:
            logger.info("client_detached", client_id=client_id, clients=len(self._clients))

    def send(self, client_id: str, frame: Frame) -> None:
        queue = self._clients.get(client_id)
        if queue is not None:
            self._offer(client_id, queue, frame)

    def broadcast(self, frame: Frame) -> None:
        for client_id, queue in list(self._clients.items()):
            self._offer(client_id, queue, frame)

    def _offer(self, client_id: str, queue: asyncio.Queue[Frame | None], frame: Frame) -> None:
        try:
            queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("client_dropped", client_id=client_id, buffer=self._buffer)
            self.detach(client_id)
            while not queue.empty():
                queue.get_nowait()
            queue.put_nowait(None)

    async def run(self, command: str, *, wait: bool = False) -> RunResultData:
        """Run ``command`` on the stage, streaming its events to every client.

        Raises LockHeldError while another run is in progress unless ``wait``.
        """
        if self._run_lock.locked() and not wait:
            raise LockHeldError(
                self._lifecycle.key, f"{self._lifecycle.holder_id} (run in progress on this server)"
            )
        async with self._run_lock:
            run_id = uuid.uuid4().hex[:12]
            channel = EventChannel(self._buffer)
            sub = channel.subscribe()
            pump = asyncio.create_task(self._pump(run_id, sub))
            try:
                outcome = await self._lifecycle.run(command, channel)
            finally:
                if not channel.closed:
                    sub.unsubscribe()
                await pump
            return RunResultData(run_id=run_id, outcome=outcome)

    async def _pump(self, run_id: str, sub: Subscription) -> None:
        async for event in sub:
            self.broadcast(EventFrame(run_id=run_id, data=event_to_dict(event)))

    def handle_request(self, client_id: str, raw: str) -> asyncio.Task[None]:
        """Handle one RPC message in the background; the reply goes to ``client_id``."""
        task = asyncio.create_task(_handle_rpc_message(self, client_id, raw))
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)
        return task

    async def aclose(self) -> None:
        """Cancel in-flight requests and wait for their runs to unwind."""
        requests = list(self._requests)
        for task in requests:
            task.cancel()
        await asyncio.gather(*requests, return_exceptions=True)


def create_app(hub: CoordinationHub) -> FastAPI:
    app = FastAPI(title="stackctl coordination server", version=__version__)
    app.state.hub = hub

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", **hub.session.model_dump()}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        client_id, queue = hub.attach()
        hub.send(client_id, SessionFrame(data=hub.session))
        writer = asyncio.create_task(_write_frames(hub, client_id, websocket, queue))
        try:
            while True:
                raw = await websocket.receive_text()
                # a run can outlive its requester; keep reading so disconnects are seen
                hub.handle_request(client_id, raw)
        except WebSocketDisconnect:
            logger.info("ws_disconnected", client_id=client_id)
        finally:
            hub.detach(client_id)
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)

    return app


async def _write_frames(
    hub: CoordinationHub,
    client_id: str,
    websocket: WebSocket,
    queue: asyncio.Queue[Frame | None],
) -> None:
    try:
        while True:
            frame = await queue.get()
            if frame is None:
                await websocket.close(code=CLOSE_TOO_SLOW)
                return
            await websocket.send_text(frame.model_dump_json())
    finally:
        hub.detach(client_id)


async def _handle_rpc_message(hub: CoordinationHub, client_id: str, raw: str) -> None:
    """Parse an RPC request, run it, reply to the requesting client only."""
    request_id = "unknown"
    reply: BaseModel
    try:
        request = parse_rpc_request(raw)
        request_id = request.id

        if request.method == "stack.run":
            try:
                params = StackRunParams.model_validate(request.params)
            except ValidationError as e:
                raise ServerError(str(e), code="INVALID_PARAMS") from e
            result = await hub.run(params.command)
            reply = RPCResponse(id=request_id, data=result)
        else:
            reply = RPCError(
                id=request_id,
                error=RPCErrorData(
                    code="METHOD_NOT_FOUND",
                    message=f"Unknown method: {request.method}",
                ),
            )
    except StackctlError as e:
        logger.warning("request_error", code=e.code, error=str(e), request_id=request_id)
        reply = RPCError(id=request_id, error=RPCErrorData(code=e.code, message=str(e)))
    except Exception:
        logger.exception("unhandled_error", request_id=request_id)
        reply = RPCError(
            id=request_id,
            error=RPCErrorData(code="INTERNAL_ERROR", message="An internal error occurred"),
        )
    hub.send(client_id, reply)
