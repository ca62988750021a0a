"""
Realtime WebSocket endpoint

    ws://host/ws?token=<jwt>     (or Authorization: Bearer <jwt>)

Frames are JSON envelopes {"event": <name>, "data": {...}} in both
directions. Each connection runs as three tasks:

- reader: parses frames into typed messages and queues them on the inbox
- worker: applies inbox messages one at a time, in arrival order
- writer: drains the connection's outbox to the socket

When the socket closes, the worker finishes whatever is already queued
before the disconnect transition runs.
"""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from ...models.events import parse_inbound
from ...services.connection_registry import ConnectionHandle
from ...services.dispatcher import EventDispatcher
from ...services.engine import ProctorEngine
from ...services.errors import InvalidEvent, NoSession, SessionNotFound, StoreUnavailable, Unauthorized
from ...services.identity import resolve_principal

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

_STOP = object()


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


class ConnectionActor:
    """Reader, worker and writer for one accepted WebSocket"""

    def __init__(self, websocket: WebSocket, engine: ProctorEngine, handle: ConnectionHandle):
        self.websocket = websocket
        self.engine = engine
        self.handle = handle
        self.inbox: asyncio.Queue = asyncio.Queue()

    async def run(self) -> None:
        writer = asyncio.create_task(self._write_loop())
        worker = asyncio.create_task(self._work_loop())
        try:
            await self._read_loop()
        finally:
            await self.inbox.put(_STOP)
            await worker
            await self.engine.disconnect(self.handle)
            await writer

    async def _read_loop(self) -> None:
        while True:
            try:
                text = await self.websocket.receive_text()
            except WebSocketDisconnect:
                return

            try:
                message = parse_inbound(json.loads(text))
            except (InvalidEvent, ValueError) as e:
                logger.info(f"[WS] Rejected frame from {self.handle.principal.user_id}: {e}")
                EventDispatcher.fail(self.handle, None, InvalidEvent.code, str(e))
                continue

            await self.inbox.put(message)

    async def _work_loop(self) -> None:
        while True:
            message = await self.inbox.get()
            if message is _STOP:
                return
            await self.engine.dispatch(self.handle, message)

    async def _write_loop(self) -> None:
        while True:
            frame = await self.handle.outbox.get()
            if frame is None:
                return
            try:
                await self.websocket.send_json(frame)
            except Exception as e:
                logger.debug(f"[WS] Send failed for connection {self.handle.id}: {e}")
                return


@router.websocket("/ws")
async def realtime(websocket: WebSocket, token: Optional[str] = Query(None)):
    engine: ProctorEngine = websocket.app.state.engine
    token = token or _bearer_token(websocket.headers.get("authorization"))

    try:
        principal = resolve_principal(token)
    except Unauthorized as e:
        logger.warning(f"[WS] Unauthenticated connection refused: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()

    try:
        handle = await engine.connect(principal)
    except (NoSession, SessionNotFound, Unauthorized) as e:
        logger.warning(f"[WS] Connection for {principal.user_id} refused: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e)[:120])
        return
    except StoreUnavailable as e:
        logger.error(f"[WS] Store unavailable while connecting {principal.user_id}: {e}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await ConnectionActor(websocket, engine, handle).run()
