#!/usr/bin/env python3
"""
Push channels: Server-Sent Events and WebSocket.
Both receive the frames the indexer broadcasts.
"""

import asyncio
import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse

from indexer.event_publisher import BroadcastHub, QueueChannel

from api.context import get_context

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stream"])

CONNECTED_FRAME = "data: {\"type\": \"connected\"}\n\n"
HEARTBEAT_FRAME = ": heartbeat\n\n"


async def sse_frames(request: Request, hub: BroadcastHub, heartbeat: float) -> AsyncIterator[str]:
    """Yield SSE frames for one client until it disconnects.

    The channel is registered on the first iteration and always unregistered
    on exit, whether the client closed or the hub dropped it.
    """
    channel = QueueChannel()
    hub.register(channel)
    try:
        yield CONNECTED_FRAME
        while True:
            if await request.is_disconnected():
                logger.debug("SSE: client disconnected")
                break
            if channel not in hub.channels:
                logger.info("SSE: channel dropped by hub (client too slow)")
                break
            try:
                message = await channel.receive(timeout=heartbeat)
            except asyncio.TimeoutError:
                yield HEARTBEAT_FRAME
                continue
            yield f"data: {message}\n\n"
    finally:
        channel.close()
        hub.unregister(channel)


@router.get("/sse")
async def event_stream(request: Request):
    """Server-Sent Events endpoint for real-time auction notifications"""
    context = get_context(request)
    return StreamingResponse(
        sse_frames(request, context.hub, context.settings.sse_heartbeat),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )


@router.websocket("/ws")
async def websocket_stream(websocket: WebSocket):
    """WebSocket endpoint carrying the same frames as /sse"""
    context = getattr(websocket.app.state, "context", None)
    if context is None:
        # Starting up or shutting down: ask the client to retry later
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return
    manager = context.websockets
    channel = await manager.connect(websocket)
    try:
        await websocket.send_text(json.dumps({"type": "connected"}))
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "message": "Invalid JSON format"}))
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected")
    finally:
        manager.disconnect(channel)
