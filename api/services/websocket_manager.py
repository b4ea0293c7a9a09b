#!/usr/bin/env python3
"""
WebSocket manager for the API.
Wraps accepted sockets as broadcast channels so they receive the same frames as SSE clients.
"""

import logging
from typing import List

from fastapi import WebSocket

from indexer.event_publisher import BroadcastHub

logger = logging.getLogger(__name__)


class WebSocketChannel:
    """Broadcast channel writing frames to one WebSocket client"""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, message: str) -> None:
        await self.websocket.send_text(message)

    async def close(self) -> None:
        try:
            await self.websocket.close()
        except RuntimeError:
            # Already closed by the client
            pass


class WebSocketManager:
    """WebSocket connection manager"""

    def __init__(self, hub: BroadcastHub):
        self.hub = hub
        self.active_connections: List[WebSocketChannel] = []

    async def connect(self, websocket: WebSocket) -> WebSocketChannel:
        """Accept a new WebSocket client and register it with the hub"""
        await websocket.accept()
        channel = WebSocketChannel(websocket)
        self.active_connections.append(channel)
        self.hub.register(channel)
        return channel

    def disconnect(self, channel: WebSocketChannel) -> None:
        """Disconnect a WebSocket client"""
        if channel in self.active_connections:
            self.active_connections.remove(channel)
        self.hub.unregister(channel)

    async def disconnect_all(self) -> None:
        """Disconnect all WebSocket clients"""
        for channel in list(self.active_connections):
            await channel.close()
            self.disconnect(channel)
