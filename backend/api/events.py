"""WebSocket fan-out of manager and discovery events."""

import asyncio
import json
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Keeps the UI's WebSocket clients and pushes `{event, data}` to them."""

    def __init__(self) -> None:
        self._clients: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.append(websocket)
        logger.info(f"UI client connected. Total: {len(self._clients)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._clients:
                self._clients.remove(websocket)
        logger.info(f"UI client disconnected. Total: {len(self._clients)}")

    async def publish(self, event: str, data: dict) -> None:
        """Send one event to every client, dropping the ones that went away."""
        message = json.dumps({"event": event, "data": data}, default=str)
        async with self._lock:
            gone: list[WebSocket] = []
            for ws in self._clients:
                try:
                    await ws.send_text(message)
                except Exception as e:
                    logger.debug(f"Dropping UI client: {e}")
                    gone.append(ws)
            for ws in gone:
                self._clients.remove(ws)

    async def on_peer_discovered(self, event: str, peer) -> None:
        await self.publish(event, peer.model_dump())
