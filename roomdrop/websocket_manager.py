from fastapi import WebSocket
from typing import Callable, Dict, Optional, Tuple
import json
import asyncio
import logging

from .dispatch import Hub

logger = logging.getLogger(__name__)


class WebSocketOutbox:
    """Per-connection FIFO drained by its own writer task.

    ``push`` never waits, so a slow client only delays its own queue.
    """

    def __init__(self, websocket: WebSocket, connection_id: str,
                 on_failure: Optional[Callable[[str], object]] = None):
        self.websocket = websocket
        self.connection_id = connection_id
        self.on_failure = on_failure
        self.queue: "asyncio.Queue[Optional[dict]]" = asyncio.Queue()
        self.closed = False

    def push(self, message: dict):
        if self.closed:
            raise RuntimeError("outbox closed")
        self.queue.put_nowait(message)

    def close(self):
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    async def run(self):
        while True:
            message = await self.queue.get()
            if message is None:
                return
            try:
                await self.websocket.send_text(json.dumps(message))
            except Exception as e:
                logger.error(f"❌ Error sending {message.get('type', 'unknown')} to {self.connection_id}: {e}")
                self.closed = True
                # A dead socket leaves its room and sessions right away
                if self.on_failure is not None:
                    self.on_failure(self.connection_id)
                return


class ConnectionManager:
    """Binds accepted WebSockets to the hub and runs their writer tasks."""

    def __init__(self, hub: Hub):
        self.hub = hub
        self.writers: Dict[str, Tuple[WebSocketOutbox, asyncio.Task]] = {}

    async def connect(self, websocket: WebSocket, connection_id: str):
        """Accept WebSocket connection"""
        await websocket.accept()
        outbox = WebSocketOutbox(websocket, connection_id, on_failure=self.hub.disconnect)
        task = asyncio.create_task(outbox.run())
        self.writers[connection_id] = (outbox, task)
        self.hub.connect(connection_id, outbox)
        logger.info(f"🔌 WebSocket connected: {connection_id}")

    async def disconnect(self, connection_id: str):
        """Run the hub cleanup, then stop the writer"""
        self.hub.disconnect(connection_id)
        entry = self.writers.pop(connection_id, None)
        if entry is None:
            return
        outbox, task = entry
        outbox.close()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"❌ WebSocket disconnected: {connection_id}")

    async def shutdown(self):
        for connection_id in list(self.writers):
            await self.disconnect(connection_id)
