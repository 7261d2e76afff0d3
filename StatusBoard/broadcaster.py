"""WebSocket push channel for device status snapshots."""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Set

from fastapi import WebSocket

from device_data import utc_timestamp

MESSAGE_TYPE = "deviceStatus"


def status_message(snapshot: Dict[str, Any]) -> str:
    return json.dumps(
        {"type": MESSAGE_TYPE, "data": snapshot, "timestamp": utc_timestamp()},
        ensure_ascii=False,
    )


class DeviceStatusBroadcaster:
    """
    Fan-out of device snapshots to every connected dashboard.

    Lives on the server's event loop. Publishers on worker threads (request
    handlers, pollers) hand snapshots over with ``publish``, which schedules
    the send on the loop. Sends are serialized by one ``asyncio.Lock``, so a
    subscriber receives snapshots in the order they were published, and a
    new subscriber's initial snapshot never interleaves with a broadcast.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.active_connections: Set[WebSocket] = set()
        self.loop = loop
        self._lock: Optional[asyncio.Lock] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self._lock = None

    def _send_lock(self) -> asyncio.Lock:
        # Created lazily so it belongs to the running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def client_count(self) -> int:
        return len(self.active_connections)

    async def connect(self, websocket: WebSocket, snapshot: Callable[[], Dict[str, Any]]) -> None:
        """
        Accept ``websocket`` and send it the current snapshot.

        Args:
            websocket: The dashboard connection
            snapshot: Returns the snapshot to send; called under the send lock
        """
        await websocket.accept()
        async with self._send_lock():
            self.active_connections.add(websocket)
            try:
                await websocket.send_text(status_message(snapshot()))
            except Exception as exc:
                logging.warning(f"Initial device status send failed: {exc}")
                self.active_connections.discard(websocket)
                return
        logging.info(f"WebSocket client connected ({self.client_count} total)")

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.discard(websocket)
            logging.info(f"WebSocket client disconnected ({self.client_count} total)")

    async def broadcast(self, snapshot: Dict[str, Any]) -> int:
        """Send ``snapshot`` to every subscriber; returns how many received it."""
        message = status_message(snapshot)
        delivered = 0
        async with self._send_lock():
            for websocket in list(self.active_connections):
                try:
                    await websocket.send_text(message)
                    delivered += 1
                except Exception as exc:
                    logging.warning(f"Dropping WebSocket client after failed send: {exc}")
                    self.disconnect(websocket)
        return delivered

    def publish(self, snapshot: Dict[str, Any]) -> None:
        """Thread-safe entry point; a no-op without a bound loop or subscribers."""
        if self.loop is None or self.loop.is_closed() or not self.active_connections:
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(snapshot), self.loop)
