"""WebSocket handler for live dashboard updates.

Keeps the connected clients and pushes backup events (new backup,
retention pass, manual deletion) to everyone listening on /ws/live.
"""

import json
import logging
import threading
from datetime import datetime

logger = logging.getLogger(__name__)


class WebSocketHandler:
    """Thread-safe registry of WebSocket clients with broadcast."""

    def __init__(self):
        self._clients: list = []
        self._lock = threading.Lock()

    def register(self, ws):
        with self._lock:
            self._clients.append(ws)
            count = len(self._clients)
        logger.debug("WebSocket client connected (%d total)", count)

    def unregister(self, ws):
        with self._lock:
            try:
                self._clients.remove(ws)
            except ValueError:
                pass
            count = len(self._clients)
        logger.debug("WebSocket client disconnected (%d remaining)", count)

    def broadcast(self, event_type: str, data: dict):
        """Send a JSON message to all connected clients, dropping dead ones."""
        message = json.dumps({
            "type": event_type,
            "timestamp": datetime.now().isoformat(),
            "data": data,
        })
        with self._lock:
            alive = []
            for ws in self._clients:
                try:
                    ws.send(message)
                except Exception:
                    logger.debug("Dropping unreachable WebSocket client")
                    continue
                alive.append(ws)
            self._clients = alive

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)
