"""
╔══════════════════════════════════════════╗
║    MAILBRIDGE — Relay: Connection Slot   ║
╚══════════════════════════════════════════╝

Holds at most one worker connection. A new connection
kicks out the old one; a stale close never clears a
newer connection's slot.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("mailbridge.relay")

NORMAL_CLOSURE = 1000


def utc_now_iso():
    return datetime.now(timezone.utc).isoformat()


class Connection:
    """One accepted worker websocket."""

    def __init__(self, connection_id: str, ws):
        self.id = connection_id
        self.ws = ws
        self.addon_id: Optional[str] = None
        self.connected_at = datetime.now(timezone.utc)

    async def send(self, frame: dict):
        await self.ws.send_text(json.dumps(frame))

    async def close(self, code=NORMAL_CLOSURE, reason=""):
        await self.ws.close(code=code, reason=reason)

    def describe(self) -> dict:
        return {
            "id": self.id,
            "addonId": self.addon_id,
            "connectedAt": self.connected_at.isoformat(),
        }


class ConnectionRegistry:
    """Single-writer owner of the "current worker" slot."""

    def __init__(self):
        self._current: Optional[Connection] = None

    @property
    def current(self) -> Optional[Connection]:
        return self._current

    def is_current(self, connection_id: str) -> bool:
        return self._current is not None and self._current.id == connection_id

    async def accept(self, connection: Connection):
        """Install `connection` as current, closing whichever one it replaces."""
        # No await between reading and replacing the slot
        previous, self._current = self._current, connection
        if previous is not None:
            logger.info(f"[~] Worker {connection.id} supersedes {previous.id}")
            try:
                await previous.close(NORMAL_CLOSURE, "New client connected")
            except Exception as e:
                # Old socket may already be half-closed
                logger.debug(f"Closing superseded connection {previous.id}: {e}")

        logger.info(f"[+] Worker connected: {connection.id}")

        await connection.send({
            "type": "welcome",
            "payload": {
                "clientId": connection.id,
                "timestamp": utc_now_iso(),
            },
        })

    def disconnect(self, connection_id: str) -> bool:
        """Clear the slot if `connection_id` still owns it. Returns True if cleared."""
        if not self.is_current(connection_id):
            logger.debug(f"Ignoring close of stale connection {connection_id}")
            return False
        self._current = None
        logger.info(f"[-] Worker disconnected: {connection_id}")
        return True

    def register_identity(self, connection_id: str, addon_id) -> bool:
        if not self.is_current(connection_id):
            return False
        self._current.addon_id = addon_id
        logger.info(f"[+] Worker {connection_id} registered as {addon_id}")
        return True

    def describe(self) -> Optional[dict]:
        return self._current.describe() if self._current else None
