"""
MAILBRIDGE Relay — Bridge Transport
Bridges MCP tool calls to the single mail worker over a
WebSocket, correlating every response with the request
that caused it.

Architecture:
  [MCP controller] <--stdio--> [Front-end] --> [This Relay] <--ws--> [Worker Tunnel]

Endpoints:
  GET  /              -> Liveness banner
  GET  /status        -> Connection status (connected, uptime, client)
  WS   /ws            -> Worker tunnel WebSocket (one client at a time)
"""

import json
import logging
import time
import uuid
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse

from relay.correlation import CorrelationTable
from relay.errors import BridgeError, MalformedFrame, NoWorkerConnected, WorkerDisconnected
from relay.registry import Connection, ConnectionRegistry, utc_now_iso

logger = logging.getLogger("mailbridge.relay")

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SEARCH_TIMEOUT = 60.0


def parse_frame(message) -> dict:
    """Decode one text frame into a message dict with a string `type`."""
    if isinstance(message, (bytes, bytearray)):
        message = message.decode("utf-8", errors="replace")
    try:
        data = json.loads(message)
    except (TypeError, ValueError) as e:
        raise MalformedFrame(f"Invalid JSON frame: {e}") from e
    if not isinstance(data, dict):
        raise MalformedFrame(f"Frame is not an object: {type(data).__name__}")
    if not isinstance(data.get("type"), str):
        raise MalformedFrame("Frame has no type")
    return data


class BridgeTransport:
    """Owns the worker endpoint, the connection slot and the correlation table."""

    def __init__(self, config=None):
        bridge_cfg = (config or {}).get("bridge", {})
        self.path = bridge_cfg.get("path", "/ws")
        self.request_timeout = float(bridge_cfg.get("request_timeout", DEFAULT_REQUEST_TIMEOUT))
        self.search_timeout = float(bridge_cfg.get("search_timeout", DEFAULT_SEARCH_TIMEOUT))

        self.registry = ConnectionRegistry()
        self.correlation = CorrelationTable()
        self.started_at = time.time()
        self.app = self._create_app()

    # ── Outbound ────────────────────────────────────

    async def send(self, command_type: str, payload: Optional[dict] = None,
                   timeout: Optional[float] = None):
        """Send a command to the worker and wait for its correlated response payload.

        Raises NoWorkerConnected without touching the correlation table when no
        worker is connected, RequestTimeout when the deadline passes, and
        WorkerDisconnected when the connection drops first.
        """
        connection = self.registry.current
        if connection is None:
            raise NoWorkerConnected()

        if timeout is None:
            timeout = self.request_timeout
        request_id = str(uuid.uuid4())
        future = self.correlation.register(
            request_id, command_type, timeout, connection_id=connection.id
        )

        frame = {"type": command_type, "requestId": request_id, "payload": payload or {}}
        try:
            await connection.send(frame)
        except Exception as e:
            self.correlation.discard(request_id)
            raise BridgeError(f"Failed to send {command_type} to worker: {e}") from e

        logger.debug(f"-> {command_type} [{request_id}]")
        return await future

    # ── Inbound ─────────────────────────────────────

    def on_close(self, connection: Connection):
        self.registry.disconnect(connection.id)
        abandoned = self.correlation.abandon_connection(
            connection.id,
            lambda request_id: WorkerDisconnected(
                f"Worker connection {connection.id} closed before responding"
            ),
        )
        if abandoned:
            logger.warning(f"[!] {abandoned} pending request(s) abandoned by {connection.id}")

    async def handle_message(self, connection: Connection, message):
        """Classify and act on one inbound frame. Never raises."""
        if not self.registry.is_current(connection.id):
            return

        try:
            data = parse_frame(message)
        except MalformedFrame as e:
            logger.warning(f"[!] Dropping frame from {connection.id}: {e}")
            return

        msg_type = data["type"]
        try:
            if msg_type == "register":
                self.registry.register_identity(connection.id, data.get("addonId"))
                await connection.send({"type": "registered", "payload": {"success": True}})

            elif msg_type == "heartbeat":
                await connection.send({
                    "type": "heartbeat_ack",
                    "payload": {"timestamp": utc_now_iso()},
                })

            elif msg_type == "response":
                request_id = data.get("requestId")
                if request_id:
                    pending = self.correlation.get(request_id)
                    if self.correlation.resolve(request_id, data.get("payload")):
                        logger.debug(f"<- {pending.command_type} response [{request_id}]")
                    else:
                        logger.debug(f"Late or stray response [{request_id}] dropped")

            else:
                logger.warning(f"[?] Unknown message type: {msg_type}")

        except Exception as e:
            logger.error(f"[!] Error processing message from {connection.id}: {e}")

    # ── Status ──────────────────────────────────────

    def status(self) -> dict:
        return {
            "connected": self.registry.current is not None,
            "uptime": round(time.time() - self.started_at, 3),
            "client": self.registry.describe(),
        }

    # ── App ─────────────────────────────────────────

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="MAILBRIDGE Relay", docs_url=None, redoc_url=None)
        transport = self

        @app.get("/status")
        async def status():
            return JSONResponse(transport.status())

        @app.get("/")
        async def index():
            return PlainTextResponse("Thunderbird MCP Server Running")

        @app.websocket(self.path)
        async def worker_ws(ws: WebSocket):
            await ws.accept()
            connection = Connection(str(uuid.uuid4()), ws)
            try:
                await transport.registry.accept(connection)
                while True:
                    message = await ws.receive()
                    if message["type"] == "websocket.disconnect":
                        break
                    text = message.get("text")
                    if text is None:
                        text = message.get("bytes") or b""
                    await transport.handle_message(connection, text)
            except Exception as e:
                logger.error(f"Worker WS error: {e}")
            finally:
                transport.on_close(connection)

        return app
