#!/usr/bin/env python3
"""
MAILBRIDGE Tunnel — Mail Worker
Connects this machine's mailboxes to the MCP relay and
executes the commands it receives.

Features:
  - Registers with the relay on every (re)connect
  - Heartbeat every 30s while connected
  - Fixed 5s reconnect backoff, one pending attempt at most
  - Exactly one response per command, even when the executor fails

Usage:
    python tunnel.py                           # Uses config.yaml worker settings
    python tunnel.py ws://localhost:37842/ws
"""

import asyncio
import json
import logging
import os
import signal
import sys
import traceback
from datetime import datetime, timezone

import websockets

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, BASE_DIR)

logger = logging.getLogger("mailbridge.tunnel")

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"

SYSTEM_FRAMES = ("welcome", "registered", "heartbeat_ack")


class WorkerTunnel:
    """Worker end of the relay connection.

    `executor` must provide `handles(command_type) -> bool` and
    `async execute(command_type, payload) -> dict`.
    """

    def __init__(self, url, executor, worker_id, reconnect_interval=5.0,
                 heartbeat_interval=30.0, connect=None):
        self.url = url
        self.executor = executor
        self.worker_id = worker_id
        self.reconnect_interval = reconnect_interval
        self.heartbeat_interval = heartbeat_interval
        self._connect = connect or websockets.connect

        self.state = DISCONNECTED
        self.running = False
        self.ws = None
        self._reconnect_handle = None
        self._heartbeat_task = None
        self._connection_task = None
        self._command_tasks = set()
        self._stopped = None

    # ── Lifecycle ───────────────────────────────────

    def start(self):
        """Begin connecting. Must be called from a running event loop."""
        self.running = True
        self._stopped = asyncio.Event()
        self._open()

    async def run_forever(self):
        self.start()
        await self._stopped.wait()

    async def stop(self):
        """Cancel timers, heartbeat and in-flight commands, then close the socket."""
        self.running = False
        self._cancel_reconnect()
        self._cancel_heartbeat()
        for task in list(self._command_tasks):
            task.cancel()
        if self.ws is not None:
            try:
                await self.ws.close()
            except Exception as e:
                logger.debug(f"Close during stop: {e}")
        if self._connection_task is not None:
            self._connection_task.cancel()
        self.state = DISCONNECTED
        if self._stopped is not None:
            self._stopped.set()

    def _open(self):
        """disconnected → connecting"""
        self._reconnect_handle = None
        if not self.running or self.state != DISCONNECTED:
            return
        self.state = CONNECTING
        logger.info(f"[>] Connecting to relay: {self.url}")
        self._connection_task = asyncio.ensure_future(self._run_connection())

    async def _run_connection(self):
        try:
            ws = await self._connect(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[!] Failed to connect: {e}")
            self._handle_disconnect()
            return

        await self._handle_open(ws)
        try:
            async for message in ws:
                self._handle_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"[-] Connection closed: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[!] Tunnel error: {e}")
        finally:
            self._handle_disconnect()

    async def _handle_open(self, ws):
        """connecting → connected"""
        self.ws = ws
        self.state = CONNECTED
        self._cancel_reconnect()
        logger.info("[+] Tunnel established")

        await self.send({
            "type": "register",
            "addonId": self.worker_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

        self._cancel_heartbeat()
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop())

    def _handle_disconnect(self):
        """connected/connecting → disconnected; schedule the next attempt."""
        self.ws = None
        self.state = DISCONNECTED
        self._cancel_heartbeat()
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if not self.running or self._reconnect_handle is not None:
            return
        logger.info(f"[~] Reconnecting in {self.reconnect_interval:g}s...")
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_interval, self._open)

    def _cancel_reconnect(self):
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _cancel_heartbeat(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.send({"type": "heartbeat"})

    # ── Messaging ───────────────────────────────────

    async def send(self, message: dict) -> bool:
        """Send one frame to the relay. Returns False when not connected."""
        if self.ws is None or self.state != CONNECTED:
            logger.warning("[!] Cannot send message - not connected")
            return False
        try:
            await self.ws.send(json.dumps(message, default=str))
            return True
        except Exception as e:
            logger.warning(f"[!] Send failed: {e}")
            return False

    def _handle_message(self, message):
        try:
            command = json.loads(message)
        except (TypeError, ValueError) as e:
            logger.error(f"[!] Error parsing command: {e}")
            return
        if not isinstance(command, dict):
            logger.error(f"[!] Ignoring non-object frame: {message!r}")
            return

        # Commands overlap: each one runs as its own task
        task = asyncio.ensure_future(self.handle_command(command))
        self._command_tasks.add(task)
        task.add_done_callback(self._command_tasks.discard)

    async def handle_command(self, command: dict):
        """Run one inbound frame; answer every command frame exactly once."""
        msg_type = command.get("type")
        request_id = command.get("requestId")
        payload = command.get("payload") or {}

        if msg_type in SYSTEM_FRAMES:
            if msg_type == "welcome":
                logger.info(f"[+] Welcome from relay: {command.get('payload')}")
            elif msg_type == "registered":
                logger.info("[+] Successfully registered with relay")
            return

        logger.debug(f"Handling command: {msg_type}, requestId: {request_id}")
        try:
            if self.executor.handles(msg_type):
                result = await self.executor.execute(msg_type, payload)
            else:
                logger.warning(f"[?] Unknown command type: {msg_type}")
                result = {
                    "success": False,
                    "error": "Unknown command type",
                    "commandType": msg_type,
                }
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[!] Error handling {msg_type}: {e}")
            result = {
                "success": False,
                "error": str(e) or type(e).__name__,
                "stack": traceback.format_exc(),
            }

        if request_id:
            await self.send({"type": "response", "requestId": request_id, "payload": result})


def build_executor(config):
    from hands.executor import FolderPolicy, MailExecutor
    from hands.mailstore import IMAPMailStore, MailAccount

    worker_cfg = config["worker"]
    accounts = [MailAccount.from_config(a) for a in worker_cfg.get("accounts", [])]
    return MailExecutor(
        IMAPMailStore(accounts),
        policy=FolderPolicy.from_config(worker_cfg.get("folders", {})),
        search_timeout=float(worker_cfg.get("search_timeout", 25)),
    )


def main():
    from utils.config import load_config
    from utils.logger import setup_logger

    config = load_config()
    setup_logger(config, BASE_DIR)
    worker_cfg = config["worker"]
    url = sys.argv[1] if len(sys.argv) > 1 else worker_cfg["url"]

    if not worker_cfg.get("accounts"):
        logger.warning("[!] No mail accounts configured under worker.accounts")

    tunnel = WorkerTunnel(
        url,
        build_executor(config),
        worker_cfg["id"],
        reconnect_interval=float(worker_cfg.get("reconnect_interval", 5)),
        heartbeat_interval=float(worker_cfg.get("heartbeat_interval", 30)),
    )

    async def run():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.ensure_future(tunnel.stop()))
            except NotImplementedError:
                pass  # Windows
        await tunnel.run_forever()
        logger.info("[x] Tunnel shut down")

    asyncio.run(run())


if __name__ == "__main__":
    main()
