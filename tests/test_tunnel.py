"""
╔══════════════════════════════════════════╗
║  MAILBRIDGE — Test Suite: Worker Tunnel  ║
╚══════════════════════════════════════════╝

Tests command handling (exactly one response per command),
registration + heartbeat on connect, and the single
pending reconnect guarantee.
"""

import asyncio
import json
import os
import sys
import unittest
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from tunnel import CONNECTED, DISCONNECTED, WorkerTunnel


def _run_async(coro):
    """Run an async function synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeExecutor:
    def __init__(self, result=None, error=None):
        self.result = result if result is not None else {"success": True}
        self.error = error
        self.calls = []

    def handles(self, command_type):
        return command_type in ("list_accounts", "read_email")

    async def execute(self, command_type, payload):
        self.calls.append((command_type, payload))
        if self.error:
            raise self.error
        return self.result


def _connected_tunnel(executor=None):
    tunnel = WorkerTunnel("ws://relay/ws", executor or FakeExecutor(), "worker@test")
    tunnel.ws = MagicMock()
    tunnel.ws.send = AsyncMock()
    tunnel.state = CONNECTED
    return tunnel


def _sent(tunnel):
    return [json.loads(call.args[0]) for call in tunnel.ws.send.call_args_list]


class TestHandleCommand(unittest.TestCase):

    def test_known_command_answered_with_result(self):
        executor = FakeExecutor({"success": True, "accounts": [], "count": 0})
        tunnel = _connected_tunnel(executor)
        _run_async(tunnel.handle_command(
            {"type": "list_accounts", "requestId": "r1", "payload": {}}
        ))
        self.assertEqual(executor.calls, [("list_accounts", {})])
        self.assertEqual(_sent(tunnel), [{
            "type": "response", "requestId": "r1",
            "payload": {"success": True, "accounts": [], "count": 0},
        }])

    def test_unknown_command_answered_once(self):
        tunnel = _connected_tunnel()
        _run_async(tunnel.handle_command({"type": "frobnicate", "requestId": "r2"}))
        frames = _sent(tunnel)
        self.assertEqual(len(frames), 1)
        self.assertEqual(frames[0]["requestId"], "r2")
        self.assertEqual(frames[0]["payload"], {
            "success": False, "error": "Unknown command type", "commandType": "frobnicate",
        })

    def test_executor_exception_becomes_failure_response(self):
        tunnel = _connected_tunnel(FakeExecutor(error=RuntimeError("imap down")))
        _run_async(tunnel.handle_command(
            {"type": "read_email", "requestId": "r3", "payload": {"messageId": 1}}
        ))
        frames = _sent(tunnel)
        self.assertEqual(len(frames), 1)
        payload = frames[0]["payload"]
        self.assertFalse(payload["success"])
        self.assertEqual(payload["error"], "imap down")
        self.assertIn("RuntimeError", payload["stack"])

    def test_system_frames_not_answered(self):
        executor = FakeExecutor()
        tunnel = _connected_tunnel(executor)
        for frame_type in ("welcome", "registered", "heartbeat_ack"):
            _run_async(tunnel.handle_command({"type": frame_type, "payload": {}}))
        tunnel.ws.send.assert_not_awaited()
        self.assertEqual(executor.calls, [])

    def test_command_without_request_id_gets_no_response(self):
        tunnel = _connected_tunnel()
        _run_async(tunnel.handle_command({"type": "list_accounts"}))
        tunnel.ws.send.assert_not_awaited()

    def test_send_when_disconnected_returns_false(self):
        tunnel = WorkerTunnel("ws://relay/ws", FakeExecutor(), "worker@test")
        self.assertFalse(_run_async(tunnel.send({"type": "heartbeat"})))

    def test_malformed_frames_dropped(self):
        tunnel = _connected_tunnel()

        async def scenario():
            tunnel._handle_message("not json")
            tunnel._handle_message("[1, 2]")
            await asyncio.sleep(0)

        _run_async(scenario())
        self.assertEqual(tunnel._command_tasks, set())
        tunnel.ws.send.assert_not_awaited()


class FakeSocket:
    """Websocket stand-in: records sends, yields queued frames until closed."""

    def __init__(self):
        self.sent = []
        self.inbox = asyncio.Queue()

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        await self.inbox.put(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class TestConnectionLifecycle(unittest.TestCase):

    def test_register_and_heartbeat_after_open(self):
        async def scenario():
            sockets = []

            async def connect(url):
                sockets.append(FakeSocket())
                return sockets[-1]

            tunnel = WorkerTunnel("ws://relay/ws", FakeExecutor(), "worker@test",
                                  heartbeat_interval=0.05, connect=connect)
            tunnel.start()
            await asyncio.sleep(0.12)
            state = tunnel.state
            await tunnel.stop()
            return state, sockets[0].sent

        state, sent = _run_async(scenario())
        self.assertEqual(state, CONNECTED)
        self.assertEqual(sent[0]["type"], "register")
        self.assertEqual(sent[0]["addonId"], "worker@test")
        self.assertIn("timestamp", sent[0])
        self.assertGreaterEqual(sum(1 for f in sent if f["type"] == "heartbeat"), 1)

    def test_commands_dispatched_from_socket(self):
        async def scenario():
            socket = FakeSocket()

            async def connect(url):
                return socket

            executor = FakeExecutor({"success": True, "count": 0})
            tunnel = WorkerTunnel("ws://relay/ws", executor, "worker@test", connect=connect)
            tunnel.start()
            await asyncio.sleep(0.01)
            await socket.inbox.put(json.dumps(
                {"type": "list_accounts", "requestId": "abc", "payload": {}}
            ))
            await asyncio.sleep(0.01)
            await tunnel.stop()
            return socket.sent

        sent = _run_async(scenario())
        responses = [f for f in sent if f["type"] == "response"]
        self.assertEqual(responses, [
            {"type": "response", "requestId": "abc", "payload": {"success": True, "count": 0}}
        ])

    def test_repeated_disconnect_schedules_one_reconnect(self):
        async def scenario():
            attempts = []

            async def connect(url):
                attempts.append(url)
                raise OSError("connection refused")

            tunnel = WorkerTunnel("ws://relay/ws", FakeExecutor(), "worker@test",
                                  reconnect_interval=0.05, connect=connect)
            tunnel.start()
            await asyncio.sleep(0.01)
            # Extra close/error signals while a reconnect is already pending
            tunnel._handle_disconnect()
            tunnel._handle_disconnect()
            await asyncio.sleep(0.07)
            count = len(attempts)
            await tunnel.stop()
            return count, tunnel.state

        count, state = _run_async(scenario())
        self.assertEqual(count, 2)
        self.assertEqual(state, DISCONNECTED)

    def test_stop_cancels_pending_reconnect(self):
        async def scenario():
            attempts = []

            async def connect(url):
                attempts.append(url)
                raise OSError("connection refused")

            tunnel = WorkerTunnel("ws://relay/ws", FakeExecutor(), "worker@test",
                                  reconnect_interval=0.05, connect=connect)
            tunnel.start()
            await asyncio.sleep(0.01)
            await tunnel.stop()
            await asyncio.sleep(0.1)
            return len(attempts)

        self.assertEqual(_run_async(scenario()), 1)


if __name__ == "__main__":
    unittest.main()
