"""
╔══════════════════════════════════════════╗
║       MAILBRIDGE — Relay                 ║
╚══════════════════════════════════════════╝

Bridge side of the worker tunnel:
  - ConnectionRegistry — the single current worker
  - CorrelationTable   — requestId → pending future
  - BridgeTransport    — /ws endpoint, /status, send()
"""

from relay.errors import (
    BridgeError,
    MalformedFrame,
    NoWorkerConnected,
    RequestTimeout,
    WorkerDisconnected,
)
from relay.correlation import CorrelationTable, PendingRequest
from relay.registry import Connection, ConnectionRegistry
from relay.server import BridgeTransport, parse_frame
