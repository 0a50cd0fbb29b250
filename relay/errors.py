"""
╔══════════════════════════════════════════╗
║     MAILBRIDGE — Relay: Error Types      ║
╚══════════════════════════════════════════╝

Every failure the bridge can hand back to a caller
derives from BridgeError.
"""


class BridgeError(Exception):
    """Base class for transport and correlation failures."""


class NoWorkerConnected(BridgeError):
    """No worker connection is current; the command was never sent."""

    def __init__(self, message="No Thunderbird client connected. Make sure the addon is loaded."):
        super().__init__(message)


class RequestTimeout(BridgeError):
    """The deadline for a pending request elapsed before its response arrived."""

    def __init__(self, request_id, command_type=None, timeout=None):
        self.request_id = request_id
        self.command_type = command_type
        self.timeout = timeout
        detail = f" ({command_type} after {timeout:g}s)" if command_type and timeout else ""
        super().__init__(f"Request timeout{detail}")


class WorkerDisconnected(BridgeError):
    """The connection carrying a pending request closed or was superseded."""


class MalformedFrame(BridgeError):
    """A received frame could not be parsed into a message object."""
