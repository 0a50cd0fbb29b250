"""
╔══════════════════════════════════════════════════════════╗
║      MAILBRIDGE — Relay: Correlation Table               ║
╠══════════════════════════════════════════════════════════╣
║  Maps an in-flight requestId to the future its caller    ║
║  is awaiting. Each entry carries its own deadline timer  ║
║  (loop.call_later), no periodic sweep.                   ║
║                                                          ║
║  An entry is popped from the table BEFORE its future is  ║
║  completed, so a second resolve/timeout/reject for the   ║
║  same id finds nothing and is a no-op.                   ║
╚══════════════════════════════════════════════════════════╝
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from relay.errors import RequestTimeout

logger = logging.getLogger("mailbridge.relay")


@dataclass
class PendingRequest:
    request_id: str
    command_type: str
    future: asyncio.Future
    deadline: float
    connection_id: Optional[str] = None
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class CorrelationTable:
    """Pending requests keyed by requestId."""

    def __init__(self):
        self._pending: Dict[str, PendingRequest] = {}

    def __len__(self):
        return len(self._pending)

    def __contains__(self, request_id):
        return request_id in self._pending

    def register(self, request_id: str, command_type: str, timeout: float,
                 connection_id: Optional[str] = None) -> asyncio.Future:
        """Create a pending entry and return the future its response will complete.

        Must be called from a running event loop. The entry removes itself and
        fails with RequestTimeout if nothing resolves it within `timeout` seconds.
        """
        if request_id in self._pending:
            raise ValueError(f"Request {request_id} is already pending")

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        pending = PendingRequest(
            request_id=request_id,
            command_type=command_type,
            future=future,
            deadline=time.time() + timeout,
            connection_id=connection_id,
        )
        pending.timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = pending

        def _on_done(fut):
            # Caller gave up; free the slot now
            if fut.cancelled():
                self.discard(request_id)

        future.add_done_callback(_on_done)
        return future

    def resolve(self, request_id: str, payload) -> bool:
        """Fulfil a pending entry with a response payload.

        Returns False when no entry matches (already timed out, or stray).
        """
        pending = self._pop(request_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_result(payload)
        return True

    def reject(self, request_id: str, exc: BaseException) -> bool:
        """Fail a pending entry with `exc`. Returns False when nothing matched."""
        pending = self._pop(request_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(exc)
        return True

    def discard(self, request_id: str) -> bool:
        """Drop an entry without completing its future."""
        return self._pop(request_id) is not None

    def abandon_connection(self, connection_id: str, exc_factory) -> int:
        """Reject every entry sent over `connection_id`; returns how many."""
        owned = [rid for rid, p in self._pending.items() if p.connection_id == connection_id]
        for request_id in owned:
            self.reject(request_id, exc_factory(request_id))
        return len(owned)

    def get(self, request_id: str) -> Optional[PendingRequest]:
        return self._pending.get(request_id)

    def _pop(self, request_id):
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, request_id, timeout):
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning(f"[!] Request {request_id} ({pending.command_type}) timed out after {timeout:g}s")
        if not pending.future.done():
            pending.future.set_exception(
                RequestTimeout(request_id, pending.command_type, timeout)
            )
