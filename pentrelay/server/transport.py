"""Module transport: one browser client's duplex connection to the gateway."""
#
# PURPOSE:
# A TransportSession is the gateway's handle on one websocket. It owns the
# outbound mailbox (drained in FIFO order by a single writer task), the
# liveness bookkeeping read by the LivenessMonitor, and the per-session
# sub-objects: the ChannelRegistry and, in autonomous mode, the AgentBridge.
#
# Only the Gateway puts frames in the mailbox (Gateway.send); everything else
# gets a send callback bound by the Gateway.
#

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Set

from pentrelay.utils.async_helpers import create_safe_task

if TYPE_CHECKING:
    from pentrelay.ai.agent_bridge import AgentBridge
    from pentrelay.engine.channel_registry import ChannelRegistry
    from pentrelay.engine.models import Fingerprint

logger = logging.getLogger(__name__)

Sender = Callable[[str], Awaitable[None]]
Closer = Callable[[int, str], Awaitable[None]]

# Mailbox sentinel that tells the writer to stop after flushing
_CLOSE = object()


class TransportSession:
    def __init__(
        self,
        sender: Sender,
        closer: Optional[Closer] = None,
        session_id: Optional[str] = None,
        peer: str = "unknown",
    ):
        self.id = session_id or str(uuid.uuid4())
        self.peer = peer
        self.connected_at = time.time()

        # Liveness
        self.alive = True
        self.closing = False
        self.last_seen = time.monotonic()
        self.missed_heartbeats = 0

        # Owned sub-objects (attached by the Gateway)
        self.registry: Optional["ChannelRegistry"] = None
        self.bridge: Optional["AgentBridge"] = None
        self.tasks: Set[asyncio.Task] = set()
        # One FIFO lane per fingerprint for channel work (connect, shell, resize)
        self.lanes: Dict["Fingerprint", asyncio.Lock] = {}

        self.frames_in = 0
        self.frames_out = 0
        self.protocol_errors = 0

        self._sender = sender
        self._closer = closer
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<TransportSession {self.id} peer={self.peer} alive={self.alive}>"

    def touch(self) -> None:
        """Record inbound traffic; any frame counts as proof of life."""
        self.last_seen = time.monotonic()
        self.missed_heartbeats = 0
        self.frames_in += 1

    def enqueue(self, frame: Dict[str, Any]) -> bool:
        if not self.alive:
            return False
        self._mailbox.put_nowait(frame)
        return True

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Keep a per-session task so teardown can cancel it."""
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def lane(self, fingerprint: "Fingerprint") -> asyncio.Lock:
        """
        Lock serializing channel work for one fingerprint.

        asyncio.Lock wakes waiters in arrival order, and tasks spawned in frame
        order reach the lock in that order, so channel work runs in the order
        its frames were received.
        """
        lock = self.lanes.get(fingerprint)
        if lock is None:
            lock = self.lanes[fingerprint] = asyncio.Lock()
        return lock

    def start_writer(self) -> None:
        if self._writer is None:
            self._writer = create_safe_task(self._drain(), name=f"writer:{self.id}")

    async def _drain(self) -> None:
        while True:
            frame = await self._mailbox.get()
            if frame is _CLOSE:
                return
            try:
                await self._sender(json.dumps(frame, default=str))
            except Exception as e:
                # Socket is gone; the receive loop will notice and tear down
                logger.info(f"[Transport:{self.id}] Send failed, marking session dead: {e!r}")
                self.alive = False
                return
            self.frames_out += 1

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Flush pending frames, stop the writer and close the socket."""
        if self._writer is not None and not self._writer.done():
            self._mailbox.put_nowait(_CLOSE)
            try:
                await asyncio.wait_for(self._writer, timeout=2.0)
            except asyncio.TimeoutError:
                self._writer.cancel()
        self.alive = False

        if self._closer is not None:
            try:
                await self._closer(code, reason)
            except Exception as e:
                logger.debug(f"[Transport:{self.id}] Close raised {e!r} (socket already closed)")
