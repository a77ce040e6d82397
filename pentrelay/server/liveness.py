"""Module liveness: periodic heartbeat that evicts silent sessions."""
#
# Every tick each session is pinged and its missed counter incremented; any
# inbound frame (TransportSession.touch) resets the counter. A session that is
# already at max_missed when a tick starts has been silent for that many whole
# intervals and is torn down through Gateway.terminate, so its channels are
# closed before it leaves the table.
#

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional

from pentrelay.base.config import LivenessConfig, get_config
from pentrelay.server.frames import ping_frame
from pentrelay.utils.async_helpers import create_safe_task

if TYPE_CHECKING:
    from pentrelay.server.gateway import Gateway

logger = logging.getLogger(__name__)

# Application close code for heartbeat eviction
CLOSE_HEARTBEAT_TIMEOUT = 4408


class LivenessMonitor:
    def __init__(self, gateway: "Gateway", config: Optional[LivenessConfig] = None):
        self.gateway = gateway
        self.config = config or get_config().liveness
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = create_safe_task(self._run(), name="liveness-monitor")
        logger.info(
            f"[Liveness] Monitor started (interval={self.config.interval_seconds:g}s, "
            f"max_missed={self.config.max_missed})"
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[Liveness] Monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.config.interval_seconds)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # One bad round must not stop heartbeats for everyone else
                logger.exception(f"[Liveness] Tick failed: {e}")

    async def tick(self) -> List[str]:
        """Run one heartbeat round. Returns the ids of evicted sessions."""
        evicted: List[str] = []
        for session in self.gateway.sessions():
            if session.closing:
                continue
            if not session.alive or session.missed_heartbeats >= self.config.max_missed:
                logger.warning(
                    f"[Liveness] Session {session.id} missed {session.missed_heartbeats} heartbeat(s), evicting"
                )
                await self.gateway.terminate(session, reason="heartbeat timeout", code=CLOSE_HEARTBEAT_TIMEOUT)
                evicted.append(session.id)
                continue
            session.missed_heartbeats += 1
            self.gateway.send(session, ping_frame())
        return evicted
