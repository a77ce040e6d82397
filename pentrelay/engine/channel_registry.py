"""Module channel_registry: per-session table of fingerprint → RemoteCommandChannel."""
#
# PURPOSE:
# Lets one browser session run many commands against the same target without
# re-authenticating each time. Every transport session owns exactly one
# ChannelRegistry; registries are never shared, so two sessions with the same
# (host, port, username) still get independent connections.
#
# INVARIANTS:
# - At most one live channel per fingerprint. obtain() is the only place
#   channels are created, and concurrent obtain() calls for a fingerprint that
#   is still connecting wait on the same pending connect.
# - A channel removes itself from the table when it closes, for any reason.
#

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from pentrelay.base.config import SSHConfig, get_config
from pentrelay.engine.models import ConnectionSpec, Fingerprint
from pentrelay.engine.remote_channel import Emit, RemoteCommandChannel
from pentrelay.errors import ChannelUnavailable
from pentrelay.server.frames import system_frame

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[ConnectionSpec, Emit], RemoteCommandChannel]


class ChannelRegistry:
    def __init__(
        self,
        owner_id: str,
        emit: Emit,
        channel_factory: Optional[ChannelFactory] = None,
        config: Optional[SSHConfig] = None,
    ):
        self.owner_id = owner_id
        self.config = config or get_config().ssh
        self._emit = emit
        self._factory = channel_factory or (lambda spec, emit: RemoteCommandChannel(spec, emit, config=self.config))
        self._channels: Dict[Fingerprint, RemoteCommandChannel] = {}
        self._pending: Dict[Fingerprint, asyncio.Task] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, fingerprint: Fingerprint) -> bool:
        return fingerprint in self._channels

    def get(self, fingerprint: Fingerprint) -> Optional[RemoteCommandChannel]:
        return self._channels.get(fingerprint)

    def channels(self) -> List[RemoteCommandChannel]:
        return list(self._channels.values())

    async def obtain(self, spec: ConnectionSpec) -> RemoteCommandChannel:
        """
        Return the live channel for spec's fingerprint, connecting one if needed.

        Raises:
            ConnectionTimeout / AuthenticationFailed / ChannelUnavailable from
            the connect attempt. A failed channel is never inserted.
        """
        if self._closed:
            raise ChannelUnavailable(f"Session {self.owner_id} is closing")

        fingerprint = spec.fingerprint

        existing = self._channels.get(fingerprint)
        if existing is not None and not existing.closed:
            if existing.is_usable(probe=self.config.probe_before_reuse):
                logger.debug(f"[Registry:{self.owner_id}] Reusing channel {fingerprint}")
                return existing
            logger.info(f"[Registry:{self.owner_id}] Dropping stale channel {fingerprint}")
            await existing.close(reason="failed liveness probe")
            self._channels.pop(fingerprint, None)

        pending = self._pending.get(fingerprint)
        if pending is None:
            pending = asyncio.ensure_future(self._connect(spec))
            self._pending[fingerprint] = pending
            pending.add_done_callback(lambda t, fp=fingerprint: self._forget_pending(fp, t))
        # shield: one waiter being cancelled must not abort the shared connect
        return await asyncio.shield(pending)

    async def _connect(self, spec: ConnectionSpec) -> RemoteCommandChannel:
        channel = self._factory(spec, self._emit)
        await channel.connect()

        if self._closed:
            # Session was torn down while we were authenticating
            await channel.close(reason="session closed during connect")
            raise ChannelUnavailable(f"Session {self.owner_id} closed during connect")

        self._channels[channel.fingerprint] = channel
        channel.add_close_listener(self._evict)
        logger.info(
            f"[Registry:{self.owner_id}] Registered channel {channel.fingerprint} ({len(self._channels)} open)"
        )
        self._emit(system_frame(f"Connected to {channel.fingerprint}", connection=channel.fingerprint.to_dict()))
        return channel

    def _forget_pending(self, fingerprint: Fingerprint, task: asyncio.Future) -> None:
        if self._pending.get(fingerprint) is task:
            del self._pending[fingerprint]
        # Mark the failure retrieved; every waiter already got it via shield()
        if not task.cancelled():
            task.exception()

    def _evict(self, channel: RemoteCommandChannel) -> None:
        # Only remove the entry if it still points at this exact channel
        if self._channels.get(channel.fingerprint) is channel:
            del self._channels[channel.fingerprint]
            logger.info(f"[Registry:{self.owner_id}] Evicted channel {channel.fingerprint}")

    async def resize(self, cols: int, rows: int, fingerprint: Optional[Fingerprint] = None) -> int:
        """Resize attached shells (one fingerprint, or all). Returns how many were resized."""
        if fingerprint is not None:
            targets = [self._channels[fingerprint]] if fingerprint in self._channels else []
        else:
            targets = self.channels()
        resized = 0
        for channel in targets:
            if await channel.resize(cols, rows):
                resized += 1
        return resized

    async def close_all(self) -> int:
        """
        Close every channel this session owns. Returns how many were closed.

        Pending connects are waited out so a channel that finishes
        authenticating after teardown is closed, not leaked.
        """
        self._closed = True
        if self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)

        channels = self.channels()
        for channel in channels:
            await channel.close(reason="session teardown")
        self._channels.clear()
        if channels:
            logger.info(f"[Registry:{self.owner_id}] Closed {len(channels)} channel(s)")
        return len(channels)
