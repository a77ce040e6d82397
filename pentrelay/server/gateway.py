"""Module gateway: accepts transport sessions and routes their frames."""
#
# PURPOSE:
# The Gateway owns the table of live TransportSessions and is the only
# component that writes to a session's mailbox. Each inbound frame is decoded
# and dispatched through one dispatch table keyed by FrameKind; starting an
# autonomous session only changes bridge state, never the table.
#
# DISPATCH:
# - Every handler runs inline, so each frame's effect on session state (the
#   bridge, the registry, queued channel work) is applied in arrival order.
# - Work that waits on SSH or the reasoning service is spawned from the
#   handler as a per-session task, so the receive loop keeps serving pings
#   and stop_pentest meanwhile.
# - Channel work for one fingerprint (connect, shell open, shell writes,
#   resize) is queued on that fingerprint's lane and runs in frame order.
#   One-shot exec output streams outside the lane.
# - Any RelayError raised by a handler becomes an `error` frame to the sender.
#   Nothing a single frame does can take the session down, except repeated
#   protocol garbage (MAX_PROTOCOL_ERRORS in a row).
#
# TEARDOWN (terminate):
#   cancel session tasks → close every channel → close the bridge →
#   drop the session from the table → flush and close the socket.
#

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pentrelay.ai.agent_bridge import AgentBridge
from pentrelay.ai.prompts import resolve_template
from pentrelay.ai.reasoning_client import ReasoningClient
from pentrelay.base.config import RelayConfig, get_config
from pentrelay.engine.channel_registry import ChannelFactory, ChannelRegistry
from pentrelay.errors import ProtocolError, RelayError, handle_error
from pentrelay.server.frames import (
    AISpec,
    CommandOutputFrame,
    ExecuteCommandFrame,
    FrameKind,
    ResizeFrame,
    StartPentestFrame,
    decode_frame,
    parse_payload,
    pong_frame,
    system_frame,
)
from pentrelay.server.transport import TransportSession
from pentrelay.utils.async_helpers import cancel_and_wait, create_safe_task

logger = logging.getLogger(__name__)

Handler = Callable[[TransportSession, Dict[str, Any]], Awaitable[None]]
ReasoningClientFactory = Callable[[AISpec], ReasoningClient]

# Consecutive undecodable frames tolerated before the session is dropped
MAX_PROTOCOL_ERRORS = 20

# Close code sent after too many protocol errors (RFC 6455 policy violation)
CLOSE_POLICY_VIOLATION = 1008


class Gateway:
    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        channel_factory: Optional[ChannelFactory] = None,
        reasoning_client_factory: Optional[ReasoningClientFactory] = None,
    ):
        self.config = config or get_config()
        self._sessions: Dict[str, TransportSession] = {}
        self._channel_factory = channel_factory
        self._client_factory = reasoning_client_factory or self._default_client

        self._handlers: Dict[FrameKind, Handler] = {
            FrameKind.PING: self._on_ping,
            FrameKind.PONG: self._on_pong,
            FrameKind.EXECUTE_COMMAND: self._on_execute_command,
            FrameKind.COMMAND_OUTPUT: self._on_command_output,
            FrameKind.START_PENTEST: self._on_start_pentest,
            FrameKind.STOP_PENTEST: self._on_stop_pentest,
            FrameKind.RESIZE: self._on_resize,
        }

    # ------------------------------------------------------------------
    # Session table
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._sessions)

    def sessions(self) -> List[TransportSession]:
        return list(self._sessions.values())

    def get(self, session_id: str) -> Optional[TransportSession]:
        return self._sessions.get(session_id)

    async def accept(self, session: TransportSession) -> TransportSession:
        self._sessions[session.id] = session
        session.registry = ChannelRegistry(
            session.id,
            emit=self.emitter(session),
            channel_factory=self._channel_factory,
            config=self.config.ssh,
        )
        session.start_writer()
        logger.info(f"[Gateway] Session {session.id} connected from {session.peer} ({len(self._sessions)} active)")
        self.send(session, system_frame("Connected to pentest relay gateway", sessionId=session.id))
        return session

    def send(self, session: TransportSession, frame: Dict[str, Any]) -> bool:
        """Queue a frame for one session. False if the session is gone."""
        if self._sessions.get(session.id) is not session:
            return False
        return session.enqueue(frame)

    def emitter(self, session: TransportSession) -> Callable[[Dict[str, Any]], bool]:
        """Send callback bound to one session, handed to registries and bridges."""
        return functools.partial(self.send, session)

    def _report(self, session: TransportSession, error: RelayError) -> None:
        logger.warning(f"[Gateway] Session {session.id}: {error}")
        self.send(session, error.to_frame())

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def handle_message(self, session: TransportSession, raw: Any) -> None:
        """Decode one inbound message and dispatch it to exactly one handler."""
        session.touch()
        try:
            kind, payload = decode_frame(raw)
        except ProtocolError as e:
            session.protocol_errors += 1
            self._report(session, e)
            if session.protocol_errors >= MAX_PROTOCOL_ERRORS:
                await self.terminate(session, reason="too many protocol errors", code=CLOSE_POLICY_VIOLATION)
            return
        session.protocol_errors = 0

        handler = self._handlers[kind]
        await self._guarded(session, kind, handler, session, payload)

    def _spawn(
        self,
        session: TransportSession,
        kind: FrameKind,
        work: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> asyncio.Task:
        """Run the long part of a handler as a per-session task."""
        task = create_safe_task(self._guarded(session, kind, work, *args), name=f"{kind.value}:{session.id}")
        return session.track(task)

    async def _guarded(
        self,
        session: TransportSession,
        kind: FrameKind,
        work: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> None:
        try:
            await work(*args)
        except RelayError as e:
            self._report(session, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"[Gateway] Unexpected error handling {kind.value} for session {session.id}")
            self._report(session, handle_error(e, context=f"while handling {kind.value}"))

    async def _on_ping(self, session: TransportSession, payload: Dict[str, Any]) -> None:
        self.send(session, pong_frame())

    async def _on_pong(self, session: TransportSession, payload: Dict[str, Any]) -> None:
        logger.debug(f"[Gateway] Heartbeat from {session.id}")

    async def _on_execute_command(self, session: TransportSession, payload: Dict[str, Any]) -> None:
        frame = parse_payload(ExecuteCommandFrame, payload)
        self._spawn(session, FrameKind.EXECUTE_COMMAND, self._run_command, session, frame)

    async def _run_command(self, session: TransportSession, frame: ExecuteCommandFrame) -> None:
        fingerprint = frame.connection.fingerprint
        logger.info(f"[Gateway] Session {session.id} executing on {fingerprint}: {frame.command}")
        async with session.lane(fingerprint):
            channel = await session.registry.obtain(frame.connection)
            if frame.interactive or channel.shell is not None:
                # Shell writes return at once; keep them in the lane so they stay ordered
                await channel.execute(frame.command, interactive=frame.interactive)
                return
        # One-shot output can stream for minutes; later frames need not wait for it
        await channel.execute(frame.command)

    async def _on_command_output(self, session: TransportSession, payload: Dict[str, Any]) -> None:
        frame = parse_payload(CommandOutputFrame, payload)
        bridge = session.bridge
        if bridge is None or not bridge.active:
            logger.debug(f"[Gateway] Session {session.id}: command output with no active agent, ignored")
            return
        prompt = bridge.resume(frame.command, frame.output)
        if prompt is not None:
            self._spawn(session, FrameKind.COMMAND_OUTPUT, bridge.reason, prompt)

    async def _on_start_pentest(self, session: TransportSession, payload: Dict[str, Any]) -> None:
        frame = parse_payload(StartPentestFrame, payload)

        previous = session.bridge
        if previous is not None and previous.active:
            await previous.stop()
            self.send(session, system_frame("Previous autonomous session stopped"))

        system_prompt = resolve_template(
            frame.ai.prompt_template,
            frame.ai.system_prompt,
            self.config.ai.default_template,
        )
        bridge = AgentBridge(
            session.id,
            frame.target,
            emit=self.emitter(session),
            client=self._client_factory(frame.ai),
            additional_info=frame.additional_info,
            system_prompt=system_prompt,
            connection=frame.connection.fingerprint if frame.connection else None,
            auto_execute=frame.headless_mode,
        )
        session.bridge = bridge
        prompt = bridge.begin()
        self.send(session, system_frame(f"Autonomous session started against {frame.target}"))
        self._spawn(session, FrameKind.START_PENTEST, bridge.reason, prompt)

    async def _on_stop_pentest(self, session: TransportSession, payload: Dict[str, Any]) -> None:
        bridge = session.bridge
        if bridge is None or not bridge.active:
            self.send(session, system_frame("No autonomous session is running"))
            return
        await bridge.stop()
        self.send(session, system_frame("Autonomous session stopped"))

    async def _on_resize(self, session: TransportSession, payload: Dict[str, Any]) -> None:
        frame = parse_payload(ResizeFrame, payload)
        self._spawn(session, FrameKind.RESIZE, self._resize, session, frame)

    async def _resize(self, session: TransportSession, frame: ResizeFrame) -> None:
        fingerprint = frame.connection.fingerprint if frame.connection else None
        lanes = [session.lane(fingerprint)] if fingerprint is not None else list(session.lanes.values())
        # Wait out channel work queued before this frame (e.g. the shell it resizes)
        for lane in lanes:
            async with lane:
                pass
        resized = await session.registry.resize(frame.cols, frame.rows, fingerprint)
        logger.debug(f"[Gateway] Session {session.id}: resized {resized} shell(s) to {frame.cols}x{frame.rows}")

    def _default_client(self, ai: AISpec) -> ReasoningClient:
        return ReasoningClient.from_settings(
            endpoint=ai.endpoint,
            flowise_endpoint=ai.flowise_endpoint,
            chatflow_id=ai.flowise_chatflow_id,
            api_key=ai.api_key,
            config=self.config.ai,
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def terminate(self, session: TransportSession, reason: str = "disconnected", code: int = 1000) -> None:
        """Tear a session down: channels first, then the bridge, then the socket. Idempotent."""
        if session.closing:
            return
        session.closing = True
        logger.info(f"[Gateway] Terminating session {session.id}: {reason}")

        await cancel_and_wait(list(session.tasks))

        closed = 0
        if session.registry is not None:
            closed = await session.registry.close_all()

        if session.bridge is not None:
            await session.bridge.close()

        self._sessions.pop(session.id, None)
        await session.close(code=code, reason=reason)
        logger.info(
            f"[Gateway] Session {session.id} removed ({closed} channel(s) closed, {len(self._sessions)} active)"
        )

    async def shutdown(self) -> None:
        for session in self.sessions():
            await self.terminate(session, reason="server shutdown", code=1001)

    def stats(self) -> Dict[str, Any]:
        sessions = self.sessions()
        return {
            "sessions": len(sessions),
            "channels": sum(len(s.registry) for s in sessions if s.registry is not None),
            "autonomous": sum(1 for s in sessions if s.bridge is not None and s.bridge.active),
        }
