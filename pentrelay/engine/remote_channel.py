"""Module remote_channel: one authenticated SSH connection owned by a transport session."""
#
# PURPOSE:
# A RemoteCommandChannel wraps a paramiko SSHClient and exposes the three
# things the gateway needs from it: run a one-shot command with streamed
# output, open an interactive shell that later commands are typed into, and
# resize that shell's window.
#
# STATE MACHINE:
#   connecting → ready ⇄ executing
#        ↓         ↓        ↓
#        └──→ closing ──→ closed
# Every state change goes through _transition(), which consults TRANSITIONS
# and raises InvalidTransition for anything else.
#
# THREADING:
# paramiko is blocking, so connect/exec/recv run in worker threads via
# asyncio.to_thread. Output chunks are handed back to the event loop with
# loop.call_soon_threadsafe, which keeps frame emission (and all state
# mutation) on the loop thread and preserves per-stream ordering.
#
# WATCHING:
# A ready channel polls its transport every ssh.watch_interval. A transport
# the remote side dropped is reported once as an `error` frame and the channel
# closes, which evicts it from its registry.
#

from __future__ import annotations

import asyncio
import codecs
import io
import logging
import socket
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import paramiko

from pentrelay.base.config import SSHConfig, get_config
from pentrelay.engine.models import ConnectionSpec, Fingerprint
from pentrelay.errors import (
    AuthenticationFailed,
    ChannelUnavailable,
    ConnectionTimeout,
    ErrorCode,
    InvalidTransition,
    RelayError,
    ShellUnavailable,
)
from pentrelay.server.frames import error_frame, output_frame, system_frame
from pentrelay.utils.async_helpers import create_safe_task

logger = logging.getLogger(__name__)

Emit = Callable[[Dict[str, Any]], None]

# Errors paramiko raises when the underlying transport is gone
TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, OSError)


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    EXECUTING = "executing"
    CLOSING = "closing"
    CLOSED = "closed"


TRANSITIONS: Dict[ChannelState, frozenset] = {
    ChannelState.CONNECTING: frozenset({ChannelState.READY, ChannelState.CLOSING, ChannelState.CLOSED}),
    ChannelState.READY: frozenset({ChannelState.EXECUTING, ChannelState.CLOSING}),
    # executing → executing: several one-shot commands may share a connection
    ChannelState.EXECUTING: frozenset({ChannelState.EXECUTING, ChannelState.READY, ChannelState.CLOSING}),
    ChannelState.CLOSING: frozenset({ChannelState.CLOSED}),
    ChannelState.CLOSED: frozenset(),
}


def load_private_key(key_text: str) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key of any supported type."""
    last_error: Optional[Exception] = None
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(key_text))
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise AuthenticationFailed(
        "Unsupported or malformed private key",
        details={"reason": str(last_error) if last_error else "unknown"},
    )


class ShellHandle:
    """An interactive PTY shell attached to a RemoteCommandChannel."""

    def __init__(self, chan: paramiko.Channel, cols: int, rows: int):
        self.chan = chan
        self.cols = cols
        self.rows = rows
        self.reader: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return bool(getattr(self.chan, "closed", False))

    async def write(self, text: str) -> None:
        await asyncio.to_thread(self.chan.sendall, text.encode("utf-8"))

    async def resize(self, cols: int, rows: int) -> None:
        await asyncio.to_thread(self.chan.resize_pty, width=cols, height=rows)
        self.cols, self.rows = cols, rows

    def close(self) -> None:
        try:
            self.chan.close()
        except TRANSPORT_ERRORS as e:
            logger.debug(f"[Shell] Close raised {e!r}")


class RemoteCommandChannel:
    """
    One SSH connection to (host, port, username), owned by exactly one
    transport session.

    Output is reported through `emit`, a send callback bound by the gateway
    to the owning session. Close listeners run once, when the channel reaches
    `closed`; the channel registry uses this to evict itself.
    """

    def __init__(
        self,
        spec: ConnectionSpec,
        emit: Emit,
        config: Optional[SSHConfig] = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ):
        self.spec = spec
        self.fingerprint: Fingerprint = spec.fingerprint
        self.config = config or get_config().ssh
        self.state = ChannelState.CONNECTING
        self.shell: Optional[ShellHandle] = None
        self.created_at = time.time()

        self._emit = emit
        self._client_factory = client_factory
        self._client: Optional[paramiko.SSHClient] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inflight = 0
        # Serializes shell open and shell writes
        self._shell_lock = asyncio.Lock()
        self._watcher: Optional[asyncio.Task] = None
        self._close_listeners: List[Callable[["RemoteCommandChannel"], None]] = []

    def __repr__(self) -> str:
        return f"<RemoteCommandChannel {self.fingerprint} state={self.state.value}>"

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_state: ChannelState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Channel {self.fingerprint}: {self.state.value} -> {new_state.value} is not allowed",
                details={"from": self.state.value, "to": new_state.value},
            )
        logger.debug(f"[Channel] {self.fingerprint}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def closed(self) -> bool:
        return self.state in (ChannelState.CLOSING, ChannelState.CLOSED)

    def add_close_listener(self, callback: Callable[["RemoteCommandChannel"], None]) -> None:
        self._close_listeners.append(callback)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> "RemoteCommandChannel":
        """
        Authenticate to the remote host.

        Raises:
            ConnectionTimeout: connect/auth exceeded ssh.connect_timeout
            AuthenticationFailed: credentials rejected or key unreadable
            ChannelUnavailable: host unreachable or SSH negotiation failed
        """
        self._loop = asyncio.get_running_loop()
        timeout = self.config.connect_timeout

        kwargs: Dict[str, Any] = {
            "hostname": self.spec.host,
            "port": self.spec.port,
            "username": self.spec.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }

        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        logger.info(f"[Channel] Connecting to {self.fingerprint}")
        try:
            if self.spec.ssh_key:
                kwargs["pkey"] = load_private_key(self.spec.ssh_key)
            else:
                kwargs["password"] = self.spec.password
            # The outer bound also covers DNS resolution, which paramiko does not time out
            await asyncio.wait_for(asyncio.to_thread(client.connect, **kwargs), timeout=timeout + 1.0)
        except (asyncio.TimeoutError, socket.timeout):
            await self._abort(client)
            raise ConnectionTimeout(
                f"Timed out connecting to {self.fingerprint} after {timeout:g}s",
                details={"fingerprint": str(self.fingerprint)},
            )
        except paramiko.AuthenticationException as e:
            await self._abort(client)
            raise AuthenticationFailed(
                f"Authentication failed for {self.fingerprint}",
                details={"fingerprint": str(self.fingerprint), "reason": str(e)},
            )
        except AuthenticationFailed:
            await self._abort(client)
            raise
        except TRANSPORT_ERRORS as e:
            await self._abort(client)
            raise ChannelUnavailable(
                f"Unable to connect to {self.fingerprint}: {e}",
                code=ErrorCode.CHAN_CONNECT_FAILED,
                details={"fingerprint": str(self.fingerprint)},
            )

        self._client = client
        self._transition(ChannelState.READY)
        self._watcher = create_safe_task(self._watch_transport(), name=f"transport-watch:{self.fingerprint}")
        logger.info(f"[Channel] Connected to {self.fingerprint}")
        return self

    async def _abort(self, client: paramiko.SSHClient) -> None:
        await asyncio.to_thread(client.close)
        self._transition(ChannelState.CLOSED)

    def is_usable(self, probe: bool = False) -> bool:
        """
        True when the channel can take another command.

        With probe=True an SSH_MSG_IGNORE is written to the socket, which
        surfaces half-dead connections the transport has not noticed yet.
        """
        if self.state not in (ChannelState.READY, ChannelState.EXECUTING) or self._client is None:
            return False
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            return False
        if probe:
            try:
                transport.send_ignore()
            except TRANSPORT_ERRORS as e:
                logger.info(f"[Channel] Liveness probe failed for {self.fingerprint}: {e!r}")
                return False
        return True

    async def _require_usable(self) -> None:
        if self.is_usable():
            return
        await self.close(reason="stale connection")
        raise ChannelUnavailable(
            f"Connection to {self.fingerprint} is no longer usable",
            details={"fingerprint": str(self.fingerprint)},
        )

    async def _watch_transport(self) -> None:
        """Report the connection once if the remote end drops it."""
        while True:
            await asyncio.sleep(self.config.watch_interval)
            if self.closed:
                return
            transport = self._client.get_transport() if self._client is not None else None
            if transport is None or not transport.is_active():
                err = await self._transport_failure(EOFError("SSH transport closed by remote host"))
                self._emit(err.to_frame())
                return

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, command: str, interactive: bool = False) -> Optional[int]:
        """
        Run `command` on the remote host.

        With a shell attached (or interactive=True, which opens one), the
        command is typed into the shell and None is returned immediately.
        Otherwise it runs as a one-shot exec whose stdout/stderr stream out as
        `output`/`error` frames, followed by one `system` frame with the exit
        status, which is also returned.
        """
        await self._require_usable()

        if interactive or self.shell is not None:
            # One critical section per command keeps shell writes in call order
            async with self._shell_lock:
                shell = self.shell
                if shell is not None and shell.closed:
                    shell = None
                if shell is None and interactive:
                    shell = await self._open_shell()
                if shell is not None:
                    try:
                        await shell.write(command + "\n")
                    except TRANSPORT_ERRORS as e:
                        raise await self._transport_failure(e)
                    return None

        return await self._exec_once(command)

    async def _exec_once(self, command: str) -> Optional[int]:
        self._inflight += 1
        self._transition(ChannelState.EXECUTING)
        try:
            exit_status = await asyncio.to_thread(self._run_exec, command)
        except TRANSPORT_ERRORS as e:
            raise await self._transport_failure(e)
        finally:
            self._inflight -= 1
            if self.state is ChannelState.EXECUTING and self._inflight == 0:
                self._transition(ChannelState.READY)

        status_text = "unknown" if exit_status is None else str(exit_status)
        self._emit(system_frame(
            f"Command completed with exit status {status_text}",
            exitStatus=exit_status,
            command=command,
        ))
        return exit_status

    def _run_exec(self, command: str) -> Optional[int]:
        # Runs in a worker thread
        transport = self._client.get_transport() if self._client else None
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("SSH transport is not active")
        chan = transport.open_session()
        try:
            chan.exec_command(command)
            return self._pump(chan)
        finally:
            chan.close()

    def _pump(self, chan: paramiko.Channel) -> Optional[int]:
        """
        Forward everything `chan` produces until it exits or closes.

        Runs in a worker thread. Returns the exit status when the remote side
        reported one.
        """
        size = self.config.read_chunk_size
        stdout = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stderr = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while True:
            got_data = False
            if chan.recv_ready():
                data = chan.recv(size)
                if data:
                    got_data = True
                    text = stdout.decode(data)
                    if text:
                        self._post(output_frame(text))
            if chan.recv_stderr_ready():
                data = chan.recv_stderr(size)
                if data:
                    got_data = True
                    text = stderr.decode(data)
                    if text:
                        self._post(error_frame(text))
            if got_data:
                continue
            if chan.exit_status_ready() or chan.closed or chan.eof_received:
                break
            time.sleep(self.config.poll_interval)

        tail = stdout.decode(b"", final=True)
        if tail:
            self._post(output_frame(tail))
        tail = stderr.decode(b"", final=True)
        if tail:
            self._post(error_frame(tail))

        if chan.exit_status_ready():
            return chan.recv_exit_status()
        return None

    def _post(self, frame: Dict[str, Any]) -> None:
        """Hand a frame from a worker thread to the event loop."""
        try:
            self._loop.call_soon_threadsafe(self._emit, frame)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug(f"[Channel] Dropped frame for {self.fingerprint}: event loop closed")

    # ------------------------------------------------------------------
    # Interactive shell
    # ------------------------------------------------------------------

    async def open_shell(self, cols: Optional[int] = None, rows: Optional[int] = None) -> ShellHandle:
        """
        Attach an interactive PTY shell, or return the one already attached.

        Concurrent callers share one shell; a channel never has two.

        Raises:
            ChannelUnavailable: the connection itself is dead
            ShellUnavailable: the server refused the PTY/shell request
        """
        async with self._shell_lock:
            return await self._open_shell(cols, rows)

    async def _open_shell(self, cols: Optional[int] = None, rows: Optional[int] = None) -> ShellHandle:
        # Caller holds _shell_lock
        if self.shell is not None and not self.shell.closed:
            return self.shell
        await self._require_usable()

        cols = cols or self.config.default_cols
        rows = rows or self.config.default_rows
        try:
            chan = await asyncio.to_thread(
                self._client.invoke_shell, term=self.config.term, width=cols, height=rows
            )
        except TRANSPORT_ERRORS as e:
            # The channel stays open; one-shot exec may still work
            raise ShellUnavailable(
                f"Unable to open an interactive shell on {self.fingerprint}: {e}",
                details={"fingerprint": str(self.fingerprint)},
            )

        if self.closed:
            chan.close()
            raise ChannelUnavailable(
                f"Connection to {self.fingerprint} closed while opening a shell",
                details={"fingerprint": str(self.fingerprint)},
            )

        shell = ShellHandle(chan, cols, rows)
        self.shell = shell
        shell.reader = create_safe_task(self._read_shell(shell), name=f"shell-reader:{self.fingerprint}")
        logger.info(f"[Channel] Interactive shell opened on {self.fingerprint} ({cols}x{rows})")
        self._emit(system_frame(f"Interactive shell opened on {self.fingerprint}"))
        return shell

    async def _read_shell(self, shell: ShellHandle) -> None:
        try:
            await asyncio.to_thread(self._pump, shell.chan)
        except TRANSPORT_ERRORS as e:
            if not self.closed:
                err = await self._transport_failure(e)
                self._emit(err.to_frame())
            return
        finally:
            if self.shell is shell:
                self.shell = None
            shell.close()

        if self.closed:
            return
        if not self.is_usable():
            # The whole connection went away, not just the shell
            err = await self._transport_failure(EOFError("SSH transport closed by remote host"))
            self._emit(err.to_frame())
            return
        logger.info(f"[Channel] Interactive shell on {self.fingerprint} closed by remote")
        self._emit(system_frame(f"Interactive shell on {self.fingerprint} closed"))

    async def resize(self, cols: int, rows: int) -> bool:
        """Apply a new window size to the attached shell. False when no shell is attached."""
        shell = self.shell
        if shell is None or shell.closed:
            return False
        try:
            await shell.resize(cols, rows)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"[Channel] Resize failed on {self.fingerprint}: {e!r}")
            return False
        return True

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _transport_failure(self, error: Exception) -> RelayError:
        logger.warning(f"[Channel] Transport error on {self.fingerprint}: {error!r}")
        await self.close(reason="transport error")
        return ChannelUnavailable(
            f"Connection to {self.fingerprint} failed: {error}",
            details={"fingerprint": str(self.fingerprint)},
        )

    async def close(self, reason: str = "closed") -> None:
        """Close the shell (if any) and the SSH connection. Idempotent."""
        if self.closed:
            return
        self._transition(ChannelState.CLOSING)

        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()

        shell, self.shell = self.shell, None
        if shell is not None:
            shell.close()
            reader = shell.reader
            if reader is not None and not reader.done() and reader is not asyncio.current_task():
                # Closing the channel ends the reader's pump loop
                await asyncio.wait([reader], timeout=1.0)

        client, self._client = self._client, None
        if client is not None:
            try:
                await asyncio.to_thread(client.close)
            except TRANSPORT_ERRORS as e:
                logger.debug(f"[Channel] Error while closing {self.fingerprint}: {e!r}")

        self._transition(ChannelState.CLOSED)
        logger.info(f"[Channel] Closed {self.fingerprint} ({reason})")

        listeners, self._close_listeners = self._close_listeners, []
        for callback in listeners:
            callback(self)
