"""Pytest configuration for the relay gateway."""
import os
import threading
import time

import paramiko
import pytest


def pytest_configure():
    # Loopback bind and no auth unless a test overrides them
    os.environ.setdefault("RELAY_API_HOST", "127.0.0.1")
    os.environ.setdefault("RELAY_REQUIRE_AUTH", "false")
    os.environ.setdefault("RELAY_AI_ENDPOINT", "http://reasoning.test/api/v1/prediction/test-flow")
    os.environ.setdefault("RELAY_SSH_CONNECT_TIMEOUT", "2")


@pytest.fixture(autouse=True)
def fresh_config():
    """Each test sees a config rebuilt from the environment and a fresh app state."""
    from pentrelay.base.config import set_config
    from pentrelay.server.state import ApplicationState

    set_config(None)
    ApplicationState.reset()
    yield
    set_config(None)
    ApplicationState.reset()


# ---------------------------------------------------------------------------
# Fake paramiko objects
# ---------------------------------------------------------------------------
# Just enough of SSHClient / Transport / Channel for RemoteCommandChannel.
# A FakeSSHServer hands out clients and remembers every one of them, so tests
# can count connects and inspect what was executed.


class FakeChannel:
    def __init__(self, stdout=b"", stderr=b"", exit_status=0, interactive=False):
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self._exit_status = exit_status
        self.interactive = interactive
        self.closed = False
        self.eof_received = False
        self.command = None
        self.sent = []
        self.pty_size = None
        self._lock = threading.Lock()

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        with self._lock:
            return self._stdout.pop(0) if self._stdout else b""

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        with self._lock:
            return self._stderr.pop(0) if self._stderr else b""

    def exit_status_ready(self):
        if self.interactive:
            return False
        return not self._stdout and not self._stderr

    def recv_exit_status(self):
        return self._exit_status

    def sendall(self, data):
        if self.closed:
            raise OSError("Socket is closed")
        self.sent.append(data)
        # Echo back like a terminal would
        with self._lock:
            self._stdout.append(data)

    def resize_pty(self, width=80, height=24):
        self.pty_size = (width, height)

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, server):
        self.server = server
        self.active = True
        self.ignores = 0
        self.sessions = []

    def is_active(self):
        return self.active

    def send_ignore(self):
        if self.server.probe_error is not None:
            raise self.server.probe_error
        self.ignores += 1

    def open_session(self):
        if not self.active:
            raise paramiko.SSHException("SSH session not active")
        chan = FakeChannel()
        original_exec = chan.exec_command

        def exec_command(command):
            original_exec(command)
            stdout, stderr, status = self.server.scripts.get(command, (b"", b"", 0))
            chan._stdout = [stdout] if stdout else []
            chan._stderr = [stderr] if stderr else []
            chan._exit_status = status

        chan.exec_command = exec_command
        self.sessions.append(chan)
        return chan


class FakeSSHClient:
    def __init__(self, server):
        self.server = server
        self.transport = None
        self.connect_kwargs = None
        self.closed = False
        self.shells = []
        self.policy = None

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, **kwargs):
        self.connect_kwargs = kwargs
        self.server.connects += 1
        if self.server.connect_delay:
            time.sleep(self.server.connect_delay)
        if self.server.connect_error is not None:
            raise self.server.connect_error
        self.transport = FakeTransport(self.server)

    def get_transport(self):
        return self.transport

    def invoke_shell(self, term="vt100", width=80, height=24):
        if self.server.shell_delay:
            time.sleep(self.server.shell_delay)
        if self.server.shell_error is not None:
            raise self.server.shell_error
        chan = FakeChannel(interactive=True)
        chan.term = term
        chan.pty_size = (width, height)
        self.shells.append(chan)
        return chan

    def close(self):
        self.closed = True
        if self.transport is not None:
            self.transport.active = False
        for shell in self.shells:
            shell.close()


class FakeSSHServer:
    def __init__(self):
        self.clients = []
        self.connects = 0
        self.connect_delay = 0.0
        self.connect_error = None
        self.probe_error = None
        self.shell_error = None
        self.shell_delay = 0.0
        # command -> (stdout bytes, stderr bytes, exit status)
        self.scripts = {}

    def client_factory(self):
        client = FakeSSHClient(self)
        self.clients.append(client)
        return client


@pytest.fixture
def ssh_server():
    return FakeSSHServer()


@pytest.fixture
def ssh_config():
    from pentrelay.base.config import SSHConfig

    return SSHConfig(connect_timeout=2.0, poll_interval=0.01, watch_interval=0.02)


@pytest.fixture
def channel_factory(ssh_server, ssh_config):
    """ChannelRegistry factory producing real RemoteCommandChannels over fake paramiko."""
    from pentrelay.engine.remote_channel import RemoteCommandChannel

    def factory(spec, emit):
        return RemoteCommandChannel(spec, emit, config=ssh_config, client_factory=ssh_server.client_factory)

    return factory
