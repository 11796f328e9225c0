"""Fakes for the asyncssh connection used across the test suite."""

import asyncio
import re
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Tuple

import asyncssh
import pytest

from remote_ssh.bootstrap import render_result_block
from remote_ssh.models import RemoteAuthority
from remote_ssh.session import Session, SessionManager

MARKER_RE = re.compile(r'echo "([0-9a-f]{24}): start"')
COMMIT = "0123456789abcdef0123456789abcdef01234567"


class FakeStream:
    """Returns queued chunks, then EOF (or blocks until closed when hanging)"""

    def __init__(self, chunks=(), hang: bool = False):
        self._chunks = list(chunks)
        self._hang = hang
        self._eof = asyncio.Event()

    async def read(self, n: int = -1) -> str:
        if self._chunks:
            return self._chunks.pop(0)
        if self._hang:
            await self._eof.wait()
        return ""

    def feed_eof(self) -> None:
        self._eof.set()


class FakeProcess:
    def __init__(self, stdout=(), stderr=(), exit_status: int = 0, hang: bool = False,
                 delay: float = 0):
        self._stdout_text = "".join(stdout)
        self._stderr_text = "".join(stderr)
        self.stdout = FakeStream(stdout, hang)
        self.stderr = FakeStream(stderr, hang)
        self.exit_status: Optional[int] = None
        self._final_status = exit_status
        self._hang = hang
        self._delay = delay
        self._closed = asyncio.Event()
        self.closed = False
        self.on_close: Optional[Callable[[], None]] = None

    async def wait(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._hang:
            await self._closed.wait()
        else:
            self.exit_status = self._final_status
        return SimpleNamespace(stdout=self._stdout_text, stderr=self._stderr_text,
                               exit_status=self.exit_status)

    def close(self) -> None:
        if not self.closed and self.on_close is not None:
            self.on_close()
        self.closed = True
        self._closed.set()
        self.stdout.feed_eof()
        self.stderr.feed_eof()


class FakeListener:
    def __init__(self, port: int):
        self.port = port
        self.closed = False

    def get_port(self) -> int:
        return self.port

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


class EchoChannel:
    """Both ends of a direct-tcpip channel whose remote side echoes input"""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    async def read(self, n: int = -1) -> bytes:
        return await self._queue.get()

    def write(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    async def drain(self) -> None:
        pass

    def can_write_eof(self) -> bool:
        return True

    def write_eof(self) -> None:
        self._queue.put_nowait(b"")

    def close(self) -> None:
        self._queue.put_nowait(b"")


class FakeConnection:
    """Stands in for asyncssh.SSHClientConnection"""

    def __init__(self, responder: Optional[Callable[[str], FakeProcess]] = None):
        self.responder = responder or (lambda command: FakeProcess(["ok\n"]))
        self.client = None
        self.commands: List[str] = []
        self.processes: List[FakeProcess] = []
        self.close_calls = 0
        self.refused: set = set()
        self.forward_error: Optional[Exception] = None
        self.forwards: List[Tuple] = []
        self.listeners: List[FakeListener] = []
        self.channel_error: Optional[Exception] = None
        self.process_options: List[Dict] = []

    async def create_process(self, command: str, **options) -> FakeProcess:
        if self.channel_error is not None:
            raise self.channel_error
        self.commands.append(command)
        self.process_options.append(options)
        process = self.responder(command)
        self.processes.append(process)
        return process

    async def forward_local_port(self, listen_host, listen_port, dest_host, dest_port):
        if self.forward_error is not None:
            raise self.forward_error
        self.forwards.append((listen_host, listen_port, dest_host, dest_port))
        listener = FakeListener(listen_port or 50123)
        self.listeners.append(listener)
        return listener

    async def forward_local_port_to_path(self, listen_host, listen_port, dest_path):
        if self.forward_error is not None:
            raise self.forward_error
        self.forwards.append((listen_host, listen_port, dest_path))
        listener = FakeListener(listen_port or 50124)
        self.listeners.append(listener)
        return listener

    async def open_connection(self, host: str, port: int):
        if (host, port) in self.refused:
            raise asyncssh.ChannelOpenError(2, "Connection refused")
        channel = EchoChannel()
        return channel, channel

    def close(self) -> None:
        self.close_calls += 1

    async def wait_closed(self) -> None:
        pass


class FakeRemoteHost:
    """
    Answers the shell probe and the install script like a Linux host.

    The server is started once; later install runs find it running and
    report the same token.
    """

    def __init__(self, listening_on="41234", exit_code: int = 0, preamble: str = "", delay: float = 0):
        self.delay = delay
        self.listening_on = listening_on
        self.exit_code = exit_code
        self.preamble = preamble
        self.token: Optional[str] = None
        self.starts = 0
        self.install_runs = 0
        self.active = 0
        self.max_active = 0

    def result_values(self) -> Dict[str, object]:
        return {
            "exitCode": self.exit_code,
            "listeningOn": self.listening_on if self.exit_code == 0 else "",
            "connectionToken": self.token or "",
            "logFile": f"/home/dev/.vscodium-server/.{COMMIT}.log",
            "osReleaseId": "ubuntu",
            "arch": "x86_64",
            "platform": "linux",
            "tmpDir": "/run/user/1000",
        }

    def __call__(self, command: str) -> FakeProcess:
        if command == "uname -s":
            return FakeProcess(["Linux\n"], delay=self.delay)
        if command == "echo":
            return FakeProcess(["\n"], delay=self.delay)

        marker = MARKER_RE.search(command).group(1)
        self.install_runs += 1
        if self.exit_code == 0 and self.token is None:
            self.token = f"token-{self.install_runs}"
            self.starts += 1

        self.active += 1
        self.max_active = max(self.max_active, self.active)

        process = FakeProcess([self.preamble, render_result_block(marker, self.result_values())],
                              delay=self.delay or 0.01)

        def finished():
            self.active -= 1
        process.on_close = finished
        return process


def make_connect(connection: FakeConnection, calls: Optional[list] = None, delay: float = 0):
    """Build a replacement for asyncssh.connect returning the fake connection"""

    async def connect(host, client_factory=None, **options):
        if calls is not None:
            calls.append((host, options))
        await asyncio.sleep(delay)
        client = client_factory()
        client.connection_made(connection)
        connection.client = client
        return connection

    return connect


@pytest.fixture
def authority():
    return RemoteAuthority("build-box", 22, "dev")


@pytest.fixture
def remote_host():
    return FakeRemoteHost()


@pytest.fixture
def connection(remote_host):
    return FakeConnection(remote_host)


@pytest.fixture
def manager(connection):
    return SessionManager(connect=make_connect(connection))


@pytest.fixture
def session(authority, connection):
    return Session(authority, connection)
