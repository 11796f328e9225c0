"""End-to-end tests for RemoteConnection against a fake host."""

import asyncio

import httpx
import pytest

from conftest import COMMIT, FakeConnection, FakeRemoteHost, make_connect
from remote_ssh.connection import RemoteConnection
from remote_ssh.errors import ForwardFailed, Timeout
from remote_ssh.product import ProductInfo
from remote_ssh.reconnect import ConnectionState
from remote_ssh.session import SessionManager
from remote_ssh.settings import RemoteSSHSettings

PRODUCT = ProductInfo(version="1.90.0", commit=COMMIT, release="24158")


def version_transport(status: int = 200, seen: list = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, text=COMMIT)
    return httpx.MockTransport(handler)


async def wait_for(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestRemoteConnection:
    """Tests for the full connect/bootstrap/tunnel flow."""

    @pytest.mark.asyncio
    async def test_open_and_close(self, authority, connection, manager, remote_host):
        requests = []
        remote = RemoteConnection(authority, PRODUCT, settings=RemoteSSHSettings(connect_timeout=5),
                                  manager=manager, http_transport=version_transport(seen=requests),
                                  probe_interval=60)
        states = []
        remote.reconnector.on_state_change(states.append)

        descriptor = await remote.open()
        try:
            assert states == [
                ConnectionState.CONNECTING,
                ConnectionState.AUTHENTICATING,
                ConnectionState.BOOTSTRAPPING,
                ConnectionState.TUNNELING,
                ConnectionState.READY,
            ]
            assert descriptor.install.listening_on == 41234
            assert descriptor.connection_token == "token-1"
            assert descriptor.local_port == 50123
            assert descriptor.socks_port
            assert descriptor.url == "http://127.0.0.1:50123"
            assert connection.commands[0] == "uname -s"
            assert connection.forwards == [("127.0.0.1", 0, "127.0.0.1", 41234)]
            assert requests[0].url.path == "/version"
        finally:
            await remote.close()

        assert remote.state is ConnectionState.DISCONNECTED
        assert connection.listeners[0].closed
        assert manager.get(authority) is None

    @pytest.mark.asyncio
    async def test_without_dynamic_forwarding(self, authority, manager):
        settings = RemoteSSHSettings(connect_timeout=5, enable_dynamic_forwarding=False)
        remote = RemoteConnection(authority, PRODUCT, settings=settings, manager=manager,
                                  http_transport=version_transport(), probe_interval=60)

        descriptor = await remote.open()
        await remote.close()

        assert descriptor.socks_port is None

    @pytest.mark.asyncio
    async def test_failed_verification_cleans_up(self, authority, connection, manager):
        remote = RemoteConnection(authority, PRODUCT, settings=RemoteSSHSettings(connect_timeout=5),
                                  manager=manager, http_transport=version_transport(status=503))

        with pytest.raises(ForwardFailed):
            await remote.open()

        assert remote.state is ConnectionState.DISCONNECTED
        assert connection.close_calls == 1
        assert connection.listeners[0].closed
        assert manager.get(authority) is None
        assert remote.session is None

    @pytest.mark.asyncio
    async def test_reconnect_keeps_local_ports(self, authority):
        host = FakeRemoteHost()
        connection = FakeConnection(host)
        manager = SessionManager(connect=make_connect(connection))
        remote = RemoteConnection(authority, PRODUCT, settings=RemoteSSHSettings(connect_timeout=5),
                                  manager=manager, http_transport=version_transport(), probe_interval=60,
                                  initial_backoff=0.01)

        first = await remote.open()
        try:
            first_session = remote.session
            connection.client.connection_lost(ConnectionResetError("reset by peer"))

            await wait_for(lambda: remote.state is ConnectionState.READY and remote.session is not first_session)

            second = remote.descriptor
            assert second.local_port == first.local_port
            assert second.socks_port == first.socks_port
            assert second.connection_token == first.connection_token
            assert host.starts == 1
            assert host.install_runs == 2
            assert connection.forwards[-1] == ("127.0.0.1", first.local_port, "127.0.0.1", 41234)
        finally:
            await remote.close()

    @pytest.mark.asyncio
    async def test_connect_timeout_covers_all_steps(self, authority):
        # Each step alone fits in the timeout, together they do not
        connection = FakeConnection(FakeRemoteHost(delay=0.5))
        manager = SessionManager(connect=make_connect(connection, delay=0.5))
        remote = RemoteConnection(authority, PRODUCT, settings=RemoteSSHSettings(connect_timeout=1),
                                  manager=manager, http_transport=version_transport())
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(Timeout):
            await remote.open()

        assert loop.time() - started < 1.4
        assert remote.state is ConnectionState.DISCONNECTED
        assert manager.get(authority) is None
        assert all(process.closed for process in connection.processes)
