"""
Remote connection orchestration

Drives the whole flow for one authority: connect, detect the shell, bootstrap
the server, forward its port and check that it answers through the tunnel.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Iterable, Optional

import httpx

from remote_ssh import shell
from remote_ssh.bootstrap import bootstrap
from remote_ssh.errors import ForwardFailed, Timeout
from remote_ssh.models import Credentials, InstallResult, RemoteAuthority
from remote_ssh.product import ProductInfo
from remote_ssh.reconnect import ConnectionState, Reconnector, StateCallback
from remote_ssh.session import Session, SessionManager
from remote_ssh.settings import RemoteSSHSettings
from remote_ssh.tunnel import Forward, TunnelManager

logger = logging.getLogger("remote_ssh.connection")

VERIFY_PATH = "/version"


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Where the local client can reach the remote server"""
    authority: RemoteAuthority
    install: InstallResult
    local_port: int
    socks_port: Optional[int] = None

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.local_port}"

    @property
    def connection_token(self) -> str:
        return self.install.connection_token


class RemoteConnection:
    """A supervised, tunneled connection to the server on one remote host"""

    def __init__(self, authority: RemoteAuthority, product: ProductInfo,
                 settings: Optional[RemoteSSHSettings] = None, credentials: Optional[Credentials] = None,
                 extension_ids: Iterable[str] = (), env_variables: Iterable[str] = (),
                 manager: Optional[SessionManager] = None, tunnels: Optional[TunnelManager] = None,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None, **reconnect_options: Any):
        self.authority = authority
        self.settings = settings or RemoteSSHSettings()
        self.credentials = replace(credentials or Credentials(),
                                   agent_forwarding=self.settings.enable_agent_forwarding)
        self.options = product.install_options(self.settings, extension_ids, env_variables)
        self.manager = manager or SessionManager()
        self.tunnels = tunnels or TunnelManager()
        self._http_transport = http_transport

        self.session: Optional[Session] = None
        self.forward: Optional[Forward] = None
        self.socks_forward: Optional[Forward] = None
        self.descriptor: Optional[ConnectionDescriptor] = None
        self._deadline = 0.0

        self.reconnector = Reconnector(self.manager, self._establish, self._teardown,
                                       connect_timeout=self.settings.connect_timeout, **reconnect_options)

    @property
    def state(self) -> ConnectionState:
        return self.reconnector.state

    async def open(self) -> ConnectionDescriptor:
        """Connect and start supervising; raises if the first attempt fails"""
        await self.reconnector.start()
        return self.descriptor

    async def close(self) -> None:
        await self.reconnector.stop()

    def _remaining(self) -> float:
        return max(self._deadline - asyncio.get_running_loop().time(), 0)

    async def _step(self, awaitable: Awaitable, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._remaining())
        except asyncio.TimeoutError:
            raise Timeout(f"{what} on {self.authority} did not finish within the "
                          f"{self.settings.connect_timeout}s connect timeout")

    async def _establish(self, set_state: StateCallback) -> Session:
        try:
            return await self._run(set_state)
        except BaseException:
            await self._teardown()
            raise

    async def _run(self, set_state: StateCallback) -> Session:
        # One deadline covers every step of the attempt
        self._deadline = asyncio.get_running_loop().time() + self.settings.connect_timeout

        set_state(ConnectionState.CONNECTING)
        self.session = await self.manager.connect(
            self.authority, self.credentials, timeout=self._remaining(),
            on_connected=lambda: set_state(ConnectionState.AUTHENTICATING),
        )

        set_state(ConnectionState.BOOTSTRAPPING)
        shell_info = await self._step(
            shell.detect(self.manager, self.session, self.settings.platform_for(self.authority.host)),
            "Shell detection",
        )
        install = await self._step(
            bootstrap(self.manager, self.session, self.options.with_new_id(), shell_info),
            "Server bootstrap",
        )

        set_state(ConnectionState.TUNNELING)
        previous = self.descriptor
        self.forward = await self._step(
            self.tunnels.open_forward(self.session, install.listening_on,
                                      listen_port=previous.local_port if previous else 0),
            "Port forward",
        )
        await self._step(self._verify(self.forward), "Tunnel verification")

        self.socks_forward = None
        if self.settings.enable_dynamic_forwarding:
            self.socks_forward = await self._step(
                self.tunnels.open_dynamic_forward(self.session,
                                                  listen_port=(previous.socks_port or 0) if previous else 0),
                "SOCKS listener",
            )

        self.descriptor = ConnectionDescriptor(
            authority=self.authority,
            install=install,
            local_port=self.forward.local_port,
            socks_port=self.socks_forward.local_port if self.socks_forward else None,
        )
        return self.session

    async def _verify(self, forward: Forward) -> None:
        """Ask the server for its version through the forward"""
        url = f"http://{forward.local_host}:{forward.local_port}{VERIFY_PATH}"
        try:
            async with httpx.AsyncClient(transport=self._http_transport,
                                         timeout=self._remaining()) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ForwardFailed(f"Server on {self.authority} did not answer through {forward}: {e}")

        commit = response.text.strip()
        if commit and commit != self.options.commit:
            logger.warning(f"Server on {self.authority} reports commit {commit}, expected {self.options.commit}")
        logger.info(f"Verified server on {self.authority} through {forward}")

    async def _teardown(self) -> None:
        session, self.session = self.session, None
        self.forward = None
        self.socks_forward = None
        if session is not None:
            await self.manager.close(session)
