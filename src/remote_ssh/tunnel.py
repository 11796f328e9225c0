"""
Tunnel Manager

Static forwards map a local 127.0.0.1 port to a remote port or unix socket.
The dynamic forward is a local SOCKS listener that opens one direct-tcpip
channel per accepted CONNECT request.
"""

import asyncio
import logging
import weakref
from enum import Enum
from typing import Any, Optional, Set, Union

import asyncssh

from remote_ssh import socks
from remote_ssh.errors import ForwardFailed, SessionClosed
from remote_ssh.socks import ReplyCode

logger = logging.getLogger("remote_ssh.tunnel")

LOCALHOST = "127.0.0.1"
PIPE_CHUNK_SIZE = 65536

# RFC 4254 channel open failure reason codes
SSH_OPEN_ADMINISTRATIVELY_PROHIBITED = 1
SSH_OPEN_CONNECT_FAILED = 2


class ForwardKind(Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


class ForwardState(Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


class Forward:
    """A local listener bound to a session"""

    def __init__(self, session, kind: ForwardKind, target: Optional[Union[int, str]] = None):
        self._session_ref = weakref.ref(session)
        self.kind = kind
        self.target = target
        self.state = ForwardState.PENDING
        self.local_host = LOCALHOST
        self.local_port: Optional[int] = None
        self.tasks: Set[asyncio.Task] = set()
        self._listener: Any = None

    @property
    def session(self):
        """The owning session, or None once it has been garbage collected"""
        return self._session_ref()

    @property
    def is_open(self) -> bool:
        return self.state is ForwardState.OPEN

    def _opened(self, listener: Any, local_port: int) -> None:
        self._listener = listener
        self.local_port = local_port
        self.state = ForwardState.OPEN

    async def close(self) -> None:
        """Stop listening and drop every connection served by this forward"""
        if self.state is ForwardState.CLOSED:
            return
        self.state = ForwardState.CLOSED

        if self._listener is not None:
            self._listener.close()

        for task in list(self.tasks):
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()

        if self._listener is not None:
            await self._listener.wait_closed()

        session = self.session
        if session is not None:
            session.forwards.discard(self)

        logger.info(f"Closed {self}")

    def __repr__(self) -> str:
        target = f" -> {self.target}" if self.target is not None else ""
        return f"<Forward {self.kind.value} {self.local_host}:{self.local_port}{target} {self.state.value}>"


def _reply_code(error: asyncssh.ChannelOpenError) -> ReplyCode:
    if error.code == SSH_OPEN_CONNECT_FAILED:
        return ReplyCode.CONNECTION_REFUSED
    if error.code == SSH_OPEN_ADMINISTRATIVELY_PROHIBITED:
        return ReplyCode.CONNECTION_NOT_ALLOWED
    return ReplyCode.GENERAL_FAILURE


async def _pipe(reader: Any, writer: Any) -> None:
    try:
        while True:
            data = await reader.read(PIPE_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        if writer.can_write_eof():
            try:
                writer.write_eof()
            except OSError as e:
                logger.debug(f"Could not half-close stream: {e}")


class TunnelManager:
    """Opens and closes forwards over live sessions"""

    async def open_forward(self, session, target: Union[int, str], listen_port: int = 0) -> Forward:
        """Forward a local port (ephemeral by default) to a remote port or socket path"""
        if not session.is_open:
            raise SessionClosed(f"Session to {session.authority} is closed")

        forward = Forward(session, ForwardKind.STATIC, target)
        try:
            if isinstance(target, int):
                listener = await session.connection.forward_local_port(LOCALHOST, listen_port, LOCALHOST, target)
            else:
                listener = await session.connection.forward_local_port_to_path(LOCALHOST, listen_port, target)
        except (asyncssh.Error, OSError) as e:
            forward.state = ForwardState.CLOSED
            raise ForwardFailed(f"Could not forward to {target} on {session.authority}: {e}")

        forward._opened(listener, listener.get_port())
        session.forwards.add(forward)
        logger.info(f"Opened {forward} on {session.authority}")
        return forward

    async def open_dynamic_forward(self, session, listen_port: int = 0) -> Forward:
        """Start a local SOCKS listener whose connections go through the session"""
        if not session.is_open:
            raise SessionClosed(f"Session to {session.authority} is closed")

        forward = Forward(session, ForwardKind.DYNAMIC)

        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await self._serve_socks_client(forward, reader, writer)

        try:
            server = await asyncio.start_server(handle, LOCALHOST, listen_port)
        except OSError as e:
            forward.state = ForwardState.CLOSED
            raise ForwardFailed(f"Could not listen for SOCKS connections on {LOCALHOST}:{listen_port}: {e}")

        forward._opened(server, server.sockets[0].getsockname()[1])
        session.forwards.add(forward)
        logger.info(f"Opened {forward} on {session.authority}")
        return forward

    async def close_forward(self, forward: Forward) -> None:
        await forward.close()

    async def _serve_socks_client(self, forward: Forward, reader: asyncio.StreamReader,
                                  writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        forward.tasks.add(task)
        peer = writer.get_extra_info('peername')

        try:
            try:
                request = await socks.read_request(reader, writer)
            except socks.SocksError as e:
                logger.warning(f"Rejected SOCKS client {peer}: {e}")
                return

            session = forward.session
            if session is None or not session.is_open:
                writer.write(request.reply(ReplyCode.GENERAL_FAILURE))
                await writer.drain()
                return

            try:
                remote_reader, remote_writer = await session.connection.open_connection(request.host, request.port)
            except asyncssh.ChannelOpenError as e:
                error = ForwardFailed(f"Could not open channel to {request.host}:{request.port} "
                                      f"on {session.authority}: {e.reason}")
                logger.warning(error.message)
                writer.write(request.reply(_reply_code(e)))
                await writer.drain()
                return
            except (asyncssh.Error, OSError) as e:
                error = ForwardFailed(f"Could not open channel to {request.host}:{request.port} "
                                      f"on {session.authority}: {e}")
                logger.warning(error.message)
                writer.write(request.reply(ReplyCode.GENERAL_FAILURE))
                await writer.drain()
                return

            logger.debug(f"SOCKS {peer} -> {request.host}:{request.port}")
            writer.write(request.reply(ReplyCode.SUCCESS))
            await writer.drain()

            try:
                await asyncio.gather(_pipe(reader, remote_writer), _pipe(remote_reader, writer))
            finally:
                remote_writer.close()
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ConnectionError) as e:
            logger.debug(f"SOCKS client {peer} went away: {e}")
        finally:
            writer.close()
            forward.tasks.discard(task)
