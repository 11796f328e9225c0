"""
SSH Session Manager

Owns one multiplexed SSH transport per remote authority. Every command runs
on its own channel over that transport, so many commands (and forwards) can be
in flight at once without reconnecting.
"""

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import asyncssh

from remote_ssh.errors import AuthFailed, SessionClosed, Timeout, Unreachable
from remote_ssh.models import Credentials, ExecResult, RemoteAuthority

logger = logging.getLogger("remote_ssh.session")

DEFAULT_CONNECT_TIMEOUT = 60
READ_CHUNK_SIZE = 8192

# Exit code reported for a channel torn down before the command finished
EXIT_CODE_UNKNOWN = -1


class SessionState(Enum):
    OPEN = "open"
    CLOSED = "closed"


class _SessionClient(asyncssh.SSHClient):
    """asyncssh client callbacks, used to notice when the transport dies"""

    def __init__(self, on_connected: Optional[Callable[[], None]] = None):
        self.session: Optional["Session"] = None
        self._on_connected = on_connected

    def connection_made(self, conn: Any) -> None:
        if self._on_connected is not None:
            self._on_connected()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if self.session is not None:
            self.session._transport_lost(exc)


class Session:
    """A live, authenticated SSH transport for one authority"""

    def __init__(self, authority: RemoteAuthority, connection: Any):
        self.authority = authority
        self.connection = connection
        self.state = SessionState.OPEN
        self.channels: Set[Any] = set()
        self.forwards: Set[Any] = set()
        self.shell_info = None
        self._closing = False
        self._lost_listeners: List[Callable[["Session", Optional[Exception]], None]] = []
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def on_lost(self, callback: Callable[["Session", Optional[Exception]], None]) -> None:
        """Register a callback for unexpected transport loss"""
        self._lost_listeners.append(callback)

    def _transport_lost(self, exc: Optional[Exception]) -> None:
        if self._closing or self.state is SessionState.CLOSED:
            return

        logger.warning(f"Transport to {self.authority} lost: {exc or 'closed by remote'}")
        self.state = SessionState.CLOSED
        self._close_channels()
        if self.forwards:
            self._cleanup_task = asyncio.ensure_future(self._close_forwards())

        for callback in list(self._lost_listeners):
            try:
                callback(self, exc)
            except Exception as e:
                logger.error(f"Error in transport-lost callback: {e}", exc_info=True)

    def _close_channels(self) -> None:
        for process in list(self.channels):
            process.close()
        self.channels.clear()

    async def _close_forwards(self) -> None:
        for forward in list(self.forwards):
            try:
                await forward.close()
            except Exception as e:
                logger.warning(f"Error closing forward {forward}: {e}")
        self.forwards.clear()

    async def close(self) -> None:
        """Close all forwards and channels, then the transport. Safe to call twice."""
        if self._closing:
            return
        self._closing = True
        self.state = SessionState.CLOSED

        await self._close_forwards()
        self._close_channels()

        self.connection.close()
        try:
            await self.connection.wait_closed()
        except (asyncssh.Error, OSError) as e:
            logger.debug(f"Error waiting for transport to {self.authority} to close: {e}")

        logger.info(f"Session to {self.authority} closed")

    def __repr__(self) -> str:
        return f"<Session {self.authority} {self.state.value} channels={len(self.channels)} forwards={len(self.forwards)}>"


class PartialExec:
    """
    A command whose output is watched until a predicate holds.

    Iterate it to receive the accumulated stdout after every chunk, or await
    it to get an ExecResult once the predicate matches (or stdout ends). The
    channel is closed when the subscription resolves, times out or is
    cancelled, whether or not the remote process has finished.
    """

    def __init__(self, manager: "SessionManager", session: Session, command: str,
                 predicate: Callable[[str], bool], timeout: Optional[float] = None):
        self._manager = manager
        self._session = session
        self._command = command
        self._predicate = predicate
        self._timeout = timeout
        self._process = None
        self._consumed = False
        self.matched = False
        self.result: Optional[ExecResult] = None

    def __aiter__(self) -> AsyncIterator[str]:
        return self._stream()

    def __await__(self):
        return self.wait().__await__()

    async def wait(self) -> ExecResult:
        """Consume the output and return the result"""
        async for _ in self._stream():
            pass
        return self.result

    def cancel(self) -> None:
        """Tear down the channel without waiting for the predicate"""
        if self._process is not None:
            self._manager._release_channel(self._session, self._process)

    async def _stream(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("exec_until output can only be consumed once")
        self._consumed = True

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout if self._timeout else None

        process = await self._manager._open_channel(self._session, self._command)
        self._process = process

        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        stderr_task = asyncio.ensure_future(_drain(process.stderr, stderr_parts))
        exit_code = EXIT_CODE_UNKNOWN

        try:
            while True:
                remaining = None
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise Timeout(f"No matching output within {self._timeout}s")
                try:
                    chunk = await asyncio.wait_for(process.stdout.read(READ_CHUNK_SIZE), remaining)
                except asyncio.TimeoutError:
                    raise Timeout(f"No matching output within {self._timeout}s")

                if not chunk:
                    break

                stdout_parts.append(chunk)
                stdout = "".join(stdout_parts)
                yield stdout

                if self._predicate(stdout):
                    self.matched = True
                    break

            if not self.matched:
                # stdout ended: let the process finish so we get its exit status
                await process.wait()
                await stderr_task
                if process.exit_status is not None:
                    exit_code = process.exit_status
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)
            self._manager._release_channel(self._session, process)

        self.result = ExecResult("".join(stdout_parts), "".join(stderr_parts), exit_code)


async def _drain(stream: Any, parts: List[str]) -> None:
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            return
        parts.append(chunk)


class SessionManager:
    """Creates, tracks and closes sessions, one per remote authority"""

    def __init__(self, connect: Optional[Callable[..., Any]] = None):
        self._connect = connect or asyncssh.connect
        self._sessions: Dict[RemoteAuthority, Session] = {}
        self._connect_locks: Dict[RemoteAuthority, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._bootstrap_locks: Dict[RemoteAuthority, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, authority: RemoteAuthority) -> Optional[Session]:
        """Return the live session for an authority, if any"""
        session = self._sessions.get(authority)
        if session is not None and session.is_open:
            return session
        return None

    def bootstrap_lock(self, authority: RemoteAuthority) -> asyncio.Lock:
        """Lock serializing install attempts against one authority"""
        return self._bootstrap_locks[authority]

    def _connect_options(self, authority: RemoteAuthority, credentials: Credentials) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "port": authority.port,
            "agent_forwarding": credentials.agent_forwarding,
        }
        if authority.user:
            options["username"] = authority.user
        if credentials.identity_files:
            options["client_keys"] = list(credentials.identity_files)
        if credentials.password is not None:
            options["password"] = credentials.password
        if not credentials.strict_host_keys:
            options["known_hosts"] = None
        if not credentials.use_ssh_config:
            options["config"] = []
        return options

    async def connect(self, authority: RemoteAuthority, credentials: Optional[Credentials] = None,
                      timeout: float = DEFAULT_CONNECT_TIMEOUT,
                      on_connected: Optional[Callable[[], None]] = None) -> Session:
        """
        Establish (or reuse) the session for an authority.

        on_connected is called once the TCP connection is up, before
        authentication starts.
        """
        credentials = credentials or Credentials()

        async with self._connect_locks[authority]:
            existing = self.get(authority)
            if existing is not None:
                logger.debug(f"Reusing session to {authority}")
                return existing

            logger.info(f"Connecting to {authority} (timeout {timeout}s)")
            client = _SessionClient(on_connected)
            options = self._connect_options(authority, credentials)

            try:
                connection = await asyncio.wait_for(
                    self._connect(authority.host, client_factory=lambda: client, **options),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                raise Timeout(f"Timed out after {timeout}s connecting to {authority}")
            except (asyncssh.PermissionDenied, asyncssh.HostKeyNotVerifiable) as e:
                raise AuthFailed(f"Authentication to {authority} failed: {e}")
            except asyncssh.DisconnectError as e:
                raise Unreachable(f"Connection to {authority} was closed during setup: {e}")
            except OSError as e:
                raise Unreachable(f"Could not reach {authority}: {e}")

            session = Session(authority, connection)
            client.session = session
            session.on_lost(self._forget)
            self._sessions[authority] = session

            logger.info(f"Connected to {authority}")
            return session

    def _forget(self, session: Session, exc: Optional[Exception] = None) -> None:
        if self._sessions.get(session.authority) is session:
            del self._sessions[session.authority]

    async def _open_channel(self, session: Session, command: str) -> Any:
        if not session.is_open:
            raise SessionClosed(f"Session to {session.authority} is closed")

        try:
            # Remote shells may print in a non-UTF-8 code page
            process = await session.connection.create_process(command, errors="replace")
        except asyncssh.ChannelOpenError as e:
            raise Unreachable(f"Could not open channel on {session.authority}: {e.reason}")
        except (asyncssh.DisconnectError, asyncssh.ConnectionLost, OSError) as e:
            raise SessionClosed(f"Session to {session.authority} is closed: {e}")

        session.channels.add(process)
        return process

    def _release_channel(self, session: Session, process: Any) -> None:
        session.channels.discard(process)
        process.close()

    async def exec(self, session: Session, command: str) -> ExecResult:
        """Run a command to completion on a fresh channel"""
        logger.debug(f"[{session.authority}] exec: {command[:200]}")
        process = await self._open_channel(session, command)
        try:
            completed = await process.wait()
        finally:
            self._release_channel(session, process)

        exit_code = completed.exit_status if completed.exit_status is not None else EXIT_CODE_UNKNOWN
        return ExecResult(completed.stdout or "", completed.stderr or "", exit_code)

    def exec_until(self, session: Session, command: str, predicate: Callable[[str], bool],
                   timeout: Optional[float] = None) -> PartialExec:
        """Run a command until its accumulated stdout satisfies the predicate"""
        logger.debug(f"[{session.authority}] exec_until: {command[:200]}")
        return PartialExec(self, session, command, predicate, timeout)

    async def close(self, session: Session) -> None:
        """Close a session and everything it owns"""
        self._forget(session)
        await session.close()
