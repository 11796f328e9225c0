"""
Reconnector

Keeps one remote connection usable: probes the session periodically and, when
the probe fails or the transport drops, tears everything down and runs the
establishment flow again with exponential backoff.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterator, List, Optional

from remote_ssh.errors import RemoteSSHError, Timeout

logger = logging.getLogger("remote_ssh.reconnect")

LIVENESS_COMMAND = "echo"
DEFAULT_PROBE_INTERVAL = 30
DEFAULT_PROBE_TIMEOUT = 10
INITIAL_BACKOFF = 1.0
BACKOFF_MULTIPLIER = 2.0


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    BOOTSTRAPPING = "bootstrapping"
    TUNNELING = "tunneling"
    READY = "ready"


StateCallback = Callable[[ConnectionState], None]


def backoff_delays(initial: float = INITIAL_BACKOFF, multiplier: float = BACKOFF_MULTIPLIER,
                   cap: Optional[float] = None) -> Iterator[float]:
    """Yield retry delays forever: initial, initial*multiplier, ... up to cap"""
    delay = initial
    while True:
        yield min(delay, cap) if cap is not None else delay
        delay *= multiplier


class Reconnector:
    """
    Supervises the connection to one authority.

    establish(set_state) runs the full connect/bootstrap/tunnel flow and
    returns the live session; it reports intermediate states through
    set_state and cleans up after itself on failure. teardown() releases
    whatever the last successful establish opened.
    """

    def __init__(self, manager, establish: Callable[[StateCallback], Awaitable], teardown: Callable[[], Awaitable],
                 connect_timeout: float = 60, probe_interval: float = DEFAULT_PROBE_INTERVAL,
                 probe_timeout: float = DEFAULT_PROBE_TIMEOUT, initial_backoff: float = INITIAL_BACKOFF,
                 backoff_multiplier: float = BACKOFF_MULTIPLIER):
        self._manager = manager
        self._establish = establish
        self._teardown = teardown
        self.connect_timeout = connect_timeout
        self.probe_interval = probe_interval
        self.probe_timeout = probe_timeout
        self.initial_backoff = initial_backoff
        self.backoff_multiplier = backoff_multiplier

        self.state = ConnectionState.DISCONNECTED
        self.session = None
        self.attempts = 0
        self._listeners: List[StateCallback] = []
        self._lost = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    def on_state_change(self, callback: StateCallback) -> None:
        """Register a callback invoked with every new state"""
        self._listeners.append(callback)

    def set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        logger.info(f"Connection state: {self.state.value} -> {state.value}")
        self.state = state
        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Error in state callback: {e}", exc_info=True)

    async def start(self) -> None:
        """Establish the connection once, then supervise it in the background"""
        self._stopping = False
        await self._establish_once()
        self._task = asyncio.ensure_future(self._supervise())

    async def stop(self) -> None:
        """Stop supervising and close the connection"""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        await self._teardown()
        self.session = None
        self.set_state(ConnectionState.DISCONNECTED)

    async def probe(self) -> bool:
        """Check that the session still answers a trivial command"""
        session = self.session
        if session is None or not session.is_open:
            return False

        try:
            await asyncio.wait_for(self._manager.exec(session, LIVENESS_COMMAND), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            error = Timeout(f"Liveness probe on {session.authority} got no answer within {self.probe_timeout}s")
            logger.warning(error.message)
            return False
        except RemoteSSHError as e:
            logger.warning(f"Liveness probe on {session.authority} failed: {e}")
            return False
        return True

    def _on_transport_lost(self, session, exc: Optional[Exception]) -> None:
        if session is not self.session:
            return
        self.set_state(ConnectionState.DISCONNECTED)
        self._lost.set()

    async def _establish_once(self) -> None:
        self.attempts += 1
        self._lost.clear()
        try:
            session = await self._establish(self.set_state)
        except BaseException:
            self.set_state(ConnectionState.DISCONNECTED)
            raise

        self.session = session
        session.on_lost(self._on_transport_lost)
        self.set_state(ConnectionState.READY)

    async def _wait_for_failure(self) -> str:
        while True:
            try:
                await asyncio.wait_for(self._lost.wait(), timeout=self.probe_interval)
                return "transport lost"
            except asyncio.TimeoutError:
                pass

            if not await self.probe():
                return "liveness probe failed"

    async def _supervise(self) -> None:
        while not self._stopping:
            reason = await self._wait_for_failure()
            authority = self.session.authority if self.session is not None else "remote"
            logger.warning(f"Connection to {authority} needs re-establishing: {reason}")

            self.set_state(ConnectionState.DISCONNECTED)
            await self._teardown()
            self.session = None
            await self._reestablish()

    async def _reestablish(self) -> None:
        delays = backoff_delays(self.initial_backoff, self.backoff_multiplier, self.connect_timeout)
        attempt = 0
        while not self._stopping:
            attempt += 1
            try:
                await self._establish_once()
                logger.info(f"Re-established connection after {attempt} attempt(s)")
                return
            except RemoteSSHError as e:
                delay = next(delays)
                logger.warning(f"Reconnect attempt {attempt} failed: {e}. Retrying in {delay:.1f}s")
            except Exception as e:
                delay = next(delays)
                logger.error(f"Reconnect attempt {attempt} failed unexpectedly: {e}. Retrying in {delay:.1f}s",
                             exc_info=True)
            await asyncio.sleep(delay)
