"""
RealmOps Relay - Channel Session
=================================
One session exists per (server, channel kind). It owns the upstream
connector, the fan-out to attached clients, the command queue and every
timer involved in reconnecting or idling out.

States:
    - "idle"         : Created, nothing opened yet (or retired quietly)
    - "connecting"   : First client attached, upstream opening
    - "connected"    : Read loop running, commands accepted
    - "reconnecting" : Upstream lost, clients still attached, retry pending
    - "terminated"   : Auth rejected, process gone, retries exhausted, or
                       closed explicitly

Transitions:
    idle         --attach-->                 connecting
    connecting   --open ok-->                connected     ("connected")
    connecting   --TransportError-->         reconnecting  ("connecting", retry scheduled)
    connecting   --AuthRejected/NotRunning-> terminated    (error, clients closed)
    connected    --upstream lost-->          reconnecting  ("disconnected", once)
    reconnecting --retry ok-->               connected     ("reconnected")
    reconnecting --policy declines-->        terminated    (error, clients closed)
    any          --last detach, not connected--> idle      (upstream closed in the background)
    connected    --last detach-->            connected, idle timer running;
                                             closes to idle after the timeout

A session that leaves for idle or terminated is released from its registry
immediately and never comes back; the next attach builds a fresh one.

Everything here runs on one event loop. State changes happen between awaits,
so a transition is never observed half-done.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from relay.connector import UpstreamConnector
from relay.errors import (
    AuthRejected,
    MalformedFrame,
    NotConnected,
    NotRunning,
    TransportError,
)
from relay.events import (
    CLOSE_TERMINATED,
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_DISCONNECTED,
    STATUS_RECONNECTED,
    ChannelEvent,
    ChannelKind,
    EventType,
)
from relay.fanout import FanOut, Recipient
from relay.policy import ReconnectionPolicy, RetryContext
from relay.providers import ProcessStateProvider
from relay.settings import RelaySettings

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


# Status a newly attached client is told about an already-running session.
_SNAPSHOT_STATUS = {
    SessionState.CONNECTING: STATUS_CONNECTING,
    SessionState.RECONNECTING: STATUS_CONNECTING,
    SessionState.CONNECTED: STATUS_CONNECTED,
}

_SETTLED_STATES = (SessionState.IDLE, SessionState.CONNECTED, SessionState.TERMINATED)


class Session:
    """
    Multiplexing state for one (server, channel kind).

    Attributes:
        server_id: Server the session serves.
        kind:      Channel kind.
        state:     Current SessionState.
        fanout:    Ring buffer and attached clients.
        connector: The single upstream connector this session will ever use.
        policy:    Reconnection policy for this channel kind.
    """

    def __init__(
        self,
        server_id: str,
        kind: ChannelKind,
        connector: UpstreamConnector,
        policy: ReconnectionPolicy,
        process_state: ProcessStateProvider,
        settings: RelaySettings,
        on_release: Callable[["Session"], None] | None = None,
        on_closed: Callable[["Session"], None] | None = None,
    ):
        self.server_id = server_id
        self.kind = kind
        self.state = SessionState.IDLE
        self.fanout = FanOut(settings.history_for(kind))
        self.connector = connector
        self.policy = policy
        self.created_at = datetime.now(timezone.utc)

        self._process_state = process_state
        self._settings = settings
        self._on_release = on_release
        self._on_closed = on_closed

        self._commands: asyncio.Queue[tuple[str | None, str]] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._writer_task: asyncio.Task | None = None
        self._idle_task: asyncio.Task | None = None
        self._cancelled: list[asyncio.Task] = []
        self._ever_connected = False
        self._released = False
        self.terminal_reason: str | None = None
        self._settled = asyncio.Event()
        self._closed = asyncio.Event()

        connector.bind(self._on_upstream_event, self._on_upstream_closed)

    @property
    def key(self) -> tuple[str, ChannelKind]:
        return (self.server_id, self.kind)

    @property
    def clients(self) -> int:
        return self.fanout.clients

    @property
    def released(self) -> bool:
        return self._released

    def describe(self) -> dict[str, Any]:
        """Status snapshot for the REST API."""
        return {
            "server_id": self.server_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "clients": self.clients,
            "buffered_events": len(self.fanout.history),
            "upstream_opens": self.connector.opens,
            "idle_closing": self._idle_task is not None and not self._idle_task.done(),
            "created_at": self.created_at.isoformat(),
        }

    # -- Client side ----------------------------------------------------------

    def attach(self, recipient: Recipient) -> None:
        """
        Add a client. Never waits on upstream I/O.

        The ring buffer is replayed first. A client joining a session that
        is already underway is then told the current status; the first
        client kicks off the connection instead.
        """
        if self._released:
            raise RuntimeError(f"session {self.server_id}/{self.kind.value} has been released")

        self._cancel_idle_timer()
        self.fanout.attach(recipient)

        if self.state is SessionState.IDLE:
            self._begin_connect()
        else:
            recipient.deliver(ChannelEvent.status(_SNAPSHOT_STATUS[self.state]))

    def detach(self, recipient: Recipient) -> None:
        """
        Remove a client; the last one out starts the idle timer or retires
        the session. Never waits: a retired session is released here and
        its upstream is closed by a background teardown.
        """
        if not self.fanout.detach(recipient):
            return
        if self.fanout.clients or self._released:
            return

        if self.state is SessionState.CONNECTED:
            logger.info(
                "[SESSION] %s/%s has no clients, closing in %ss unless reattached",
                self.server_id, self.kind.value, self._settings.idle_timeout,
            )
            self._idle_task = asyncio.create_task(
                self._idle_countdown(),
                name=f"relay-idle-{self.kind.value}-{self.server_id}",
            )
        else:
            self._retire_later(SessionState.IDLE)

    def submit(self, origin: str | None, text: str) -> None:
        """
        Queue a command for the upstream. Commands go out one at a time in
        the order they were submitted here.

        Raises:
            MalformedFrame: The channel takes no commands or the command
                            cannot be framed.
            NotConnected:   The session is not connected.
        """
        if self.kind is not ChannelKind.CONSOLE:
            raise MalformedFrame(f"{self.kind.value} channel does not accept commands")
        if self.state is not SessionState.CONNECTED:
            raise NotConnected()

        self.connector.check_command(text)
        self.publish(ChannelEvent.command(text, origin))
        self._commands.put_nowait((origin, text))

    def publish(self, event: ChannelEvent) -> None:
        self.fanout.publish(event)

    async def wait_settled(self) -> SessionState:
        """Wait until the session is connected, terminated or retired."""
        await self._settled.wait()
        return self.state

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def terminate(self, reason: str = "session closed") -> None:
        """Close explicitly: clients get ``reason`` as a terminal error."""
        await self._retire(SessionState.TERMINATED, reason)
        await self._closed.wait()

    # -- Upstream side --------------------------------------------------------

    def _on_upstream_event(self, event: ChannelEvent) -> None:
        if not self._released:
            self.publish(event)

    def _on_upstream_closed(self, error: BaseException | None) -> None:
        if self._released or self.state is not SessionState.CONNECTED:
            return

        self._stop_writer()
        if not self.fanout.clients:
            self._retire_later(SessionState.IDLE)
            return

        self._set_state(SessionState.RECONNECTING)
        self.publish(ChannelEvent.status(STATUS_DISCONNECTED))
        failure = error or TransportError("upstream closed the connection")
        self._spawn(self._connect_loop(failure), "reconnect")

    def _begin_connect(self) -> None:
        self._set_state(SessionState.CONNECTING)
        self.publish(ChannelEvent.status(STATUS_CONNECTING))
        self._spawn(self._connect_loop(None), "connect")

    async def _connect_loop(self, failure: BaseException | None) -> None:
        attempt = 0
        while True:
            if failure is not None:
                attempt += 1
                decision = self.policy.decide(await self._retry_context(attempt, failure))
                if not decision.retry:
                    await self._retire(SessionState.TERMINATED, decision.reason)
                    return
                logger.info(
                    "[SESSION] %s/%s retry %d in %ss after: %s",
                    self.server_id, self.kind.value, attempt, decision.delay, failure,
                )
                await asyncio.sleep(decision.delay)

            try:
                await self.connector.open()
            except (NotRunning, AuthRejected) as e:
                await self._retire(SessionState.TERMINATED, str(e))
                return
            except TransportError as e:
                logger.warning("[SESSION] %s/%s open failed: %s", self.server_id, self.kind.value, e)
                failure = e
                if self.state is SessionState.CONNECTING:
                    self._set_state(SessionState.RECONNECTING)
                    self.publish(ChannelEvent.status(STATUS_CONNECTING))
                continue

            self._on_connected()
            return

    async def _retry_context(self, attempt: int, failure: BaseException) -> RetryContext:
        return RetryContext(
            attempt=attempt,
            failure=failure,
            attached_clients=self.fanout.clients,
            process_running=await self._process_state.is_running(self.server_id),
            process_started=await self._process_state.has_started(self.server_id),
        )

    def _on_connected(self) -> None:
        reconnected = self._ever_connected
        self._ever_connected = True
        self._set_state(SessionState.CONNECTED)
        self.publish(ChannelEvent.status(STATUS_RECONNECTED if reconnected else STATUS_CONNECTED))
        if self.kind is ChannelKind.CONSOLE:
            self._writer_task = self._spawn(self._write_commands(), "writer")

    async def _write_commands(self) -> None:
        """Single writer: the only place commands reach the connector."""
        while True:
            origin, text = await self._commands.get()
            try:
                await self.connector.send(text, origin)
            except (TransportError, NotConnected) as e:
                logger.warning("[SESSION] %s command failed: %s", self.server_id, e)
                self.publish(ChannelEvent(EventType.ERROR, f"command failed: {e}", origin))
                return

    def _stop_writer(self) -> None:
        if self._writer_task is not None and self._writer_task is not asyncio.current_task():
            self._writer_task.cancel()
        self._writer_task = None
        while not self._commands.empty():
            origin, text = self._commands.get_nowait()
            self.publish(ChannelEvent(EventType.ERROR, f"command not delivered: {text}", origin))

    # -- Teardown -------------------------------------------------------------

    async def _idle_countdown(self) -> None:
        await asyncio.sleep(self._settings.idle_timeout)
        logger.info("[SESSION] %s/%s idle timeout reached", self.server_id, self.kind.value)
        await self._retire(SessionState.IDLE)

    def _cancel_idle_timer(self) -> None:
        if self._idle_task is not None and self._idle_task is not asyncio.current_task():
            self._idle_task.cancel()
        self._idle_task = None

    async def _retire(self, state: SessionState, reason: str | None = None) -> None:
        """Leave for idle or terminated, then wait for the upstream to close."""
        if self._release(state, reason):
            await self._teardown()

    def _retire_later(self, state: SessionState, reason: str | None = None) -> None:
        if self._release(state, reason):
            self._spawn(self._teardown(), "teardown")

    def _release(self, state: SessionState, reason: str | None) -> bool:
        """
        Leave the registry, tell the clients and cancel every timer.
        Returns False if the session was already released.
        """
        if self._released:
            return False
        self._released = True
        if state is SessionState.TERMINATED:
            self.terminal_reason = reason or "session closed"
        if self._on_release is not None:
            self._on_release(self)

        self._stop_writer()
        if state is SessionState.TERMINATED:
            logger.info("[SESSION] %s/%s terminated: %s", self.server_id, self.kind.value, reason)
            self.publish(ChannelEvent.error(self.terminal_reason))
        self._set_state(state)
        if state is SessionState.TERMINATED:
            self.fanout.close_all(CLOSE_TERMINATED, self.terminal_reason)

        current = asyncio.current_task()
        self._cancelled = [
            task for task in (*self._tasks, self._idle_task)
            if task is not None and task is not current and not task.done()
        ]
        self._idle_task = None
        for task in self._cancelled:
            task.cancel()
        return True

    async def _teardown(self) -> None:
        await asyncio.gather(*self._cancelled, return_exceptions=True)
        self._cancelled = []
        try:
            await self.connector.close()
        finally:
            self._settled.set()
            self._closed.set()
            if self._on_closed is not None:
                self._on_closed(self)

    # -- Helpers --------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.info(
            "[SESSION] %s/%s %s -> %s", self.server_id, self.kind.value, self.state.value, state.value
        )
        self.state = state
        if state in _SETTLED_STATES:
            self._settled.set()
        else:
            self._settled.clear()

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"relay-{name}-{self.kind.value}-{self.server_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
