"""
RealmOps Relay - Session Registry
==================================
Process-wide owner of the (server, channel kind) -> Session mapping.

The registry is an ordinary object created by the app factory and passed to
whoever needs it; there is no module-level instance. Attaches to the same
(server, channel kind) are serialized by a lock for that key, and a new
session for a key is only built once the previous session for that key has
fully closed its upstream. Together these keep at most one upstream
connection per key. A slow teardown on one key never holds up another.

detach() does not wait at all: the client is removed on the spot and any
upstream teardown it triggers runs in the background.

Usage:
    registry = SessionRegistry(connector_factory, process_state, settings)
    session = await registry.attach("srv-1", ChannelKind.CONSOLE, adapter)
    ...
    registry.detach(session, adapter)
"""

import asyncio
import logging
from typing import Any, Callable

from relay.connector import UpstreamConnector
from relay.events import ChannelKind
from relay.fanout import Recipient
from relay.policy import ReconnectionPolicy, policy_for
from relay.providers import ProcessStateProvider
from relay.session import Session
from relay.settings import RelaySettings

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[str, ChannelKind], UpstreamConnector]
PolicyFactory = Callable[[ChannelKind, RelaySettings], ReconnectionPolicy]

SessionKey = tuple[str, ChannelKind]


class SessionRegistry:
    """
    Creates sessions on first attach and forgets them when they retire.

    Attributes:
        settings: Relay tunables handed to every session.
    """

    def __init__(
        self,
        connector_factory: ConnectorFactory,
        process_state: ProcessStateProvider,
        settings: RelaySettings | None = None,
        policy_factory: PolicyFactory = policy_for,
    ):
        self.settings = settings or RelaySettings()
        self._connector_factory = connector_factory
        self._process_state = process_state
        self._policy_factory = policy_factory

        self._sessions: dict[SessionKey, Session] = {}
        self._retiring: dict[SessionKey, Session] = {}
        self._failures: dict[SessionKey, str] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}

    # -- Queries --------------------------------------------------------------

    def get(self, server_id: str, kind: ChannelKind) -> Session | None:
        return self._sessions.get((server_id, kind))

    def last_failure(self, server_id: str, kind: ChannelKind) -> str | None:
        """Reason the most recent session for the key was terminated, if it was."""
        return self._failures.get((server_id, kind))

    def __len__(self) -> int:
        return len(self._sessions)

    def snapshot(self) -> list[dict[str, Any]]:
        return [session.describe() for session in self._sessions.values()]

    # -- Attach / detach ------------------------------------------------------

    async def attach(self, server_id: str, kind: ChannelKind, recipient: Recipient) -> Session:
        """
        Attach a client, creating the session if none is live for the key.

        Returns:
            The session the client is now attached to.
        """
        key = (server_id, kind)
        async with self._lock_for(key):
            session = self._sessions.get(key)
            if session is None:
                previous = self._retiring.get(key)
                if previous is not None:
                    await previous.wait_closed()
                self._failures.pop(key, None)
                session = self._create(server_id, kind)
                self._sessions[key] = session
            session.attach(recipient)
            return session

    def detach(self, session: Session, recipient: Recipient) -> None:
        session.detach(recipient)

    # -- Explicit control -----------------------------------------------------

    async def terminate(self, server_id: str, kind: ChannelKind, reason: str) -> bool:
        """
        Terminate a live session. Returns False if there was none.
        """
        session = self.get(server_id, kind)
        if session is None:
            return False
        await session.terminate(reason)
        return True

    async def close_all(self, reason: str = "relay shutting down") -> None:
        for session in list(self._sessions.values()):
            await session.terminate(reason)
        for session in list(self._retiring.values()):
            await session.wait_closed()

    # -- Internals ------------------------------------------------------------

    def _lock_for(self, key: SessionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _create(self, server_id: str, kind: ChannelKind) -> Session:
        logger.info("[REGISTRY] creating %s session for %s", kind.value, server_id)
        return Session(
            server_id,
            kind,
            connector=self._connector_factory(server_id, kind),
            policy=self._policy_factory(kind, self.settings),
            process_state=self._process_state,
            settings=self.settings,
            on_release=self._release,
            on_closed=self._forget,
        )

    def _release(self, session: Session) -> None:
        key = session.key
        if self._sessions.get(key) is session:
            del self._sessions[key]
        self._retiring[key] = session
        if session.terminal_reason is not None:
            self._failures[key] = session.terminal_reason

    def _forget(self, session: Session) -> None:
        key = session.key
        if self._retiring.get(key) is session:
            del self._retiring[key]
