"""
RealmOps Relay - Collaborator Interfaces
=========================================
The narrow interfaces the relay consumes from the rest of the panel. The
relay never knows how servers are stored or how containers are run; it only
asks these questions.

Concrete implementations live in server/catalog.py (credentials) and
server/docker_backend.py (process state and raw transports).
"""

import asyncio
from typing import NamedTuple, Protocol

from relay.events import ChannelKind


class UpstreamStream(NamedTuple):
    """
    A raw byte stream to a protocol endpoint.

    ``writer`` follows the asyncio.StreamWriter surface (write, drain,
    close, wait_closed). Read-only streams may raise on write.
    """

    reader: asyncio.StreamReader
    writer: object


class ProcessStateProvider(Protocol):
    async def is_running(self, server_id: str) -> bool: ...

    async def has_started(self, server_id: str) -> bool: ...


class CredentialResolver(Protocol):
    async def resolve_auth_secret(self, server_id: str) -> str | None: ...


class TransportFactory(Protocol):
    async def open(
        self,
        server_id: str,
        kind: ChannelKind,
        *,
        since: float | None = None,
    ) -> UpstreamStream:
        """
        Open a raw stream to the server's endpoint for ``kind``.

        Log streams yield lines prefixed with an RFC 3339 timestamp from the
        daemon. ``since`` is only meaningful for them: resume from this
        moment (seconds since the epoch, daemon clock) instead of replaying
        the tail.

        Raises:
            TransportError: If the endpoint cannot be reached.
        """
        ...
