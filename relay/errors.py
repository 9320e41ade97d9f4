"""
RealmOps Relay - Error Taxonomy
================================
Exceptions raised by the realtime channel layer.

Terminal errors (NotRunning, AuthRejected) end a session and are shown to
every attached client once. TransportError is recoverable and handed to the
reconnection policy. NotConnected and MalformedFrame only ever reach the
client that caused them.
"""


class RelayError(Exception):
    """Base class for all relay errors."""


class NotRunning(RelayError):
    """The target server process is not in a running state."""

    def __init__(self, message: str = "server is not running"):
        super().__init__(message)


class NotInstalled(NotRunning):
    """The target server has no container reference yet."""

    def __init__(self, message: str = "server not installed"):
        super().__init__(message)


class AuthRejected(RelayError):
    """The upstream authentication handshake was refused. Never retried."""


class TransportError(RelayError):
    """Network-level failure talking to the upstream endpoint."""


class InvalidPacket(TransportError):
    """The upstream sent bytes that do not form a valid frame."""


class NotConnected(RelayError):
    """A command was submitted while the session was not connected."""

    def __init__(self, message: str = "not connected"):
        super().__init__(message)


class MalformedFrame(RelayError):
    """A client frame could not be decoded."""


class Overflow(RelayError):
    """An adapter backlog exceeded its bound and dropped its oldest events."""
