"""
RealmOps Relay - Relay Package
===============================
The realtime channel layer: bridges browser connections to a game server's
remote console (RCON) and its container log stream, with one upstream
connection per server and channel kind shared by every viewer.

This package contains:
    - events.py       : Channel kinds, events, wire encoding, close codes
    - errors.py       : Error taxonomy
    - rcon.py         : RCON packet codec
    - providers.py    : Collaborator interfaces (process state, credentials, transports)
    - connector.py    : Upstream connectors (console + logs)
    - policy.py       : Reconnection policies
    - fanout.py       : Ring buffer and fan-out to clients
    - session.py      : Per-channel session state machine
    - registry.py     : Session registry
    - adapter.py      : Per-client websocket adapter and command history
    - availability.py : Channel gating and presentation states
    - settings.py     : Relay tunables

Usage:
    from relay import SessionRegistry, ChannelAdapter, ChannelKind

    registry = SessionRegistry(connector_factory, process_state, settings)
    adapter = ChannelAdapter(websocket, ChannelKind.CONSOLE)
    await adapter.serve(registry, server_id)
"""

from relay.adapter import ChannelAdapter, CommandHistory
from relay.events import ChannelEvent, ChannelKind
from relay.registry import SessionRegistry
from relay.session import Session, SessionState
from relay.settings import RelaySettings

__all__ = [
    "ChannelAdapter",
    "ChannelEvent",
    "ChannelKind",
    "CommandHistory",
    "RelaySettings",
    "Session",
    "SessionRegistry",
    "SessionState",
]
