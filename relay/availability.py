"""
RealmOps Relay - Channel Availability
======================================
Decides, before any connection is attempted, whether a channel can be
served at all, and maps the result plus live session state onto the single
presentation state the UI shows.

The three families stay distinct:
    not applicable   - the server type has no such channel (RCON disabled)
    not ready        - not installed yet / not running
    live             - disconnected / connecting / connected / error
"""

from enum import Enum

from relay.events import CLOSE_NOT_APPLICABLE, CLOSE_NOT_READY, ChannelKind
from relay.providers import ProcessStateProvider
from relay.session import SessionState


class Availability(str, Enum):
    AVAILABLE = "available"
    NOT_APPLICABLE = "not_applicable"
    NOT_INSTALLED = "not_installed"
    NOT_RUNNING = "not_running"


class ChannelView(str, Enum):
    """What a client should render for a channel."""

    NOT_APPLICABLE = "not_applicable"
    NOT_INSTALLED = "not_installed"
    NOT_RUNNING = "not_running"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


NOTICES = {
    Availability.NOT_APPLICABLE: "RCON is not enabled for this server type",
    Availability.NOT_INSTALLED: "Server is not installed yet",
    Availability.NOT_RUNNING: "Server must be running to use the console",
}

CLOSE_CODES = {
    Availability.NOT_APPLICABLE: CLOSE_NOT_APPLICABLE,
    Availability.NOT_INSTALLED: CLOSE_NOT_READY,
    Availability.NOT_RUNNING: CLOSE_NOT_READY,
}

_LIVE_VIEWS = {
    SessionState.IDLE: ChannelView.DISCONNECTED,
    SessionState.CONNECTING: ChannelView.CONNECTING,
    SessionState.RECONNECTING: ChannelView.CONNECTING,
    SessionState.CONNECTED: ChannelView.CONNECTED,
    SessionState.TERMINATED: ChannelView.ERROR,
}


async def check_availability(
    server_id: str,
    kind: ChannelKind,
    process_state: ProcessStateProvider,
    console_enabled: bool,
) -> Availability:
    """
    Gate a channel without touching its endpoint.

    Logs only need a container; the console also needs RCON enabled and
    the process running.
    """
    if kind is ChannelKind.CONSOLE and not console_enabled:
        return Availability.NOT_APPLICABLE
    if not await process_state.has_started(server_id):
        return Availability.NOT_INSTALLED
    if kind is ChannelKind.CONSOLE and not await process_state.is_running(server_id):
        return Availability.NOT_RUNNING
    return Availability.AVAILABLE


def channel_view(
    availability: Availability,
    session_state: SessionState | None,
    failed: bool = False,
) -> ChannelView:
    """
    Collapse availability and session state into one presentation state.

    Args:
        availability:  Result of check_availability.
        session_state: State of the live session, or None if there is none.
        failed:        Whether the last session for this channel terminated.
    """
    if availability is not Availability.AVAILABLE:
        return ChannelView(availability.value)
    if session_state is None:
        return ChannelView.ERROR if failed else ChannelView.DISCONNECTED
    return _LIVE_VIEWS[session_state]
