"""Channel gating and presentation states."""

import pytest

from relay.availability import (
    CLOSE_CODES,
    Availability,
    ChannelView,
    channel_view,
    check_availability,
)
from relay.events import CLOSE_NOT_APPLICABLE, CLOSE_NOT_READY, ChannelKind
from relay.session import SessionState
from tests.conftest import FakeProcessState


@pytest.mark.parametrize(
    ("kind", "console_enabled", "started", "running", "expected"),
    [
        (ChannelKind.CONSOLE, False, True, True, Availability.NOT_APPLICABLE),
        (ChannelKind.CONSOLE, True, False, False, Availability.NOT_INSTALLED),
        (ChannelKind.CONSOLE, True, True, False, Availability.NOT_RUNNING),
        (ChannelKind.CONSOLE, True, True, True, Availability.AVAILABLE),
        (ChannelKind.LOGS, False, False, False, Availability.NOT_INSTALLED),
        (ChannelKind.LOGS, False, True, False, Availability.AVAILABLE),
    ],
)
async def test_check_availability(kind, console_enabled, started, running, expected):
    state = FakeProcessState(running=running, started=started)
    assert await check_availability("srv-1", kind, state, console_enabled) is expected


def test_not_applicable_and_not_ready_close_differently():
    assert CLOSE_CODES[Availability.NOT_APPLICABLE] == CLOSE_NOT_APPLICABLE
    assert CLOSE_CODES[Availability.NOT_INSTALLED] == CLOSE_NOT_READY
    assert CLOSE_CODES[Availability.NOT_RUNNING] == CLOSE_NOT_READY


@pytest.mark.parametrize(
    ("availability", "state", "failed", "expected"),
    [
        (Availability.NOT_APPLICABLE, SessionState.CONNECTED, False, ChannelView.NOT_APPLICABLE),
        (Availability.NOT_INSTALLED, None, True, ChannelView.NOT_INSTALLED),
        (Availability.NOT_RUNNING, None, False, ChannelView.NOT_RUNNING),
        (Availability.AVAILABLE, None, False, ChannelView.DISCONNECTED),
        (Availability.AVAILABLE, None, True, ChannelView.ERROR),
        (Availability.AVAILABLE, SessionState.CONNECTING, False, ChannelView.CONNECTING),
        (Availability.AVAILABLE, SessionState.RECONNECTING, False, ChannelView.CONNECTING),
        (Availability.AVAILABLE, SessionState.CONNECTED, True, ChannelView.CONNECTED),
    ],
)
def test_channel_view(availability, state, failed, expected):
    assert channel_view(availability, state, failed) is expected
