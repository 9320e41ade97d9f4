"""
RealmOps Relay - Fan-out Multiplexer
=====================================
Distributes one session's event stream to every attached client.

publish() appends to the ring buffer and then hands the event to each
adapter. Adapters own bounded outbound queues, so delivery never waits on a
slow browser. attach() replays the ring buffer into the new adapter before
it is added to the recipient set; nothing is awaited in between, so a late
joiner sees recent history with no gap and no duplicate.
"""

from collections import deque
from typing import Protocol

from relay.events import ChannelEvent


class Recipient(Protocol):
    """What the multiplexer needs from a client adapter."""

    def deliver(self, event: ChannelEvent) -> None: ...

    def close(self, code: int, reason: str = "") -> None: ...


class FanOut:
    """
    Ring buffer plus recipient set.

    Attributes:
        history: The last N replayable events, oldest first.
    """

    def __init__(self, history_limit: int):
        self.history: deque[ChannelEvent] = deque(maxlen=history_limit)
        self._recipients: dict[Recipient, None] = {}

    @property
    def clients(self) -> int:
        return len(self._recipients)

    @property
    def recipients(self) -> list[Recipient]:
        return list(self._recipients)

    def publish(self, event: ChannelEvent) -> None:
        if event.replayable:
            self.history.append(event)
        for recipient in list(self._recipients):
            recipient.deliver(event)

    def attach(self, recipient: Recipient) -> None:
        if recipient in self._recipients:
            return
        for event in self.history:
            recipient.deliver(event)
        self._recipients[recipient] = None

    def detach(self, recipient: Recipient) -> bool:
        """Remove a recipient. Returns True if it was attached."""
        if recipient not in self._recipients:
            return False
        del self._recipients[recipient]
        return True

    def close_all(self, code: int, reason: str = "") -> None:
        """Ask every recipient to close, then forget them."""
        recipients, self._recipients = list(self._recipients), {}
        for recipient in recipients:
            recipient.close(code, reason)
