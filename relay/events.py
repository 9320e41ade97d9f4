"""
RealmOps Relay - Channel Events
================================
Value types flowing through the relay: channel kinds, the events emitted by
an upstream connector or accepted from a client, and their wire encoding.

Wire format (console, JSON text frames):
    {"type": "status", "payload": "connected", "time": "2026-10-18T12:00:00+00:00"}
    {"type": "command", "payload": "list", "origin": "a1b2c3", "time": "..."}
    {"type": "response", "payload": "There are 0 players", "origin": "a1b2c3", "time": "..."}
    {"type": "history", "payload": "list", "time": "..."}     (to the asking client only)

Wire format (log stream):
    Raw text, one message per line, no envelope. Errors are rendered as
    "Error: <text>" and status events are not sent at all.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ChannelKind(str, Enum):
    """The two realtime channels a server exposes."""

    CONSOLE = "console"
    LOGS = "logs"


class EventType(str, Enum):
    COMMAND = "command"
    RESPONSE = "response"
    ERROR = "error"
    STATUS = "status"
    LINE = "line"
    HISTORY = "history"


# Status payloads shared by the session state machine and the client UI.
STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"
STATUS_RECONNECTED = "reconnected"

# Application close codes sent when a channel cannot be served.
CLOSE_NOT_APPLICABLE = 4001
CLOSE_NOT_READY = 4002
CLOSE_TERMINATED = 4003
CLOSE_UNAUTHORIZED = 4401
CLOSE_UNKNOWN_SERVER = 4404

# A websocket close frame carries at most 125 bytes: 2 for the code, the rest
# for the UTF-8 reason.
MAX_CLOSE_REASON_BYTES = 123


def _now() -> datetime:
    return datetime.now(timezone.utc)


def close_reason(text: str) -> str:
    """Cut ``text`` to fit a close frame without splitting a character."""
    return text.encode("utf-8")[:MAX_CLOSE_REASON_BYTES].decode("utf-8", errors="ignore")


@dataclass(frozen=True)
class ChannelEvent:
    """
    One event in a session's ordered stream.

    Attributes:
        type:   What kind of event this is.
        text:   Payload text (command, response body, status word, log line).
        origin: Identifier of the client that issued the command this event
                belongs to, if any.
        time:   When the relay emitted or accepted the event.
    """

    type: EventType
    text: str
    origin: str | None = None
    time: datetime = field(default_factory=_now)

    # -- Constructors ---------------------------------------------------------

    @classmethod
    def command(cls, text: str, origin: str | None = None) -> "ChannelEvent":
        return cls(EventType.COMMAND, text, origin)

    @classmethod
    def response(cls, text: str, origin: str | None = None) -> "ChannelEvent":
        return cls(EventType.RESPONSE, text, origin)

    @classmethod
    def error(cls, text: str) -> "ChannelEvent":
        return cls(EventType.ERROR, text)

    @classmethod
    def status(cls, text: str) -> "ChannelEvent":
        return cls(EventType.STATUS, text)

    @classmethod
    def line(cls, text: str) -> "ChannelEvent":
        return cls(EventType.LINE, text)

    @classmethod
    def recall(cls, text: str) -> "ChannelEvent":
        return cls(EventType.HISTORY, text)

    # -- Encoding -------------------------------------------------------------

    @property
    def replayable(self) -> bool:
        """Status events describe a moment, not content, and are never replayed."""
        return self.type is not EventType.STATUS

    def to_frame(self) -> dict:
        """Return the console wire frame for this event."""
        frame = {
            "type": self.type.value,
            "payload": self.text,
            "time": self.time.isoformat(),
        }
        if self.origin is not None:
            frame["origin"] = self.origin
        return frame

    def encode(self, kind: ChannelKind) -> str | None:
        """
        Render the event for a client of the given channel kind.

        Returns:
            The text frame to send, or None if this event has no
            representation on that channel.
        """
        if kind is ChannelKind.CONSOLE:
            if self.type is EventType.LINE:
                return None
            return json.dumps(self.to_frame(), ensure_ascii=False)

        if self.type is EventType.LINE:
            return self.text
        if self.type is EventType.ERROR:
            return f"Error: {self.text}"
        return None
