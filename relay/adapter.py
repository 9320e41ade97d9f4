"""
RealmOps Relay - Client Channel Adapter
========================================
One adapter per browser connection. It sits between the websocket and the
session:

    websocket --frames--> adapter --submit--> session --> connector
    websocket <--frames-- adapter <--deliver-- session (fan-out)

The adapter speaks the ASGI websocket surface (send_text, receive, close),
so it runs unchanged on FastAPI/Starlette websockets and on test doubles.

Outbound events go through a bounded queue drained by a pump task. When a
slow client falls behind, the oldest queued events are dropped for that
client only; the shared ring buffer and the other clients are untouched.

Client -> server frames (console only):
    {"type": "command", "payload": "list"}
    {"type": "history", "payload": "previous"}     (or "next")

A history frame walks this client's own command recall and is answered with
a history event sent to that client alone; an empty payload means the walk
has moved past the newest command.

Anything else on the console channel gets a local error event that only
this client sees. Log channel clients may send anything; it is ignored.
"""

import asyncio
import json
import logging
import uuid
from collections import deque

from relay.errors import MalformedFrame, NotConnected, Overflow
from relay.events import ChannelEvent, ChannelKind, close_reason

logger = logging.getLogger(__name__)


def parse_client_frame(raw: str) -> dict:
    """
    Decode a client frame.

    Returns:
        Dict with a string 'type' and a string 'payload' (may be empty).

    Raises:
        MalformedFrame: If the text is not a JSON object of that shape.
    """
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedFrame("invalid message format") from e

    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        raise MalformedFrame("invalid message format")

    payload = frame.get("payload", "")
    if not isinstance(payload, str):
        raise MalformedFrame("payload must be a string")
    return {"type": frame["type"], "payload": payload}


class CommandHistory:
    """
    Bounded per-client command recall, walked like a shell history:
    previous() steps back from the newest entry, next() steps forward and
    returns an empty string once it passes the newest one.
    """

    def __init__(self, limit: int = 50):
        self._entries: deque[str] = deque(maxlen=limit)
        self._cursor = -1

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[str]:
        return list(self._entries)

    def record(self, text: str) -> None:
        self._entries.append(text)
        self._cursor = -1

    def previous(self) -> str | None:
        if not self._entries:
            return None
        if self._cursor < len(self._entries) - 1:
            self._cursor += 1
        return self._entries[-1 - self._cursor]

    def next(self) -> str:
        if self._cursor > 0:
            self._cursor -= 1
            return self._entries[-1 - self._cursor]
        self._cursor = -1
        return ""


class ChannelAdapter:
    """
    Per-connection endpoint for one channel kind.

    Attributes:
        id:        Short identifier used as the origin of this client's
                   commands.
        kind:      Channel kind served.
        history:   This client's command recall.
        dropped:   Events evicted from the outbound queue so far.
        overflow:  The most recent overflow condition, if any.
        session:   The session attached to, once serve() has attached.
    """

    def __init__(
        self,
        websocket,
        kind: ChannelKind,
        backlog: int = 1000,
        history_limit: int = 50,
    ):
        self.id = uuid.uuid4().hex[:8]
        self.websocket = websocket
        self.kind = kind
        self.history = CommandHistory(history_limit)
        self.dropped = 0
        self.overflow: Overflow | None = None
        self.session = None

        self._outbound: deque[ChannelEvent] = deque(maxlen=backlog)
        self._wake = asyncio.Event()
        self._close_code: int | None = None
        self._close_reason = ""
        self._finished = False

    # -- Fan-out side ---------------------------------------------------------

    def deliver(self, event: ChannelEvent) -> None:
        """Queue an event for this client. Never blocks."""
        if self._finished or self._close_code is not None:
            return
        if len(self._outbound) == self._outbound.maxlen:
            self.dropped += 1
            self.overflow = Overflow(f"{self.dropped} events dropped for client {self.id}")
            logger.debug("[WS] %s", self.overflow)
        self._outbound.append(event)
        self._wake.set()

    def close(self, code: int, reason: str = "") -> None:
        """Close after everything already queued has been sent."""
        if self._close_code is None:
            self._close_code = code
            self._close_reason = reason
            self._wake.set()

    @property
    def pending(self) -> int:
        return len(self._outbound)

    # -- Connection lifetime --------------------------------------------------

    async def serve(self, registry, server_id: str) -> None:
        """
        Attach to the server's session and run until either side closes.

        The adapter is detached as soon as the client goes away, including
        when this task is cancelled; commands it already submitted keep
        going upstream.
        """
        session = await registry.attach(server_id, self.kind, self)
        self.session = session

        pump = asyncio.create_task(self._pump(), name=f"relay-pump-{self.id}")
        receiver = asyncio.create_task(self._receive(), name=f"relay-recv-{self.id}")
        try:
            await asyncio.wait({pump, receiver}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._finished = True
            registry.detach(session, self)
            for task in (pump, receiver):
                task.cancel()

        # Only reached when one side closed; a cancelled serve() leaves the
        # cancelled children to finish on their own.
        await asyncio.wait({pump, receiver})
        for task in (pump, receiver):
            if not task.cancelled() and task.exception() is not None:
                logger.debug("[WS] client %s connection ended: %r", self.id, task.exception())

    async def _pump(self) -> None:
        while True:
            while self._outbound:
                frame = self._outbound.popleft().encode(self.kind)
                if frame is not None:
                    await self.websocket.send_text(frame)
            if self._close_code is not None:
                await self.websocket.close(
                    code=self._close_code, reason=close_reason(self._close_reason)
                )
                return
            self._wake.clear()
            await self._wake.wait()

    async def _receive(self) -> None:
        while True:
            message = await self.websocket.receive()
            if message.get("type") == "websocket.disconnect":
                return
            if self.kind is not ChannelKind.CONSOLE:
                continue

            text = message.get("text")
            if text is None and message.get("bytes") is not None:
                text = message["bytes"].decode("utf-8", errors="replace")
            self.handle_frame(text or "")

    # -- Inbound frames -------------------------------------------------------

    def handle_frame(self, raw: str) -> None:
        """Process one client frame. Problems are reported to this client only."""
        try:
            frame = parse_client_frame(raw)
        except MalformedFrame as e:
            logger.debug("[WS] client %s sent a malformed frame", self.id)
            self._local_error(str(e))
            return

        if frame["type"] == "history":
            self._recall(frame["payload"])
            return
        if frame["type"] != "command":
            self._local_error("unknown message type")
            return

        command = frame["payload"].strip()
        if not command:
            return

        try:
            self.session.submit(self.id, command)
        except (NotConnected, MalformedFrame) as e:
            self._local_error(f"command rejected: {e}")
            return
        self.history.record(command)

    def _recall(self, direction: str) -> None:
        if direction == "previous":
            entry = self.history.previous() or ""
        elif direction == "next":
            entry = self.history.next()
        else:
            self._local_error("history direction must be 'previous' or 'next'")
            return
        self.deliver(ChannelEvent.recall(entry))

    def _local_error(self, text: str) -> None:
        self.deliver(ChannelEvent.error(text))
