"""Shared fakes for relay tests: process state, connectors, RCON server, websockets."""

from __future__ import annotations

import asyncio
import pytest

from relay.errors import MalformedFrame, NotConnected, TransportError
from relay.events import ChannelEvent, ChannelKind
from relay.providers import UpstreamStream
from relay.rcon import (
    AUTH_FAILED_ID,
    PACKET_AUTH,
    PACKET_AUTH_RESPONSE,
    PACKET_EXEC_COMMAND,
    PACKET_RESPONSE,
    Packet,
    encode_packet,
    read_packet,
)
from relay.settings import RelaySettings


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeProcessState:
    def __init__(self, running: bool = True, started: bool = True):
        self.running = running
        self.started = started

    async def is_running(self, server_id: str) -> bool:
        return self.running

    async def has_started(self, server_id: str) -> bool:
        return self.started


class FakeCredentials:
    def __init__(self, secret: str | None = "hunter2"):
        self.secret = secret

    async def resolve_auth_secret(self, server_id: str) -> str | None:
        return self.secret


class Recorder:
    """Fan-out recipient that keeps everything it is given."""

    def __init__(self):
        self.events: list[ChannelEvent] = []
        self.closed: tuple[int, str] | None = None

    def deliver(self, event: ChannelEvent) -> None:
        self.events.append(event)

    def close(self, code: int, reason: str = "") -> None:
        self.closed = (code, reason)

    def texts(self, type_=None) -> list[str]:
        return [e.text for e in self.events if type_ is None or e.type == type_]


class FakeConnector:
    """
    Scriptable stand-in for an UpstreamConnector.

    ``outcomes`` lists what successive open() calls do: None succeeds, an
    exception instance is raised. Once exhausted, opens succeed.
    """

    def __init__(self, kind: ChannelKind = ChannelKind.CONSOLE, outcomes=None, echo: bool = True):
        self.kind = kind
        self.outcomes = list(outcomes or [])
        self.echo = echo
        self.opens = 0
        self.open_attempts = 0
        self.closes = 0
        self.sent: list[tuple[str, str | None]] = []
        self.send_error: Exception | None = None
        self.is_open = False
        self._on_event = None
        self._on_closed = None

    def bind(self, on_event, on_closed) -> None:
        self._on_event = on_event
        self._on_closed = on_closed

    async def open(self) -> None:
        self.open_attempts += 1
        await asyncio.sleep(0)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if outcome is not None:
                raise outcome
        self.is_open = True
        self.opens += 1

    def check_command(self, text: str) -> None:
        if self.kind is not ChannelKind.CONSOLE:
            raise MalformedFrame("no commands")
        if len(text) > 100:
            raise MalformedFrame("command too long")

    async def send(self, text: str, origin: str | None = None) -> None:
        if not self.is_open:
            raise NotConnected()
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((text, origin))
        if self.echo:
            self.emit(ChannelEvent.response(f"ran {text}", origin))

    async def close(self) -> None:
        if self.is_open:
            self.closes += 1
        self.is_open = False

    # -- Test controls --------------------------------------------------------

    def emit(self, event: ChannelEvent) -> None:
        self._on_event(event)

    def drop(self, error: BaseException | None = None) -> None:
        """Simulate the upstream going away on its own."""
        self.is_open = False
        self._on_closed(error)


class SlowCloseConnector(FakeConnector):
    """FakeConnector whose close() takes ``delay`` seconds to finish."""

    def __init__(self, kind: ChannelKind = ChannelKind.CONSOLE, delay: float = 0.5, **kwargs):
        super().__init__(kind, **kwargs)
        self.delay = delay
        self.close_finished = False

    async def close(self) -> None:
        await asyncio.sleep(self.delay)
        await super().close()
        self.close_finished = True


class RconServer:
    """
    Minimal RCON server on a loopback port.

    Replies to every command with "ran <command>". drop() closes every open
    client connection from the server side.
    """

    def __init__(self, password: str = "hunter2", empty_before_auth: bool = True):
        self.password = password
        self.empty_before_auth = empty_before_auth
        self.commands: list[str] = []
        self.connections = 0
        self.port: int | None = None
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self.drop()
        self._server.close()
        await self._server.wait_closed()

    def drop(self) -> None:
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.add(writer)
        try:
            while True:
                packet = await read_packet(reader)
                if packet.type == PACKET_AUTH:
                    if self.empty_before_auth:
                        writer.write(encode_packet(Packet(packet.request_id, PACKET_RESPONSE)))
                    ok = packet.body == self.password
                    reply_id = packet.request_id if ok else AUTH_FAILED_ID
                    writer.write(encode_packet(Packet(reply_id, PACKET_AUTH_RESPONSE)))
                elif packet.type == PACKET_EXEC_COMMAND:
                    self.commands.append(packet.body)
                    writer.write(
                        encode_packet(Packet(packet.request_id, PACKET_RESPONSE, f"ran {packet.body}"))
                    )
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()


class LogFeed:
    """In-memory log stream; the test feeds lines and ends it."""

    def __init__(self):
        self.reader = asyncio.StreamReader()
        self.closed = False

    def push(self, *lines: str) -> None:
        for line in lines:
            self.reader.feed_data(f"{line}\n".encode())

    def end(self) -> None:
        self.reader.feed_eof()

    def write(self, data: bytes) -> None:
        raise OSError("read-only")

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class LoopbackTransports:
    """TransportFactory wired to an RconServer and in-memory log feeds."""

    def __init__(self, rcon: RconServer | None = None):
        self.rcon = rcon
        self.log_feeds: list[LogFeed] = []
        self.log_since: list[float | None] = []
        self.refuse = False

    async def open(self, server_id: str, kind: ChannelKind, *, since: float | None = None):
        if self.refuse:
            raise TransportError("connection refused")
        if kind is ChannelKind.CONSOLE:
            reader, writer = await asyncio.open_connection("127.0.0.1", self.rcon.port)
            return UpstreamStream(reader, writer)
        feed = LogFeed()
        self.log_feeds.append(feed)
        self.log_since.append(since)
        return UpstreamStream(feed.reader, feed)


class FakeWebSocket:
    """The slice of the ASGI websocket surface the adapter uses."""

    def __init__(self, fail_send: bool = False):
        self.sent: list[str] = []
        self.closed: tuple[int, str] | None = None
        self.fail_send = fail_send
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send_text(self, text: str) -> None:
        if self.fail_send:
            raise RuntimeError("client went away")
        self.sent.append(text)

    async def receive(self) -> dict:
        return await self._incoming.get()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def push_text(self, text: str) -> None:
        self._incoming.put_nowait({"type": "websocket.receive", "text": text})

    def push_bytes(self, data: bytes) -> None:
        self._incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def disconnect(self) -> None:
        self._incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})


# -- Fixtures -----------------------------------------------------------------

@pytest.fixture
def fast_settings() -> RelaySettings:
    return RelaySettings(
        console_history=20,
        log_history=20,
        idle_timeout=0.05,
        console_retry_delay=0.01,
        console_max_retries=3,
        log_retry_interval=0.01,
        adapter_backlog=10,
        command_history=5,
        connect_timeout=1.0,
    )


@pytest.fixture
def process_state() -> FakeProcessState:
    return FakeProcessState()


@pytest.fixture
async def rcon_server():
    server = RconServer()
    await server.start()
    yield server
    await server.stop()
