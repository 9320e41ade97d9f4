"""
RealmOps Relay - Upstream Connectors
=====================================
A connector owns the single physical connection from the relay to one
server's control or telemetry endpoint:

    ConsoleConnector -> RCON (authenticated, request/response)
    LogConnector     -> container stdout/stderr (read-only lines)

Lifecycle:
    connector.bind(on_event, on_closed)
    await connector.open()      # NotRunning / AuthRejected / TransportError
    await connector.send(...)   # console only
    await connector.close()

After a successful open() a read task decodes inbound frames and hands each
one to ``on_event``. When the upstream ends on its own (EOF or error) the
read task calls ``on_closed`` exactly once; an explicit close() never does.
A connector can be reopened after it has closed, which is how sessions
reconnect without ever holding two connections at once.
"""

import asyncio
import itertools
import logging
import re
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable

from relay.errors import (
    AuthRejected,
    MalformedFrame,
    NotConnected,
    NotInstalled,
    NotRunning,
    TransportError,
)
from relay.events import ChannelEvent, ChannelKind
from relay.providers import (
    CredentialResolver,
    ProcessStateProvider,
    TransportFactory,
    UpstreamStream,
)
from relay.rcon import (
    AUTH_FAILED_ID,
    MAX_PACKET_SIZE,
    PACKET_AUTH,
    PACKET_AUTH_RESPONSE,
    PACKET_EXEC_COMMAND,
    PACKET_RESPONSE,
    Packet,
    encode_packet,
    read_packet,
)

logger = logging.getLogger(__name__)

EventSink = Callable[[ChannelEvent], None]
ClosedSink = Callable[[BaseException | None], None]

# Request ids remembered for response correlation.
_ORIGIN_MEMORY = 256

# RFC 3339 timestamp with up to nanosecond precision, as Docker prefixes each
# log line when asked for timestamps.
_LINE_TIMESTAMP = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d{1,9}))?Z ")


def split_timestamp(line: str) -> tuple[int | None, str]:
    """
    Split a leading log timestamp off ``line``.

    Returns:
        (nanoseconds since the epoch, rest of the line). Lines without a
        timestamp come back unchanged with None.
    """
    match = _LINE_TIMESTAMP.match(line)
    if match is None:
        return None, line
    whole = datetime.strptime(match.group(1), "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    fraction = int((match.group(2) or "").ljust(9, "0"))
    return int(whole.timestamp()) * 1_000_000_000 + fraction, line[match.end():]


def _abort(stream: UpstreamStream) -> None:
    """Close a stream without waiting for the close handshake."""
    close = getattr(stream.writer, "close", None)
    if close is not None:
        close()


async def _close_stream(stream: UpstreamStream) -> None:
    _abort(stream)
    wait_closed = getattr(stream.writer, "wait_closed", None)
    if wait_closed is None:
        return
    try:
        await wait_closed()
    except (OSError, ConnectionError) as e:
        logger.debug("[UPSTREAM] Error while closing stream: %s", e)


class UpstreamConnector:
    """
    Base connector: owns the stream and the read task.

    Subclasses implement _check_process, _establish and _read_loop.

    Attributes:
        server_id: Server this connector talks to.
        opens:     Number of successful opens so far (one per physical
                   connection).
    """

    kind: ChannelKind

    def __init__(
        self,
        server_id: str,
        transports: TransportFactory,
        process_state: ProcessStateProvider,
        connect_timeout: float = 10.0,
    ):
        self.server_id = server_id
        self.transports = transports
        self.process_state = process_state
        self.connect_timeout = connect_timeout
        self.opens = 0

        self._stream: UpstreamStream | None = None
        self._read_task: asyncio.Task | None = None
        self._on_event: EventSink | None = None
        self._on_closed: ClosedSink | None = None

    def bind(self, on_event: EventSink, on_closed: ClosedSink) -> None:
        self._on_event = on_event
        self._on_closed = on_closed

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    # -- Public contract ------------------------------------------------------

    async def open(self) -> None:
        """
        Establish the physical connection and start the read task.

        Raises:
            NotRunning:     The target process is not in a usable state.
            AuthRejected:   The handshake was refused.
            TransportError: The endpoint could not be reached in time.
        """
        if self._stream is not None:
            raise RuntimeError(f"{self.kind.value} connector for {self.server_id} is already open")

        await self._check_process()
        try:
            stream = await asyncio.wait_for(self._establish(), self.connect_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"timed out connecting to {self.kind.value} endpoint"
            ) from e

        self._stream = stream
        self.opens += 1
        self._read_task = asyncio.create_task(
            self._read_forever(stream),
            name=f"relay-read-{self.kind.value}-{self.server_id}",
        )
        logger.info("[UPSTREAM] %s/%s opened", self.server_id, self.kind.value)

    def check_command(self, text: str) -> None:
        """Reject a command before it is queued. Base connectors take none."""
        raise MalformedFrame(f"{self.kind.value} channel does not accept commands")

    async def send(self, text: str, origin: str | None = None) -> None:
        raise NotConnected(f"{self.kind.value} channel does not accept commands")

    async def close(self) -> None:
        """Close the connection. Does not trigger ``on_closed``."""
        stream, self._stream = self._stream, None
        task, self._read_task = self._read_task, None

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if stream is not None:
            await _close_stream(stream)
            logger.info("[UPSTREAM] %s/%s closed", self.server_id, self.kind.value)

    # -- Read task ------------------------------------------------------------

    async def _read_forever(self, stream: UpstreamStream) -> None:
        error: BaseException | None = None
        try:
            await self._read_loop(stream.reader)
        except asyncio.CancelledError:
            _abort(stream)
            raise
        except Exception as e:
            error = e
        finally:
            if self._stream is stream:
                self._stream = None
                self._read_task = None
        _abort(stream)

        if error is None:
            logger.info("[UPSTREAM] %s/%s reached end of stream", self.server_id, self.kind.value)
        else:
            logger.warning(
                "[UPSTREAM] %s/%s read loop failed: %r", self.server_id, self.kind.value, error
            )
        if self._on_closed is not None:
            self._on_closed(error)

    def _emit(self, event: ChannelEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    # -- Subclass hooks -------------------------------------------------------

    async def _check_process(self) -> None:
        raise NotImplementedError

    async def _establish(self) -> UpstreamStream:
        raise NotImplementedError

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        raise NotImplementedError


class ConsoleConnector(UpstreamConnector):
    """
    RCON connector.

    Commands are written with increasing request ids. Each response packet
    is matched back to the client that issued the command by its id, so
    responses carry the right origin even when several clients type at once.
    """

    kind = ChannelKind.CONSOLE

    def __init__(
        self,
        server_id: str,
        transports: TransportFactory,
        process_state: ProcessStateProvider,
        credentials: CredentialResolver,
        connect_timeout: float = 10.0,
    ):
        super().__init__(server_id, transports, process_state, connect_timeout)
        self.credentials = credentials
        self._request_ids = itertools.count(1)
        self._origins: OrderedDict[int, str | None] = OrderedDict()

    async def _check_process(self) -> None:
        if not await self.process_state.is_running(self.server_id):
            raise NotRunning()

    async def _establish(self) -> UpstreamStream:
        secret = await self.credentials.resolve_auth_secret(self.server_id)
        if not secret:
            raise AuthRejected("RCON password not configured")

        stream = await self.transports.open(self.server_id, self.kind)
        try:
            await self._authenticate(stream, secret)
        except BaseException:
            _abort(stream)
            raise
        return stream

    async def _authenticate(self, stream: UpstreamStream, secret: str) -> None:
        request_id = next(self._request_ids)
        try:
            stream.writer.write(encode_packet(Packet(request_id, PACKET_AUTH, secret)))
            await stream.writer.drain()
            # Source servers send an empty RESPONSE_VALUE ahead of the
            # auth response; skip anything until the auth answer arrives.
            while True:
                packet = await read_packet(stream.reader)
                if packet.type == PACKET_AUTH_RESPONSE:
                    break
        except (OSError, asyncio.IncompleteReadError) as e:
            raise TransportError(f"RCON handshake failed: {e}") from e

        if packet.request_id == AUTH_FAILED_ID:
            logger.warning("[RCON] %s rejected the RCON password", self.server_id)
            raise AuthRejected("RCON authentication failed")

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        while True:
            packet = await read_packet(reader)
            if packet.type != PACKET_RESPONSE:
                logger.debug("[RCON] %s ignoring packet type %d", self.server_id, packet.type)
                continue
            origin = self._origins.get(packet.request_id)
            self._emit(ChannelEvent.response(packet.body, origin))

    def check_command(self, text: str) -> None:
        if len(text.encode("utf-8")) + 10 > MAX_PACKET_SIZE:
            raise MalformedFrame("command too long")

    async def send(self, text: str, origin: str | None = None) -> None:
        """
        Write one command to the server.

        Raises:
            NotConnected:   No connection is open.
            TransportError: The write failed; the connection is aborted so
                            the read task reports the loss.
        """
        stream = self._stream
        if stream is None:
            raise NotConnected()

        request_id = next(self._request_ids)
        self._origins[request_id] = origin
        while len(self._origins) > _ORIGIN_MEMORY:
            self._origins.popitem(last=False)

        try:
            stream.writer.write(encode_packet(Packet(request_id, PACKET_EXEC_COMMAND, text)))
            await stream.writer.drain()
        except (OSError, RuntimeError) as e:
            _abort(stream)
            raise TransportError(f"failed to send command: {e}") from e


class LogConnector(UpstreamConnector):
    """
    Container log connector.

    Each newline-terminated chunk becomes one line event. Lines arrive
    stamped by the daemon; the stamp is stripped and the newest one is kept
    as the resume cursor. A reopened stream asks for lines since the cursor
    and skips any it already delivered, so lines logged in the same second
    as the disconnect are neither lost nor repeated.

    Attributes:
        last_timestamp: Daemon timestamp of the newest line, in nanoseconds
                        since the epoch.
    """

    kind = ChannelKind.LOGS

    def __init__(
        self,
        server_id: str,
        transports: TransportFactory,
        process_state: ProcessStateProvider,
        connect_timeout: float = 10.0,
    ):
        super().__init__(server_id, transports, process_state, connect_timeout)
        self.last_timestamp: int | None = None
        self._resume_after: int | None = None

    async def _check_process(self) -> None:
        if not await self.process_state.has_started(self.server_id):
            raise NotInstalled()

    async def _establish(self) -> UpstreamStream:
        self._resume_after = self.last_timestamp
        since = None if self.last_timestamp is None else self.last_timestamp / 1_000_000_000
        return await self.transports.open(self.server_id, self.kind, since=since)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        while True:
            raw = await reader.readline()
            if not raw:
                return
            stamp, text = split_timestamp(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
            if stamp is not None:
                if self._resume_after is not None and stamp <= self._resume_after:
                    continue
                self.last_timestamp = stamp
            self._emit(ChannelEvent.line(text))


def build_connector(
    server_id: str,
    kind: ChannelKind,
    transports: TransportFactory,
    process_state: ProcessStateProvider,
    credentials: CredentialResolver,
    connect_timeout: float = 10.0,
) -> UpstreamConnector:
    """Create the connector matching ``kind``."""
    if kind is ChannelKind.CONSOLE:
        return ConsoleConnector(
            server_id, transports, process_state, credentials, connect_timeout
        )
    return LogConnector(server_id, transports, process_state, connect_timeout)
