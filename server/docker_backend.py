"""
RealmOps Relay - Docker Backend
================================
Answers the relay's process questions from the Docker daemon and opens the
raw streams its connectors speak over.

    has_started(server_id) -> the server has a container (it was installed)
    is_running(server_id)  -> that container's status is "running"
    open(server_id, kind)  -> console: TCP to the RCON port
                              logs:    followed container log stream,
                                       each line stamped by the daemon

The docker SDK is blocking. Status checks run in a worker thread; the log
stream is pumped by a daemon thread into an asyncio.StreamReader so the log
connector can read it like any socket.
"""

import asyncio
import logging
import threading
import docker
from docker.errors import DockerException, NotFound

from relay.errors import TransportError
from relay.events import ChannelKind
from relay.providers import UpstreamStream
from server.catalog import ServerCatalog

logger = logging.getLogger(__name__)

# Log lines can be long (stack traces, JSON dumps).
LOG_READER_LIMIT = 1024 * 1024


class DockerBackend:
    """
    Process-state provider and transport factory backed by Docker.

    Attributes:
        catalog:  Server definitions (container ids, RCON endpoints).
        log_tail: Lines of history requested on the first log open.
    """

    def __init__(
        self,
        catalog: ServerCatalog,
        client: docker.DockerClient | None = None,
        base_url: str | None = None,
        log_tail: int = 100,
    ):
        self.catalog = catalog
        self.log_tail = log_tail
        self._client = client
        self._base_url = base_url

    @property
    def client(self) -> docker.DockerClient:
        """Docker client, created on first use so startup never needs the daemon."""
        if self._client is None:
            if self._base_url:
                self._client = docker.DockerClient(base_url=self._base_url)
            else:
                self._client = docker.from_env()
        return self._client

    # -- Process state --------------------------------------------------------

    async def has_started(self, server_id: str) -> bool:
        entry = self.catalog.get(server_id)
        return entry is not None and bool(entry.container_id)

    async def is_running(self, server_id: str) -> bool:
        entry = self.catalog.get(server_id)
        if entry is None or not entry.container_id:
            return False
        try:
            status = await asyncio.to_thread(self._container_status, entry.container_id)
        except NotFound:
            return False
        except (DockerException, OSError) as e:
            logger.warning("[DOCKER] status check failed for %s: %s", server_id, e)
            return False
        return status == "running"

    def _container_status(self, container_id: str) -> str:
        return self.client.containers.get(container_id).status

    # -- Transports -----------------------------------------------------------

    async def open(
        self,
        server_id: str,
        kind: ChannelKind,
        *,
        since: float | None = None,
    ) -> UpstreamStream:
        if kind is ChannelKind.CONSOLE:
            return await self._open_rcon(server_id)
        return await self._open_logs(server_id, since)

    async def _open_rcon(self, server_id: str) -> UpstreamStream:
        endpoint = self.catalog.rcon_endpoint(server_id)
        if endpoint is None:
            raise TransportError("RCON port not configured")
        host, port = endpoint
        try:
            reader, writer = await asyncio.open_connection(host, port)
        except OSError as e:
            raise TransportError(f"failed to connect to RCON at {host}:{port}: {e}") from e
        return UpstreamStream(reader, writer)

    async def _open_logs(self, server_id: str, since: float | None) -> UpstreamStream:
        entry = self.catalog.get(server_id)
        if entry is None or not entry.container_id:
            raise TransportError("server has no container")

        options = {
            "stream": True,
            "follow": True,
            "stdout": True,
            "stderr": True,
            "timestamps": True,
        }
        if since is not None:
            options["since"] = since
        else:
            options["tail"] = self.log_tail

        try:
            source = await asyncio.to_thread(self._log_source, entry.container_id, options)
        except NotFound as e:
            raise TransportError("container not found") from e
        except (DockerException, OSError) as e:
            raise TransportError(f"failed to open log stream: {e}") from e

        pipe = LogPipe(source, asyncio.get_running_loop())
        pipe.start()
        return UpstreamStream(pipe.reader, pipe)

    def _log_source(self, container_id: str, options: dict):
        return self.client.containers.get(container_id).logs(**options)


class LogPipe:
    """
    Feeds a blocking iterator of byte chunks into an asyncio.StreamReader.

    Doubles as the stream's writer handle: close() stops the source, and
    writing is refused because log streams are read-only.
    """

    def __init__(self, source, loop: asyncio.AbstractEventLoop, limit: int = LOG_READER_LIMIT):
        self.reader = asyncio.StreamReader(limit=limit)
        self._source = source
        self._loop = loop
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="relay-docker-logs", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            for chunk in self._source:
                if self._closed:
                    break
                self._loop.call_soon_threadsafe(self.reader.feed_data, chunk)
        except (DockerException, OSError, ValueError) as e:
            # Closing the source from another thread surfaces here
            if not self._closed:
                logger.warning("[DOCKER] log stream failed: %s", e)
        finally:
            if not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self.reader.feed_eof)

    # -- Writer surface -------------------------------------------------------

    def write(self, data: bytes) -> None:
        raise TransportError("log stream is read-only")

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self._source, "close", None)
        if close is not None:
            close()

    async def wait_closed(self) -> None:
        await asyncio.to_thread(self._thread.join, 2.0)
