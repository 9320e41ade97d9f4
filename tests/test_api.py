"""REST routes and websocket endpoints through the FastAPI test client."""

import asyncio
import struct

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from starlette.websockets import WebSocketDisconnect

from relay.events import ChannelKind
from relay.providers import UpstreamStream
from relay.rcon import (
    AUTH_FAILED_ID,
    PACKET_AUTH,
    PACKET_AUTH_RESPONSE,
    PACKET_RESPONSE,
    Packet,
    decode_packet,
    encode_packet,
)
from server.auth import AuthManager
from server.catalog import ServerCatalog
from server.main import create_app
from tests.conftest import LogFeed

SECRET = "test-secret"

SERVERS = """
servers:
  valheim-1:
    container_id: abc123
    rcon: {enabled: true, port: 24570, password: hunter2}
  terraria-1:
    container_id: def456
  fresh-1:
    rcon: {enabled: true, port: 24571, password: hunter2}
"""


class InMemoryRcon:
    """Writer half of an RCON endpoint that answers synchronously into ``reader``."""

    def __init__(self, password: str):
        self.password = password
        self.reader = asyncio.StreamReader()
        self._buffer = b""

    def write(self, data: bytes) -> None:
        self._buffer += data
        while len(self._buffer) >= 4:
            (length,) = struct.unpack_from("<i", self._buffer)
            if len(self._buffer) < 4 + length:
                return
            packet = decode_packet(self._buffer[4:4 + length])
            self._buffer = self._buffer[4 + length:]
            self._reply(packet)

    def _reply(self, packet: Packet) -> None:
        if packet.type == PACKET_AUTH:
            reply_id = packet.request_id if packet.body == self.password else AUTH_FAILED_ID
            self.reader.feed_data(encode_packet(Packet(reply_id, PACKET_AUTH_RESPONSE)))
        else:
            reply = Packet(packet.request_id, PACKET_RESPONSE, f"ran {packet.body}")
            self.reader.feed_data(encode_packet(reply))

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.reader.feed_eof()

    async def wait_closed(self) -> None:
        return None


class FakeBackend:
    """Process state from the catalog plus a running set; in-memory transports."""

    def __init__(self, catalog: ServerCatalog):
        self.catalog = catalog
        self.running = {"valheim-1"}
        self.opens: list[tuple[str, ChannelKind]] = []

    async def has_started(self, server_id):
        entry = self.catalog.get(server_id)
        return entry is not None and bool(entry.container_id)

    async def is_running(self, server_id):
        return server_id in self.running

    async def open(self, server_id, kind, *, since=None):
        self.opens.append((server_id, kind))
        if kind is ChannelKind.CONSOLE:
            endpoint = InMemoryRcon("hunter2")
            return UpstreamStream(endpoint.reader, endpoint)
        feed = LogFeed()
        feed.push("2026-10-18T12:00:00.000000001Z Server started")
        return UpstreamStream(feed.reader, feed)


def make_token():
    return jwt.encode({"sub": "panel"}, SECRET, algorithm="HS256")


@pytest.fixture
def backend(tmp_path):
    path = tmp_path / "servers.yaml"
    path.write_text(SERVERS, encoding="utf-8")
    return FakeBackend(ServerCatalog(str(path)))


@pytest.fixture
def client(tmp_path, backend):
    app = create_app(
        project_dir=str(tmp_path),
        catalog=backend.catalog,
        backend=backend,
        auth_manager=AuthManager(SECRET),
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def headers():
    return {"Authorization": f"Bearer {make_token()}"}


def ws_url(server_id, channel):
    path = "console" if channel == "console" else "logs/stream"
    return f"/api/servers/{server_id}/{path}?token={make_token()}"


def read_until_closed(ws, decode=True):
    received = []
    with pytest.raises(WebSocketDisconnect) as exc:
        while True:
            received.append(ws.receive_json() if decode else ws.receive_text())
    return received, exc.value.code


class TestRest:
    def test_health_is_public(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["auth_required"] is True

    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("get", "/api/sessions"),
            ("get", "/api/servers/valheim-1/channels"),
            ("delete", "/api/servers/valheim-1/channels/console"),
        ],
    )
    def test_protected_routes_require_token(self, client, method, path):
        assert client.request(method, path).status_code == 401
        bad = {"Authorization": "Bearer forged"}
        assert client.request(method, path, headers=bad).status_code == 401

    def test_channel_views_keep_families_apart(self, client, headers):
        def views(server_id):
            body = client.get(f"/api/servers/{server_id}/channels", headers=headers).json()
            return {kind: status["view"] for kind, status in body["channels"].items()}

        assert views("valheim-1") == {"console": "disconnected", "logs": "disconnected"}
        assert views("terraria-1") == {"console": "not_applicable", "logs": "disconnected"}
        assert views("fresh-1") == {"console": "not_installed", "logs": "not_installed"}

    def test_unknown_server_is_404(self, client, headers):
        assert client.get("/api/servers/nope/channels", headers=headers).status_code == 404
        assert client.delete("/api/servers/nope/channels/logs", headers=headers).status_code == 404

    def test_terminate_without_session_is_404(self, client, headers):
        response = client.delete("/api/servers/valheim-1/channels/console", headers=headers)
        assert response.status_code == 404

    def test_unknown_kind_is_rejected(self, client, headers):
        response = client.delete("/api/servers/valheim-1/channels/chat", headers=headers)
        assert response.status_code == 422


class TestConsoleSocket:
    def test_status_command_and_response(self, client, headers, backend):
        with client.websocket_connect(ws_url("valheim-1", "console")) as ws:
            assert ws.receive_json()["payload"] == "connecting"
            assert ws.receive_json()["payload"] == "connected"

            ws.send_json({"type": "command", "payload": "list"})
            echo = ws.receive_json()
            response = ws.receive_json()

            sessions = client.get("/api/sessions", headers=headers).json()

        assert (echo["type"], echo["payload"]) == ("command", "list")
        assert (response["type"], response["payload"]) == ("response", "ran list")
        assert response["origin"] == echo["origin"]
        assert [(s["server_id"], s["kind"], s["state"]) for s in sessions] == [
            ("valheim-1", "console", "connected")
        ]

    def test_two_clients_share_one_upstream(self, client, backend):
        with client.websocket_connect(ws_url("valheim-1", "console")) as first:
            first.receive_json()
            first.receive_json()
            with client.websocket_connect(ws_url("valheim-1", "console")) as second:
                assert second.receive_json()["payload"] == "connected"
                second.send_json({"type": "command", "payload": "save"})
                assert first.receive_json()["payload"] == "save"
                assert first.receive_json()["payload"] == "ran save"

        assert backend.opens == [("valheim-1", ChannelKind.CONSOLE)]

    def test_malformed_frame_gets_local_error(self, client):
        with client.websocket_connect(ws_url("valheim-1", "console")) as ws:
            ws.receive_json()
            ws.receive_json()
            ws.send_text("{not json")
            frame = ws.receive_json()
        assert (frame["type"], frame["payload"]) == ("error", "invalid message format")

    def test_history_recall_over_the_socket(self, client):
        with client.websocket_connect(ws_url("valheim-1", "console")) as ws:
            ws.receive_json()
            ws.receive_json()
            ws.send_json({"type": "command", "payload": "list"})
            ws.receive_json()
            ws.receive_json()
            ws.send_json({"type": "history", "payload": "previous"})
            frame = ws.receive_json()
        assert (frame["type"], frame["payload"]) == ("history", "list")

    def test_operator_terminate_closes_clients(self, client, headers):
        with client.websocket_connect(ws_url("valheim-1", "console")) as ws:
            ws.receive_json()
            ws.receive_json()
            response = client.delete("/api/servers/valheim-1/channels/console", headers=headers)
            assert response.status_code == 200
            frames, code = read_until_closed(ws)

        assert code == 4003
        assert frames[-1]["type"] == "error"
        body = client.get("/api/servers/valheim-1/channels", headers=headers).json()
        assert body["channels"]["console"]["view"] == "error"
        assert body["channels"]["console"]["error"] == "session closed by operator"

    def test_missing_token_is_4401(self, client):
        with client.websocket_connect("/api/servers/valheim-1/console") as ws:
            _, code = read_until_closed(ws)
        assert code == 4401

    def test_unknown_server_is_4404(self, client):
        with client.websocket_connect(ws_url("nope", "console")) as ws:
            frames, code = read_until_closed(ws)
        assert code == 4404
        assert frames[0]["payload"] == "unknown server"

    def test_not_applicable_is_4001(self, client):
        with client.websocket_connect(ws_url("terraria-1", "console")) as ws:
            frames, code = read_until_closed(ws)
        assert code == 4001
        assert frames[0]["type"] == "error"

    def test_stopped_server_is_4002(self, client, backend):
        backend.running.clear()
        with client.websocket_connect(ws_url("valheim-1", "console")) as ws:
            _, code = read_until_closed(ws)
        assert code == 4002
        assert backend.opens == []


class TestLogSocket:
    def test_streams_raw_lines(self, client):
        with client.websocket_connect(ws_url("valheim-1", "logs")) as ws:
            assert ws.receive_text() == "Server started"

    def test_logs_do_not_need_a_running_server(self, client, backend):
        backend.running.clear()
        with client.websocket_connect(ws_url("terraria-1", "logs")) as ws:
            assert ws.receive_text() == "Server started"

    def test_not_installed_is_4002_with_plain_text(self, client, backend):
        with client.websocket_connect(ws_url("fresh-1", "logs")) as ws:
            received, code = read_until_closed(ws, decode=False)
        assert code == 4002
        assert received == ["Error: Server is not installed yet"]
        assert backend.opens == []
