"""
RealmOps Relay - WebSocket Endpoints
=====================================
Browser-facing channel endpoints. Each connection gets its own
ChannelAdapter attached to the shared session for its server and channel.

Endpoints:
    /api/servers/{server_id}/console      - RCON console (JSON frames)
    /api/servers/{server_id}/logs/stream  - container log lines (raw text)

Before attaching, every connection is gated. A connection that cannot be
served gets one final frame explaining why and an application close code:

    4401 unauthorized     (missing or invalid ?token=)
    4404 unknown server
    4001 not applicable   (RCON not enabled for this server)
    4002 not ready        (not installed / not running)

Sessions that terminate later close their clients with 4003.

Usage:
    router = create_ws_router(auth_manager, registry, catalog, backend)
    app.include_router(router)
"""

import logging

from fastapi import APIRouter, WebSocket

from relay.adapter import ChannelAdapter
from relay.availability import CLOSE_CODES, NOTICES, Availability, check_availability
from relay.events import (
    CLOSE_UNAUTHORIZED,
    CLOSE_UNKNOWN_SERVER,
    ChannelEvent,
    ChannelKind,
    close_reason,
)
from relay.providers import ProcessStateProvider
from relay.registry import SessionRegistry
from server.auth import AuthManager
from server.catalog import ServerCatalog

logger = logging.getLogger(__name__)


async def _reject(websocket: WebSocket, kind: ChannelKind, code: int, text: str) -> None:
    """Send a final error frame, then close with ``code``."""
    frame = ChannelEvent.error(text).encode(kind)
    if frame is not None:
        await websocket.send_text(frame)
    await websocket.close(code=code, reason=close_reason(text))


def create_ws_router(
    auth_manager: AuthManager,
    registry: SessionRegistry,
    catalog: ServerCatalog,
    process_state: ProcessStateProvider,
) -> APIRouter:
    """
    Create the router holding both channel endpoints.

    Args:
        auth_manager:  Verifies the ?token= query parameter.
        registry:      Session registry shared by every connection.
        catalog:       Server lookup (existence, RCON enabled).
        process_state: Answers installed/running for the availability gate.
    """
    router = APIRouter(prefix="/api")

    async def serve_channel(websocket: WebSocket, server_id: str, kind: ChannelKind) -> None:
        await websocket.accept()

        if not auth_manager.verify_token(websocket.query_params.get("token")):
            logger.info("[WS] rejected unauthenticated %s client for %s", kind.value, server_id)
            await websocket.close(code=CLOSE_UNAUTHORIZED, reason="unauthorized")
            return

        if catalog.get(server_id) is None:
            await _reject(websocket, kind, CLOSE_UNKNOWN_SERVER, "unknown server")
            return

        availability = await check_availability(
            server_id, kind, process_state, catalog.console_enabled(server_id)
        )
        if availability is not Availability.AVAILABLE:
            logger.info("[WS] %s/%s unavailable: %s", server_id, kind.value, availability.value)
            await _reject(websocket, kind, CLOSE_CODES[availability], NOTICES[availability])
            return

        settings = registry.settings
        adapter = ChannelAdapter(
            websocket,
            kind,
            backlog=settings.adapter_backlog,
            history_limit=settings.command_history,
        )
        logger.info("[WS] client %s joined %s/%s", adapter.id, server_id, kind.value)
        await adapter.serve(registry, server_id)
        logger.info("[WS] client %s left %s/%s", adapter.id, server_id, kind.value)

    @router.websocket("/servers/{server_id}/console")
    async def console_endpoint(websocket: WebSocket, server_id: str):
        """Interactive RCON console."""
        await serve_channel(websocket, server_id, ChannelKind.CONSOLE)

    @router.websocket("/servers/{server_id}/logs/stream")
    async def logs_endpoint(websocket: WebSocket, server_id: str):
        """Live container log stream. Client input is ignored."""
        await serve_channel(websocket, server_id, ChannelKind.LOGS)

    return router
