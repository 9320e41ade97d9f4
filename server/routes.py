"""
RealmOps Relay - REST API Routes
=================================
HTTP endpoints around the realtime channels.

Route groups:
    /api/health                           - Liveness (no auth)
    /api/sessions                         - Live sessions across all servers
    /api/servers/{id}/channels            - Presentation state per channel
    /api/servers/{id}/channels/{kind}     - Terminate a live session (DELETE)

All routes except /api/health require a valid JWT token.
See auth.py for authentication details.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from relay.availability import NOTICES, Availability, ChannelView, channel_view, check_availability
from relay.events import ChannelKind
from relay.providers import ProcessStateProvider
from relay.registry import SessionRegistry
from server.auth import AuthManager, require_auth
from server.catalog import ServerCatalog

logger = logging.getLogger(__name__)


# =============================================================================
# Response Models (Pydantic)
# =============================================================================

class HealthResponse(BaseModel):
    status: str = "ok"
    sessions: int = Field(description="Number of live sessions")
    auth_required: bool


class SessionInfo(BaseModel):
    """Snapshot of one live session."""
    server_id: str
    kind: ChannelKind
    state: str
    clients: int
    buffered_events: int = Field(description="Events held in the replay buffer")
    upstream_opens: int = Field(description="Physical connections opened so far")
    idle_closing: bool = Field(description="No clients attached, idle timer running")
    created_at: str


class ChannelStatus(BaseModel):
    """What the UI should show for one channel of a server."""
    view: ChannelView
    notice: str | None = Field(None, description="Why the channel cannot be served")
    error: str | None = Field(None, description="Why the last session terminated")
    session: SessionInfo | None = None


class ServerChannelsResponse(BaseModel):
    server_id: str
    channels: dict[ChannelKind, ChannelStatus]


class TerminateResponse(BaseModel):
    message: str


# =============================================================================
# Router Factory
# =============================================================================

def create_router(
    auth_manager: AuthManager,
    registry: SessionRegistry,
    catalog: ServerCatalog,
    process_state: ProcessStateProvider,
) -> APIRouter:
    """
    Create and configure the API router with all endpoints.

    Args:
        auth_manager:  Verifies bearer tokens.
        registry:      Live sessions.
        catalog:       Server definitions.
        process_state: Installed/running checks for the availability gate.

    Returns:
        Configured APIRouter with all endpoints registered.
    """
    router = APIRouter(prefix="/api")

    # Shorthand for the auth dependency
    auth = Depends(require_auth(auth_manager))

    def _require_server(server_id: str) -> None:
        if catalog.get(server_id) is None:
            raise HTTPException(status_code=404, detail=f"Server '{server_id}' not found")

    async def _channel_status(server_id: str, kind: ChannelKind) -> ChannelStatus:
        availability = await check_availability(
            server_id, kind, process_state, catalog.console_enabled(server_id)
        )
        session = registry.get(server_id, kind)
        failure = registry.last_failure(server_id, kind)
        view = channel_view(
            availability,
            session.state if session is not None else None,
            failed=failure is not None,
        )
        return ChannelStatus(
            view=view,
            notice=NOTICES.get(availability) if availability is not Availability.AVAILABLE else None,
            error=failure if view is ChannelView.ERROR else None,
            session=SessionInfo(**session.describe()) if session is not None else None,
        )

    # =========================================================================
    # HEALTH - No authentication required
    # =========================================================================

    @router.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(sessions=len(registry), auth_required=auth_manager.is_configured())

    # =========================================================================
    # SESSION ROUTES - Requires authentication
    # =========================================================================

    @router.get("/sessions", response_model=list[SessionInfo], dependencies=[auth])
    async def list_sessions():
        """All live sessions, one per (server, channel kind)."""
        return [SessionInfo(**info) for info in registry.snapshot()]

    @router.get(
        "/servers/{server_id}/channels",
        response_model=ServerChannelsResponse,
        dependencies=[auth],
    )
    async def get_channels(server_id: str):
        """
        Presentation state for both channels of a server. Keeps "not
        applicable", "not ready" and the live connection states apart.
        """
        _require_server(server_id)
        channels = {kind: await _channel_status(server_id, kind) for kind in ChannelKind}
        return ServerChannelsResponse(server_id=server_id, channels=channels)

    @router.delete(
        "/servers/{server_id}/channels/{kind}",
        response_model=TerminateResponse,
        dependencies=[auth],
    )
    async def terminate_channel(server_id: str, kind: ChannelKind):
        """
        Close a live session. Attached clients receive a terminal error and
        are disconnected; the next attach starts a fresh session.
        """
        _require_server(server_id)
        if not await registry.terminate(server_id, kind, "session closed by operator"):
            raise HTTPException(status_code=404, detail="No live session for this channel")
        logger.info("[API] terminated %s/%s", server_id, kind.value)
        return TerminateResponse(message=f"{kind.value} session for {server_id} terminated")

    return router
