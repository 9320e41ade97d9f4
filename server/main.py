"""
RealmOps Relay - FastAPI Application
=====================================
Creates and configures the FastAPI application that carries the realtime
console and log channels for the ops panel.

Responsibilities:
    - Load config.yaml and .env secrets
    - Build the collaborators (server catalog, Docker backend, auth)
    - Build the one SessionRegistry the process owns
    - Register the REST routes and the websocket endpoints
    - Close every session when the server shuts down

Tests pass their own collaborators in; production lets the factory build
them from configuration.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relay.connector import build_connector
from relay.events import ChannelKind
from relay.registry import SessionRegistry
from relay.settings import RelaySettings
from server.auth import AuthManager
from server.catalog import ServerCatalog
from server.config import JWT_SECRET_KEY, ConfigManager
from server.docker_backend import DockerBackend
from server.routes import create_router
from server.websocket import create_ws_router

logger = logging.getLogger(__name__)


def create_app(
    project_dir: str | None = None,
    catalog: ServerCatalog | None = None,
    backend=None,
    auth_manager: AuthManager | None = None,
) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Args:
        project_dir:  Root directory of the relay. If None, auto-detected
                      from this file's location.
        catalog:      Server catalog. Defaults to the configured servers.yaml.
        backend:      Process-state provider and transport factory. Defaults
                      to DockerBackend.
        auth_manager: Token verifier. Defaults to RELAY_JWT_SECRET.

    Returns:
        Configured FastAPI application ready to run with uvicorn.
    """
    # -- Resolve directories ---------------------------------------------------
    if project_dir is None:
        project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    # -- Configuration ---------------------------------------------------------
    config_manager = ConfigManager(project_dir)
    config = config_manager.load()
    if "_config_error" in config:
        logger.warning("[CONFIG] config.yaml unreadable, using defaults: %s", config["_config_error"])
    settings = RelaySettings.from_config(config["relay"])

    # -- Collaborators ---------------------------------------------------------
    if catalog is None:
        catalog = ServerCatalog(config_manager.resolve_path(config["catalog"]["path"]))
    if backend is None:
        backend = DockerBackend(
            catalog,
            base_url=config["docker"].get("base_url"),
            log_tail=settings.log_tail,
        )
    if auth_manager is None:
        auth_manager = AuthManager(config_manager.get_secret(JWT_SECRET_KEY))
        if not auth_manager.is_configured():
            logger.warning("[AUTH] %s is not set, channels are open to anyone", JWT_SECRET_KEY)

    def connector_factory(server_id: str, kind: ChannelKind):
        return build_connector(
            server_id,
            kind,
            transports=backend,
            process_state=backend,
            credentials=catalog,
            connect_timeout=settings.connect_timeout,
        )

    registry = SessionRegistry(connector_factory, backend, settings)

    # -- Lifespan --------------------------------------------------------------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("[RELAY] ready")
        yield
        logger.info("[RELAY] shutting down, closing %d sessions", len(registry))
        await registry.close_all()

    # -- Create FastAPI app ----------------------------------------------------
    app = FastAPI(
        title="RealmOps Relay",
        description="Realtime console and log channels for managed game servers",
        version="1.0.0",
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    # -- CORS middleware -------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Store managers on app state -------------------------------------------
    app.state.config_manager = config_manager
    app.state.auth_manager = auth_manager
    app.state.catalog = catalog
    app.state.backend = backend
    app.state.registry = registry

    # -- Register routes -------------------------------------------------------
    app.include_router(create_router(
        auth_manager=auth_manager,
        registry=registry,
        catalog=catalog,
        process_state=backend,
    ))
    app.include_router(create_ws_router(
        auth_manager=auth_manager,
        registry=registry,
        catalog=catalog,
        process_state=backend,
    ))

    return app
