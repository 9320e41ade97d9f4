"""
RealmOps Relay - Server Package
================================
The web surface of the relay and the collaborators it runs against.

This package provides:
- FastAPI application factory and lifespan
- REST endpoints for session status and explicit termination
- WebSocket endpoints for the console and log channels
- Token verification for both

Architecture:
    main.py           -> FastAPI app creation, wiring, shutdown
    auth.py           -> JWT verification, route protection
    config.py         -> Read/write config.yaml, secrets from .env
    catalog.py        -> servers.yaml lookup and RCON credentials
    docker_backend.py -> Container state and raw upstream streams
    routes.py         -> REST API endpoint handlers
    websocket.py      -> Channel websocket endpoints
"""
