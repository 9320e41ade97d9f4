"""
RealmOps Relay - Server Catalog
================================
Read-only view of the servers the panel manages, loaded from servers.yaml.
The panel owns these definitions; the relay only reads what it needs to
reach a server's console and resolve its RCON password.

File format:
    servers:
      valheim-1:
        name: Valheim (friends)
        container_id: 3f2a9c...
        ports:
          - {name: game, host_port: 24560}
          - {name: rcon, host_port: 24570}
        rcon:
          enabled: true
          port_name: rcon
          password_variable: RCON_PASSWORD
        vars:
          RCON_PASSWORD: hunter2

The file is re-read whenever its modification time changes.
"""

import logging
import os
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class RconSettings(BaseModel):
    """RCON endpoint and credential settings for one server."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int | None = None
    port_name: str | None = None
    password: str | None = None
    password_variable: str | None = None


class ServerPort(BaseModel):
    name: str
    host_port: int
    container_port: int | None = None
    protocol: str = "tcp"


class ServerEntry(BaseModel):
    """One managed server."""
    id: str
    name: str = ""
    container_id: str | None = None
    ports: list[ServerPort] = Field(default_factory=list)
    rcon: RconSettings = Field(default_factory=RconSettings)
    vars: dict[str, Any] = Field(default_factory=dict)

    def rcon_port(self) -> int | None:
        """Explicit RCON port, else the host port of the named mapping."""
        if self.rcon.port:
            return self.rcon.port
        for port in self.ports:
            if port.name == self.rcon.port_name:
                return port.host_port
        return None


class ServerCatalog:
    """
    YAML-backed server lookup and RCON credential resolver.

    Attributes:
        path: Full path to servers.yaml.
    """

    def __init__(self, path: str):
        self.path = path
        self._entries: dict[str, ServerEntry] = {}
        self._mtime: float | None = None

    # -- Lookups --------------------------------------------------------------

    def get(self, server_id: str) -> ServerEntry | None:
        self._refresh()
        return self._entries.get(server_id)

    def all(self) -> list[ServerEntry]:
        self._refresh()
        return list(self._entries.values())

    def console_enabled(self, server_id: str) -> bool:
        entry = self.get(server_id)
        return entry is not None and entry.rcon.enabled

    def rcon_endpoint(self, server_id: str) -> tuple[str, int] | None:
        """Return (host, port) for the server's RCON endpoint, if known."""
        entry = self.get(server_id)
        if entry is None or not entry.rcon.enabled:
            return None
        port = entry.rcon_port()
        if port is None:
            return None
        return entry.rcon.host, port

    async def resolve_auth_secret(self, server_id: str) -> str | None:
        """
        Resolve the RCON password: an explicit password wins, otherwise the
        server variable named by password_variable.
        """
        entry = self.get(server_id)
        if entry is None:
            return None
        if entry.rcon.password:
            return entry.rcon.password
        if entry.rcon.password_variable:
            value = entry.vars.get(entry.rcon.password_variable)
            if isinstance(value, str) and value:
                return value
        return None

    # -- Loading --------------------------------------------------------------

    def _refresh(self) -> None:
        try:
            mtime = os.path.getmtime(self.path)
        except OSError:
            if self._mtime is not None:
                logger.warning("[CATALOG] %s disappeared, catalog is now empty", self.path)
            self._entries, self._mtime = {}, None
            return

        if mtime == self._mtime:
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            if not isinstance(raw, dict):
                raise yaml.YAMLError("top level must be a mapping")
        except (yaml.YAMLError, OSError) as e:
            # Keep serving the last good catalog
            logger.warning("[CATALOG] failed to read %s: %s", self.path, e)
            return

        self._entries = _parse_servers(raw.get("servers") or {})
        self._mtime = mtime
        logger.info("[CATALOG] loaded %d servers from %s", len(self._entries), self.path)


def _parse_servers(servers: dict) -> dict[str, ServerEntry]:
    entries = {}
    for server_id, data in servers.items():
        try:
            entries[str(server_id)] = ServerEntry.model_validate({**(data or {}), "id": str(server_id)})
        except ValidationError as e:
            logger.warning("[CATALOG] skipping server %s: %s", server_id, e)
    return entries
