"""
RealmOps Relay - Relay Settings
================================
Tunables for the channel layer, built from the ``relay`` section of
config.yaml (see server/config.py for defaults).
"""

from dataclasses import dataclass, fields

from relay.events import ChannelKind


@dataclass(frozen=True)
class RelaySettings:
    """
    Attributes:
        console_history:      Ring buffer size for console sessions.
        log_history:          Ring buffer size for log sessions.
        idle_timeout:         Seconds a connected session with no clients
                              keeps its upstream open before closing.
        console_retry_delay:  Fixed delay between console reconnect attempts.
        console_max_retries:  Consecutive console reconnect attempts allowed.
        log_retry_interval:   Fixed delay between log stream reconnects.
        adapter_backlog:      Per-client outbound queue bound.
        command_history:      Per-client command recall size.
        connect_timeout:      Seconds allowed for connect + handshake.
        log_tail:             Lines of existing log requested on first open.
    """

    console_history: int = 200
    log_history: int = 500
    idle_timeout: float = 30.0
    console_retry_delay: float = 1.0
    console_max_retries: int = 5
    log_retry_interval: float = 2.0
    adapter_backlog: int = 1000
    command_history: int = 50
    connect_timeout: float = 10.0
    log_tail: int = 100

    @classmethod
    def from_config(cls, section: dict | None) -> "RelaySettings":
        """Build settings from a config dict, ignoring unknown keys."""
        section = section or {}
        known = {f.name: f.type for f in fields(cls)}
        values = {}
        for name, value in section.items():
            if name in known and value is not None:
                caster = int if known[name] in (int, "int") else float
                values[name] = caster(value)
        return cls(**values)

    def history_for(self, kind: ChannelKind) -> int:
        if kind is ChannelKind.CONSOLE:
            return self.console_history
        return self.log_history
