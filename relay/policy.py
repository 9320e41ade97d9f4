"""
RealmOps Relay - Reconnection Policy
======================================
Stateless policies consulted by a session whenever its upstream connection
fails or closes. A policy never sleeps and never touches the connector; it
only answers "retry, and after how long?" for the situation it is shown.

Console: fixed short delay, bounded attempts, and only while someone is still
watching and the server process is still reported running.

Logs: fixed interval, unbounded, as long as the server has a container. Log
availability is tied to the container existing, not to the game being ready.

Neither policy ever retries after an authentication rejection.
"""

from dataclasses import dataclass

from relay.errors import AuthRejected, NotRunning
from relay.events import ChannelKind


@dataclass(frozen=True)
class RetryContext:
    """
    Everything a policy may look at when deciding.

    Attributes:
        attempt:          1-based number of the retry about to be made.
        failure:          The exception that ended the previous attempt, if any.
        attached_clients: Number of clients still attached to the session.
        process_running:  Process-state provider's answer to is_running.
        process_started:  Process-state provider's answer to has_started.
    """

    attempt: int
    failure: BaseException | None
    attached_clients: int
    process_running: bool
    process_started: bool


@dataclass(frozen=True)
class RetryDecision:
    delay: float | None
    reason: str = ""

    @property
    def retry(self) -> bool:
        return self.delay is not None


class ReconnectionPolicy:
    """Base policy: never retries."""

    def decide(self, ctx: RetryContext) -> RetryDecision:
        return RetryDecision(None, "reconnection disabled")

    @staticmethod
    def _terminal(ctx: RetryContext) -> RetryDecision | None:
        if isinstance(ctx.failure, AuthRejected):
            return RetryDecision(None, str(ctx.failure) or "authentication rejected")
        if isinstance(ctx.failure, NotRunning):
            return RetryDecision(None, str(ctx.failure))
        return None


class ConsoleReconnectPolicy(ReconnectionPolicy):
    """Fixed delay, at most ``max_attempts`` consecutive retries."""

    def __init__(self, delay: float = 1.0, max_attempts: int = 5):
        self.delay = delay
        self.max_attempts = max_attempts

    def decide(self, ctx: RetryContext) -> RetryDecision:
        terminal = self._terminal(ctx)
        if terminal is not None:
            return terminal
        if ctx.attached_clients == 0:
            return RetryDecision(None, "no clients attached")
        if not ctx.process_running:
            return RetryDecision(None, "server is not running")
        if ctx.attempt > self.max_attempts:
            return RetryDecision(
                None, f"reconnection failed after {self.max_attempts} attempts"
            )
        return RetryDecision(self.delay)


class LogReconnectPolicy(ReconnectionPolicy):
    """Fixed interval, unbounded while the server has a container."""

    def __init__(self, interval: float = 2.0):
        self.interval = interval

    def decide(self, ctx: RetryContext) -> RetryDecision:
        terminal = self._terminal(ctx)
        if terminal is not None:
            return terminal
        if not ctx.process_started:
            return RetryDecision(None, "server not installed")
        return RetryDecision(self.interval)


def policy_for(kind: ChannelKind, settings) -> ReconnectionPolicy:
    """
    Build the policy for a channel kind.

    Args:
        kind:     Channel kind the session serves.
        settings: RelaySettings carrying the retry tunables.
    """
    if kind is ChannelKind.CONSOLE:
        return ConsoleReconnectPolicy(
            delay=settings.console_retry_delay,
            max_attempts=settings.console_max_retries,
        )
    return LogReconnectPolicy(interval=settings.log_retry_interval)
