"""
NetworkAgent interface: the contract the lifecycle controller drives.

The controller never looks inside an agent. It starts it, stops it, and waits
for it to exit. Anything an agent needs (config, device name, environment)
is bound at construction time by an agent factory.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from meshclientd.config import ClientConfig
from meshclientd.state import ConnectionStatus

ConnectionListener = Callable[[ConnectionStatus], None]
AgentFactory = Callable[[ClientConfig], "NetworkAgent"]


class AgentStartError(Exception):
    """Raised by NetworkAgent.start() when the agent could not be launched."""


@dataclass
class AgentExit:
    """How an agent ended. `error` is None for an exit the controller asked for."""
    exit_code: Optional[int] = None
    error: Optional[str] = None
    stdout_tail: List[str] = field(default_factory=list)
    stderr_tail: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.error is not None


class NetworkAgent(ABC):
    """Abstract base class for the networking engine a handle owns.

    Implementations must make stop() idempotent and safe to call before
    start(), and must make wait() return once the agent has exited for any
    reason, including a failed start.
    """

    _listener: Optional[ConnectionListener] = None

    def set_connection_listener(self, listener: Optional[ConnectionListener]) -> None:
        """Register a callback for connection status changes (optional)."""
        self._listener = listener

    def _notify(self, status: ConnectionStatus) -> None:
        listener = self._listener
        if listener is not None:
            listener(status)

    @property
    def pid(self) -> Optional[int]:
        """OS process id when the agent runs out of process, else None."""
        return None

    @abstractmethod
    def start(self) -> None:
        """Launch the agent without blocking for its lifetime.

        Raises:
            AgentStartError: the agent could not be launched.
        """
        ...

    @abstractmethod
    def stop(self) -> None:
        """Request termination and release the agent's resources."""
        ...

    @abstractmethod
    def wait(self, timeout: Optional[float] = None) -> Optional[AgentExit]:
        """Block until the agent has exited.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely.

        Returns:
            AgentExit once the agent is gone, or None if the timeout elapsed.
        """
        ...
