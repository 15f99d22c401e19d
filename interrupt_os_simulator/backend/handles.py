"""
Capabilities the kernel holds over its external collaborators.

The kernel never touches processes, pipes or signals directly; it goes
through these interfaces so the same handlers drive real OS processes and
the in-process simulation.
"""

from abc import ABC, abstractmethod
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .core import SyscallRequest


class WorkerHandle(ABC):
    """Control over one worker: suspend, continue, feed context, read requests."""

    @abstractmethod
    def pause(self) -> bool:
        """Suspend execution. Returns False if the worker is gone."""

    @abstractmethod
    def resume(self) -> bool:
        """Continue execution. Returns False if the worker is gone."""

    @abstractmethod
    def send_context(self, pc: int) -> None:
        """Deliver the pc the worker should continue from."""

    @abstractmethod
    def receive_request(self) -> Optional["SyscallRequest"]:
        """Return the next submitted request without blocking, or None."""

    @abstractmethod
    def is_alive(self) -> bool:
        pass

    @abstractmethod
    def terminate(self) -> None:
        pass


class InterruptSourceHandle(ABC):
    """The timer / I/O device simulator as seen by the kernel."""

    @abstractmethod
    def start_io(self) -> None:
        """Ask the device to begin servicing one request."""

    @abstractmethod
    def terminate(self) -> None:
        pass
