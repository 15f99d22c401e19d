"""
Interrupt records and the single-consumer queue they travel through.

Signal handlers (or the simulation loop) only push onto the queue; the
kernel's dispatch loop is the only consumer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
import queue


class InterruptType(Enum):
    TIMER = "IRQ0"
    IO_COMPLETE = "IRQ1"
    SYSCALL = "IRQ2"
    WORKER_EXIT = "CHLD"
    SHUTDOWN = "HALT"


@dataclass(frozen=True)
class Interrupt:
    kind: InterruptType
    worker_id: Optional[int] = None


class InterruptQueue:
    """Ordered queue of pending interrupts.

    Backed by ``queue.SimpleQueue`` because its ``put`` is reentrant and may
    be called from a signal handler while the consumer is blocked in ``get``.
    """

    def __init__(self):
        self._queue: "queue.SimpleQueue[Interrupt]" = queue.SimpleQueue()

    def push(self, interrupt: Interrupt) -> None:
        self._queue.put(interrupt)

    def wait(self, timeout: Optional[float] = None) -> Optional[Interrupt]:
        """Block until an interrupt arrives. Returns None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Interrupt]:
        pending = []
        while True:
            try:
                pending.append(self._queue.get_nowait())
            except queue.Empty:
                return pending
