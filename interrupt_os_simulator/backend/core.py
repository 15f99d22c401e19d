"""
Core data structures for the interrupt-driven kernel simulator.
Includes the PCB, the process table, the blocked queue and the wire records
exchanged with worker processes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence
import struct

from .handles import WorkerHandle


class SimulatorError(Exception):
    """Base class for simulator errors."""


class ConfigurationError(SimulatorError):
    """Invalid startup configuration. Fatal before scheduling begins."""


class BlockedQueueError(SimulatorError):
    """Rejected blocked-queue operation (overflow or duplicate request)."""


class ProcessState(Enum):
    """Process states in the system."""
    READY = "READY"
    RUNNING = "RUNNING"
    BLOCKED = "BLOCKED"
    TERMINATED = "TERMINATED"


class IOOperation(Enum):
    """Device operation requested by a worker."""
    READ = "R"
    WRITE = "W"


# pc as a 32-bit signed int followed by the operation byte
REQUEST_RECORD = struct.Struct("<ic")
CONTEXT_RECORD = struct.Struct("<i")


@dataclass(frozen=True)
class SyscallRequest:
    """I/O request submitted by a worker: where it stopped and what it asked for."""
    pc: int
    operation: IOOperation

    def pack(self) -> bytes:
        return REQUEST_RECORD.pack(self.pc, self.operation.value.encode("ascii"))

    @classmethod
    def unpack(cls, data: bytes) -> "SyscallRequest":
        if len(data) != REQUEST_RECORD.size:
            raise ValueError(f"request record must be {REQUEST_RECORD.size} bytes, got {len(data)}")
        pc, op = REQUEST_RECORD.unpack(data)
        return cls(pc=pc, operation=IOOperation(op.decode("ascii")))


def encode_context(pc: int) -> bytes:
    return CONTEXT_RECORD.pack(pc)


def decode_context(data: bytes) -> int:
    return CONTEXT_RECORD.unpack(data)[0]


@dataclass
class ProcessStats:
    """Statistics tracked for each worker."""
    dispatches: int = 0
    preemptions: int = 0
    io_requests: int = 0
    io_completions: int = 0
    run_time: float = 0.0
    last_dispatch_time: Optional[float] = None


@dataclass
class PCB:
    """Process Control Block - the kernel's bookkeeping for one worker."""
    worker_id: int
    handle: WorkerHandle
    state: ProcessState = ProcessState.READY
    io_pending: bool = False
    saved_pc: Optional[int] = None
    saved_pc_valid: bool = False
    saved_operation: Optional[IOOperation] = None
    stats: ProcessStats = field(default_factory=ProcessStats)

    @property
    def name(self) -> str:
        return f"A{self.worker_id}"

    def save_context(self, request: SyscallRequest) -> None:
        """Remember where the worker stopped so it can be restored on resume."""
        self.saved_pc = request.pc
        self.saved_operation = request.operation
        self.saved_pc_valid = True

    def take_context(self) -> Optional[int]:
        """Consume the saved pc. Returns None when there is nothing to restore."""
        if not self.saved_pc_valid:
            return None
        self.saved_pc_valid = False
        return self.saved_pc

    def is_runnable(self) -> bool:
        return self.state == ProcessState.READY


class ProcessTable:
    """Fixed-size table of PCBs indexed by worker id."""

    def __init__(self, handles: Sequence[WorkerHandle]):
        self._entries: List[PCB] = [PCB(worker_id=i, handle=h) for i, h in enumerate(handles)]

    def __getitem__(self, worker_id: int) -> PCB:
        return self._entries[worker_id]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PCB]:
        return iter(self._entries)

    def in_state(self, state: ProcessState) -> List[PCB]:
        return [p for p in self._entries if p.state == state]

    def running(self) -> Optional[PCB]:
        running = self.in_state(ProcessState.RUNNING)
        return running[0] if running else None

    def states(self) -> Dict[int, ProcessState]:
        return {p.worker_id: p.state for p in self._entries}

    def all_terminated(self) -> bool:
        return all(p.state == ProcessState.TERMINATED for p in self._entries)

    def check_invariants(self) -> List[str]:
        """Return a list of violated table invariants (empty when consistent)."""
        problems = []
        running = self.in_state(ProcessState.RUNNING)
        if len(running) > 1:
            problems.append(f"{len(running)} workers RUNNING: {[p.name for p in running]}")
        for pcb in self._entries:
            if pcb.io_pending and pcb.state != ProcessState.BLOCKED:
                problems.append(f"{pcb.name} has io_pending but is {pcb.state.value}")
        return problems


class BlockedQueue:
    """Bounded circular FIFO of worker ids waiting for device service."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._slots: List[Optional[int]] = [None] * capacity
        self._head = 0
        self._count = 0

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def enqueue(self, worker_id: int) -> None:
        """Append a worker at the tail. A worker can wait only once."""
        if worker_id in self:
            raise BlockedQueueError(f"worker {worker_id} already has an outstanding request")
        if self._count == self.capacity:
            raise BlockedQueueError("blocked queue is full")
        tail = (self._head + self._count) % self.capacity
        self._slots[tail] = worker_id
        self._count += 1

    def dequeue(self) -> Optional[int]:
        """Remove and return the head, or None when empty."""
        if self._count == 0:
            return None
        worker_id = self._slots[self._head]
        self._slots[self._head] = None
        self._head = (self._head + 1) % self.capacity
        self._count -= 1
        return worker_id

    def is_empty(self) -> bool:
        return self._count == 0

    def snapshot(self) -> List[int]:
        return [self._slots[(self._head + i) % self.capacity] for i in range(self._count)]

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self.snapshot()

    def __len__(self) -> int:
        return self._count


class KernelStats:
    """System-wide counters."""

    def __init__(self):
        self.timer_interrupts = 0
        self.syscalls = 0
        self.io_completions = 0
        self.io_started = 0
        self.context_switches = 0
        self.preemptions = 0
        self.idle_calls = 0
        self.read_failures = 0
        self.rejected_requests = 0
        self.diagnostics = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(vars(self))
