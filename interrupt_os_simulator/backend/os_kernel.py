from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import time

from .core import (
    BlockedQueue,
    ConfigurationError,
    IOOperation,
    KernelStats,
    ProcessState,
    ProcessTable,
    SyscallRequest,
)
from .handles import InterruptSourceHandle, WorkerHandle
from .interrupts import Interrupt, InterruptQueue, InterruptType
from .schedulers import RoundRobinScheduler
from .utils import EventLogger


MIN_WORKERS = 3
MAX_WORKERS = 6


def default_io_points() -> Dict[int, IOOperation]:
    return {
        5: IOOperation.READ,
        10: IOOperation.WRITE,
        15: IOOperation.READ,
        20: IOOperation.WRITE,
    }


@dataclass
class WorkerProgram:
    """The linear program every worker executes."""
    max_iterations: int = 30
    io_points: Dict[int, IOOperation] = field(default_factory=default_io_points)
    instruction_time: float = 1.0


@dataclass
class KernelConfig:
    num_workers: int = 3
    time_slice: float = 1.0
    io_latency: float = 3.0
    startup_delay: float = 1.0
    exit_when_all_terminated: bool = True
    max_run_time: Optional[float] = None
    program: WorkerProgram = field(default_factory=WorkerProgram)

    def validate(self) -> "KernelConfig":
        """Raise ConfigurationError unless the configuration can be run."""
        n = self.num_workers
        if isinstance(n, bool) or not isinstance(n, int) or not MIN_WORKERS <= n <= MAX_WORKERS:
            raise ConfigurationError(f"num_workers must be between {MIN_WORKERS} and {MAX_WORKERS}, got {n!r}")
        if self.time_slice <= 0:
            raise ConfigurationError("time_slice must be positive")
        if self.io_latency <= 0:
            raise ConfigurationError("io_latency must be positive")
        if self.startup_delay < 0:
            raise ConfigurationError("startup_delay cannot be negative")
        if self.max_run_time is not None and self.max_run_time <= 0:
            raise ConfigurationError("max_run_time must be positive")
        program = self.program
        if program.max_iterations <= 0:
            raise ConfigurationError("program must have at least one instruction")
        if program.instruction_time <= 0:
            raise ConfigurationError("instruction_time must be positive")
        bad = [pc for pc in program.io_points if not 0 <= pc < program.max_iterations]
        if bad:
            raise ConfigurationError(f"I/O points outside the program: {sorted(bad)}")
        return self


class OSKernel:
    """The supervising kernel: process table, blocked queue and interrupt handlers.

    Interrupts are pushed onto ``self.interrupts`` by whatever relays them
    (signal handlers, the simulation loop, tests) and are handled one at a
    time by ``dispatch``. Every handler ends by invoking the scheduler.
    """

    def __init__(
        self,
        workers: Sequence[WorkerHandle],
        interrupt_source: InterruptSourceHandle,
        config: Optional[KernelConfig] = None,
        trace: Optional[EventLogger] = None,
        interrupts: Optional[InterruptQueue] = None,
    ):
        self.config = (config or KernelConfig(num_workers=len(workers))).validate()
        if len(workers) != self.config.num_workers:
            raise ConfigurationError(f"expected {self.config.num_workers} workers, got {len(workers)}")
        self.trace = trace or EventLogger()
        self.stats = KernelStats()
        self.table = ProcessTable(workers)
        self.blocked_queue = BlockedQueue(capacity=len(workers))
        self.scheduler = RoundRobinScheduler(self.table, self.stats, self.trace)
        self.interrupt_source = interrupt_source
        self.interrupts = interrupts if interrupts is not None else InterruptQueue()
        self.io_in_progress = False
        self.serviced_worker: Optional[int] = None
        self.running = False
        self._handlers: Dict[InterruptType, Callable[[Interrupt], None]] = {
            InterruptType.TIMER: lambda irq: self.handle_timer(),
            InterruptType.SYSCALL: lambda irq: self.handle_syscall(irq.worker_id),
            InterruptType.IO_COMPLETE: lambda irq: self.handle_io_complete(),
            InterruptType.WORKER_EXIT: lambda irq: self.handle_worker_exit(),
            InterruptType.SHUTDOWN: lambda irq: self.handle_shutdown(),
        }

    @property
    def current_running(self) -> Optional[int]:
        return self.scheduler.current_running

    def start(self) -> None:
        """Arm the dispatch loop and hand the CPU to the first worker."""
        self.running = True
        self.trace.log_message(f"starting scheduling of {len(self.table)} workers")
        self.scheduler.schedule()
        if self.config.exit_when_all_terminated and self.table.all_terminated():
            self.trace.log_message("no live worker to schedule")
            self.running = False

    def run(self, poll_interval: float = 0.5) -> None:
        """Block on the interrupt queue and handle interrupts until shut down.

        A quiet interval is treated like a child-exit notification, since
        SIGCHLD may coalesce or arrive before the relay is armed.
        """
        self.start()
        deadline = None
        if self.config.max_run_time is not None:
            deadline = time.monotonic() + self.config.max_run_time
        while self.running:
            if deadline is not None and time.monotonic() >= deadline:
                self.trace.log_message("run time limit reached")
                break
            interrupt = self.interrupts.wait(timeout=poll_interval)
            self.dispatch(interrupt or Interrupt(InterruptType.WORKER_EXIT))

    def run_pending(self) -> int:
        """Handle every interrupt already queued, without blocking."""
        handled = 0
        for interrupt in self.interrupts.drain():
            if not self.running:
                break
            self.dispatch(interrupt)
            handled += 1
        return handled

    def dispatch(self, interrupt: Interrupt) -> None:
        handler = self._handlers[interrupt.kind]
        try:
            handler(interrupt)
        except Exception as e:
            self._diagnose(f"{interrupt.kind.value} handler failed: {e}")

    # -- interrupt handlers -------------------------------------------------

    def handle_timer(self) -> None:
        """IRQ0: end of the time slice."""
        self.stats.timer_interrupts += 1
        self.trace.log_interrupt(InterruptType.TIMER.value)
        self.scheduler.schedule()

    def handle_syscall(self, worker_id: Optional[int] = None) -> None:
        """IRQ2: a worker submitted an I/O request on its channel.

        One notification may stand for several payloads, so every channel
        holding a request is drained, the notifying worker first.
        """
        self.stats.syscalls += 1
        self.trace.log_interrupt(InterruptType.SYSCALL.value, worker_id)
        submitted, failures = self._collect_requests(worker_id)
        if not submitted and not failures:
            self.stats.read_failures += 1
            self._diagnose("I/O syscall notification without a request payload")
        for source, request in submitted:
            self._block_for_io(source, request)
        self._start_next_io()
        self.scheduler.schedule()

    def handle_io_complete(self) -> None:
        """IRQ1: the device finished the request in service."""
        self.stats.io_completions += 1
        self.trace.log_interrupt(InterruptType.IO_COMPLETE.value, self.serviced_worker)
        self.io_in_progress = False
        worker_id, self.serviced_worker = self.serviced_worker, None
        if worker_id is None:
            self._diagnose("I/O completion with no request in service")
        else:
            pcb = self.table[worker_id]
            pcb.io_pending = False
            pcb.stats.io_completions += 1
            self.trace.log_io_event(worker_id, "complete")
            if pcb.state == ProcessState.BLOCKED:
                pcb.state = ProcessState.READY
                self.trace.log_transition(worker_id, ProcessState.BLOCKED.value, ProcessState.READY.value, "I/O complete")
        self._start_next_io()
        self.scheduler.schedule()

    def handle_worker_exit(self) -> None:
        """A child changed state. Only an actual exit reaches the scheduler."""
        reaped = self.scheduler.reap()
        if not reaped:
            return
        self.trace.log_interrupt(InterruptType.WORKER_EXIT.value, reaped[0].worker_id)
        if self.config.exit_when_all_terminated and self.table.all_terminated():
            self.trace.log_message("all workers terminated")
            self.running = False
            return
        self.scheduler.schedule()

    def handle_shutdown(self) -> None:
        self.trace.log_message("shutdown requested")
        self._release_cpu("shutdown")
        self.running = False

    def halt(self) -> None:
        """Tear down every worker and the interrupt source."""
        self._release_cpu("halted")
        for pcb in self.table:
            pcb.handle.terminate()
        self.interrupt_source.terminate()
        self.running = False

    # -- helpers ------------------------------------------------------------

    def _collect_requests(self, worker_id: Optional[int]) -> Tuple[List[Tuple[int, SyscallRequest]], int]:
        """Read every pending request. Returns the requests and the number of unreadable channels."""
        origin = worker_id if worker_id is not None else self.current_running
        order = list(range(len(self.table)))
        if origin is not None:
            order = [origin] + [i for i in order if i != origin]
        found = []
        failures = 0
        for source in order:
            try:
                request = self.table[source].handle.receive_request()
            except (ValueError, OSError) as e:
                failures += 1
                self.stats.read_failures += 1
                self._diagnose(f"could not read the request channel of A{source}: {e}")
                continue
            if request is not None:
                found.append((source, request))
        return found, failures

    def _release_cpu(self, reason: str) -> None:
        if self.current_running is not None:
            self.scheduler.vacate(self.current_running, reason)

    def _block_for_io(self, worker_id: int, request: SyscallRequest) -> None:
        pcb = self.table[worker_id]
        op = request.operation.name
        if pcb.io_pending or pcb.state in (ProcessState.BLOCKED, ProcessState.TERMINATED):
            self.stats.rejected_requests += 1
            self._diagnose(f"A{worker_id} is {pcb.state.value} with an outstanding request; {op} at PC={request.pc} rejected")
            return

        pcb.save_context(request)
        pcb.stats.io_requests += 1
        self.trace.log_io_event(worker_id, "request", op, request.pc)

        pcb.handle.pause()
        self.scheduler.vacate(worker_id, "blocked on I/O")
        previous = pcb.state
        pcb.state = ProcessState.BLOCKED
        pcb.io_pending = True
        self.trace.log_transition(worker_id, previous.value, ProcessState.BLOCKED.value, f"{op} syscall")
        self.blocked_queue.enqueue(worker_id)

    def _start_next_io(self) -> None:
        """Hand the head of the blocked queue to the device if it is idle."""
        while not self.io_in_progress:
            worker_id = self.blocked_queue.dequeue()
            if worker_id is None:
                return
            pcb = self.table[worker_id]
            if pcb.state == ProcessState.TERMINATED:
                self._diagnose(f"skipping I/O for terminated A{worker_id}")
                continue
            self.serviced_worker = worker_id
            self.io_in_progress = True
            pcb.io_pending = True
            self.stats.io_started += 1
            op = pcb.saved_operation.name if pcb.saved_operation else None
            self.trace.log_io_event(worker_id, "start", op, pcb.saved_pc)
            self.interrupt_source.start_io()

    def _diagnose(self, message: str) -> None:
        self.stats.diagnostics += 1
        self.trace.log_diagnostic(message)
