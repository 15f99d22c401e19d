from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple

from .core import KernelStats, ProcessState, ProcessStats, SyscallRequest
from .handles import InterruptSourceHandle, WorkerHandle
from .interrupts import Interrupt, InterruptType
from .os_kernel import KernelConfig, OSKernel, WorkerProgram
from .utils import EventLogger


class SimulatedWorker(WorkerHandle):
    """In-process worker executing one instruction per tick.

    Mirrors the real application: after submitting a request it waits for
    its context and continues right after the restored pc. Every call the
    kernel makes is recorded in ``calls``.
    """

    def __init__(self, worker_id: int, program: Optional[WorkerProgram] = None):
        self.worker_id = worker_id
        self.program = program or WorkerProgram()
        self.pc = 0
        self.paused = False
        self.alive = True
        self.awaiting_context = False
        self.inbox: Deque[int] = deque()
        self.outbox: Deque[SyscallRequest] = deque()
        self.calls: List[Tuple] = []
        self.executed: List[int] = []

    def pause(self) -> bool:
        if not self.alive:
            return False
        self.paused = True
        self.calls.append(("pause",))
        return True

    def resume(self) -> bool:
        if not self.alive:
            return False
        self.paused = False
        self.calls.append(("resume",))
        return True

    def send_context(self, pc: int) -> None:
        self.inbox.append(pc)
        self.calls.append(("context", pc))

    def receive_request(self) -> Optional[SyscallRequest]:
        return self.outbox.popleft() if self.outbox else None

    def submit(self, request: SyscallRequest) -> None:
        """Place a request on the channel as if the worker had issued it."""
        self.outbox.append(request)

    def is_alive(self) -> bool:
        return self.alive

    def terminate(self) -> None:
        self.alive = False
        self.calls.append(("terminate",))

    def step(self) -> Optional[str]:
        """Execute one instruction. Returns "syscall", "exit" or None."""
        if not self.alive or self.paused:
            return None
        if self.awaiting_context:
            if not self.inbox:
                return None
            self.pc = self.inbox.popleft() + 1
            self.awaiting_context = False
        if self.pc >= self.program.max_iterations:
            self.alive = False
            return "exit"
        self.executed.append(self.pc)
        operation = self.program.io_points.get(self.pc)
        if operation is not None:
            self.outbox.append(SyscallRequest(self.pc, operation))
            self.awaiting_context = True
            return "syscall"
        self.pc += 1
        return None


class SimulatedInterruptSource(InterruptSourceHandle):
    """Tick-based timer and single-request I/O device."""

    def __init__(self, time_slice: int = 1, io_latency: int = 3):
        self.time_slice = time_slice
        self.io_latency = io_latency
        self.now = 0
        self.next_tick = time_slice
        self.io_deadline: Optional[int] = None
        self.queued_starts = 0
        self.starts = 0
        self.completions = 0
        self.alive = True

    def start_io(self) -> None:
        self.starts += 1
        if self.io_deadline is None:
            self.io_deadline = self.now + self.io_latency
        else:
            self.queued_starts += 1

    def advance(self, now: int) -> List[Interrupt]:
        """Move the clock to ``now`` and return the interrupts that fire."""
        self.now = now
        fired = []
        if not self.alive:
            return fired
        # completion before the timer when both are due on the same tick
        if self.io_deadline is not None and now >= self.io_deadline:
            fired.append(Interrupt(InterruptType.IO_COMPLETE))
            self.completions += 1
            if self.queued_starts:
                self.queued_starts -= 1
                self.io_deadline = now + self.io_latency
            else:
                self.io_deadline = None
        if now >= self.next_tick:
            fired.append(Interrupt(InterruptType.TIMER))
            self.next_tick += self.time_slice
        return fired

    def terminate(self) -> None:
        self.alive = False


@dataclass
class SimulationResult:
    ticks: int
    trace: EventLogger
    stats: KernelStats
    final_states: Dict[int, ProcessState]
    worker_stats: Dict[int, ProcessStats]
    executed: Dict[int, List[int]]
    violations: List[str]
    all_terminated: bool


class Simulation:
    """The whole system stepped one tick at a time through the real kernel."""

    def __init__(self, config: Optional[KernelConfig] = None, echo: bool = False):
        self.config = (config or KernelConfig()).validate()
        self.tick = 0
        self.trace = EventLogger(echo=echo, clock=lambda: self.tick)
        program = self.config.program
        slice_ticks = max(1, round(self.config.time_slice / program.instruction_time))
        latency_ticks = max(1, round(self.config.io_latency / program.instruction_time))

        self.workers = [SimulatedWorker(i, program) for i in range(self.config.num_workers)]
        for worker in self.workers:
            worker.pause()
        self.source = SimulatedInterruptSource(slice_ticks, latency_ticks)
        self.kernel = OSKernel(self.workers, self.source, config=self.config, trace=self.trace)
        self.violations: List[str] = []
        self.kernel.start()

    @property
    def finished(self) -> bool:
        return not self.kernel.running

    def step(self) -> None:
        """Run the current worker for one instruction, then deliver interrupts."""
        running = self.kernel.current_running
        if running is not None:
            outcome = self.workers[running].step()
            if outcome == "syscall":
                self.kernel.interrupts.push(Interrupt(InterruptType.SYSCALL, running))
            elif outcome == "exit":
                self.kernel.interrupts.push(Interrupt(InterruptType.WORKER_EXIT, running))

        self.tick += 1
        for interrupt in self.source.advance(self.tick):
            self.kernel.interrupts.push(interrupt)
        self.kernel.run_pending()
        self.violations.extend(f"tick {self.tick}: {p}" for p in self.kernel.table.check_invariants())

    def run(self, ticks: int) -> SimulationResult:
        for _ in range(ticks):
            if self.finished:
                break
            self.step()
        return self.result()

    def result(self) -> SimulationResult:
        table = self.kernel.table
        return SimulationResult(
            ticks=self.tick,
            trace=self.trace,
            stats=self.kernel.stats,
            final_states=table.states(),
            worker_stats={p.worker_id: p.stats for p in table},
            executed={w.worker_id: list(w.executed) for w in self.workers},
            violations=list(self.violations),
            all_terminated=table.all_terminated(),
        )


def simulate(config: Optional[KernelConfig] = None, ticks: int = 1000, echo: bool = False) -> SimulationResult:
    return Simulation(config, echo=echo).run(ticks)
