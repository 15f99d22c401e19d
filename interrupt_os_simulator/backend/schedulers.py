"""
Round Robin scheduler: selection over the process table and the
run/pause transitions, including context restoration.
"""

from typing import List, Optional

from .core import PCB, KernelStats, ProcessState, ProcessTable
from .utils import EventLogger


class RoundRobinScheduler:
    """Round Robin scheduler implementation.

    Selection scans circularly starting right after the last dispatched
    worker. The worker currently running is the last candidate of the scan,
    so it keeps the CPU only when nobody else is READY.
    """

    def __init__(self, table: ProcessTable, stats: Optional[KernelStats] = None, trace: Optional[EventLogger] = None):
        self.table = table
        self.stats = stats or KernelStats()
        self.trace = trace or EventLogger()
        self.current_running: Optional[int] = None
        self.last_dispatched: Optional[int] = None

    def select_next(self) -> Optional[int]:
        """Return the id of the next worker to run, or None if nobody can."""
        n = len(self.table)
        origin = self.last_dispatched if self.last_dispatched is not None else n - 1
        for step in range(1, n + 1):
            worker_id = (origin + step) % n
            if worker_id == self.current_running or self.table[worker_id].is_runnable():
                return worker_id
        return None

    def schedule(self) -> Optional[int]:
        """Pick a worker and make it the running one."""
        self.reap()
        next_id = self.select_next()
        if next_id is None:
            self.stats.idle_calls += 1
            self.trace.log_message("no READY worker, waiting...")
            return None
        if next_id == self.current_running:
            # sole candidate, it keeps the CPU
            return next_id
        if self.current_running is not None:
            self.preempt()
        if not self.dispatch(next_id):
            return self.schedule()
        return next_id

    def preempt(self) -> None:
        """Pause the running worker and put it back to READY."""
        pcb = self.table[self.current_running]
        pcb.handle.pause()
        self.vacate(pcb.worker_id, "time slice expired")
        pcb.state = ProcessState.READY
        pcb.stats.preemptions += 1
        self.stats.preemptions += 1
        self.trace.log_transition(pcb.worker_id, ProcessState.RUNNING.value, ProcessState.READY.value, "preempted")

    def dispatch(self, worker_id: int) -> bool:
        """Run a READY worker, restoring its saved pc first.

        Returns False when the worker turned out to be gone.
        """
        pcb = self.table[worker_id]
        restore_pc = pcb.take_context()
        if restore_pc is not None:
            # must land in the channel before the worker is continued
            pcb.handle.send_context(restore_pc)
            self.trace.log_message(f"restoring A{worker_id} at PC={restore_pc}")

        pcb.state = ProcessState.RUNNING
        self.current_running = worker_id
        self.last_dispatched = worker_id
        pcb.stats.dispatches += 1
        pcb.stats.last_dispatch_time = self.trace.now()
        self.stats.context_switches += 1
        self.trace.log_transition(worker_id, ProcessState.READY.value, ProcessState.RUNNING.value, "dispatched")

        if not pcb.handle.resume():
            self.trace.log_diagnostic(f"A{worker_id} vanished before it could be resumed")
            self._terminate(pcb, "resume failed")
            return False
        return True

    def vacate(self, worker_id: int, reason: str) -> None:
        """Release the CPU if ``worker_id`` holds it, closing its timeline slice."""
        if self.current_running != worker_id:
            return
        pcb = self.table[worker_id]
        start = pcb.stats.last_dispatch_time
        if start is not None:
            end = self.trace.now()
            pcb.stats.run_time += end - start
            self.trace.log_timeline_slice(start, end, worker_id, reason)
            pcb.stats.last_dispatch_time = None
        self.current_running = None

    def reap(self) -> List[PCB]:
        """Mark workers whose process is gone as TERMINATED."""
        reaped = []
        for pcb in self.table:
            if pcb.state == ProcessState.TERMINATED or pcb.handle.is_alive():
                continue
            self._terminate(pcb, "worker exited")
            reaped.append(pcb)
        return reaped

    def _terminate(self, pcb: PCB, reason: str) -> None:
        self.vacate(pcb.worker_id, reason)
        previous = pcb.state
        pcb.state = ProcessState.TERMINATED
        pcb.io_pending = False
        pcb.saved_pc_valid = False
        self.trace.log_transition(pcb.worker_id, previous.value, ProcessState.TERMINATED.value, reason)
