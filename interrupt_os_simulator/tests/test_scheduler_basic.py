"""
Tests for the round robin selection and the run/pause transitions.
"""

import pytest

from ..backend.core import IOOperation, ProcessState, ProcessTable, SyscallRequest
from ..backend.schedulers import RoundRobinScheduler
from ..backend.simulator import SimulatedWorker
from ..backend.utils import EventLogger


@pytest.fixture
def workers():
    return [SimulatedWorker(i) for i in range(3)]


@pytest.fixture
def scheduler(workers):
    table = ProcessTable(workers)
    return RoundRobinScheduler(table, trace=EventLogger(clock=lambda: 0))


class TestSelection:
    """Test which worker the scheduler picks."""

    def test_first_schedule_starts_at_zero(self, scheduler):
        assert scheduler.schedule() == 0
        assert scheduler.current_running == 0
        assert scheduler.table[0].state == ProcessState.RUNNING

    def test_cycles_in_index_order(self, scheduler):
        order = [scheduler.schedule() for _ in range(7)]
        assert order == [0, 1, 2, 0, 1, 2, 0]

    def test_every_ready_worker_once_per_cycle(self):
        workers = [SimulatedWorker(i) for i in range(5)]
        scheduler = RoundRobinScheduler(ProcessTable(workers), trace=EventLogger(clock=lambda: 0))
        scheduler.schedule()
        scheduler.schedule()  # start from worker 1
        cycle = [scheduler.schedule() for _ in range(5)]
        assert sorted(cycle) == [0, 1, 2, 3, 4]
        assert cycle == [2, 3, 4, 0, 1]

    def test_skips_blocked_workers(self, scheduler):
        scheduler.table[1].state = ProcessState.BLOCKED
        order = [scheduler.schedule() for _ in range(4)]
        assert order == [0, 2, 0, 2]

    def test_only_running_worker_keeps_cpu_without_signals(self, scheduler, workers):
        scheduler.table[1].state = ProcessState.BLOCKED
        scheduler.table[2].state = ProcessState.BLOCKED
        assert scheduler.schedule() == 0
        calls_before = list(workers[0].calls)
        assert scheduler.schedule() == 0
        assert workers[0].calls == calls_before
        assert scheduler.table[0].state == ProcessState.RUNNING

    def test_never_two_running(self, scheduler):
        for _ in range(6):
            scheduler.schedule()
            running = scheduler.table.in_state(ProcessState.RUNNING)
            assert len(running) == 1
            assert running[0].worker_id == scheduler.current_running


class TestTransitions:
    """Test preemption, idling and context restoration."""

    def test_preempted_worker_is_paused_and_ready(self, scheduler, workers):
        scheduler.schedule()
        scheduler.schedule()
        assert workers[0].calls[-1] == ("pause",)
        assert scheduler.table[0].state == ProcessState.READY
        assert workers[1].calls[-1] == ("resume",)
        assert scheduler.stats.preemptions == 1

    def test_idle_is_a_noop_twice(self, scheduler, workers):
        for pcb in scheduler.table:
            pcb.state = ProcessState.BLOCKED
        before = [list(w.calls) for w in workers]
        assert scheduler.schedule() is None
        assert scheduler.schedule() is None
        assert [list(w.calls) for w in workers] == before
        assert scheduler.current_running is None
        assert all(p.state == ProcessState.BLOCKED for p in scheduler.table)
        assert scheduler.stats.idle_calls == 2

    def test_resumes_from_last_dispatched_after_idle(self, scheduler):
        scheduler.schedule()
        scheduler.schedule()  # worker 1 running
        scheduler.vacate(1, "blocked on I/O")
        for pcb in scheduler.table:
            pcb.state = ProcessState.BLOCKED
        assert scheduler.schedule() is None
        scheduler.table[0].state = ProcessState.READY
        scheduler.table[2].state = ProcessState.READY
        assert scheduler.schedule() == 2

    def test_context_sent_before_resume_and_consumed(self, scheduler, workers):
        pcb = scheduler.table[0]
        pcb.save_context(SyscallRequest(5, IOOperation.READ))
        scheduler.schedule()
        assert workers[0].calls[-2:] == [("context", 5), ("resume",)]
        assert not pcb.saved_pc_valid

    def test_context_delivered_exactly_once(self, scheduler, workers):
        scheduler.table[0].save_context(SyscallRequest(10, IOOperation.WRITE))
        for _ in range(6):
            scheduler.schedule()
        contexts = [c for c in workers[0].calls if c[0] == "context"]
        assert contexts == [("context", 10)]

    def test_dead_worker_never_selected(self, scheduler, workers):
        workers[1].alive = False
        order = [scheduler.schedule() for _ in range(4)]
        assert 1 not in order
        assert scheduler.table[1].state == ProcessState.TERMINATED

    def test_running_worker_that_died_is_replaced(self, scheduler, workers):
        scheduler.schedule()
        workers[0].alive = False
        assert scheduler.schedule() == 1
        assert scheduler.table[0].state == ProcessState.TERMINATED

    def test_timeline_slice_closed_on_preempt(self, scheduler):
        scheduler.schedule()
        scheduler.schedule()
        slices = scheduler.trace.timeline
        assert len(slices) == 1
        assert slices[0]["worker"] == 0
        assert slices[0]["reason"] == "time slice expired"
