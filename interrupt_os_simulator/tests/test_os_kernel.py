"""
Tests for the kernel interrupt handlers and the dispatch loop.
"""

import pytest

from ..backend.core import ConfigurationError, IOOperation, ProcessState, SyscallRequest
from ..backend.interrupts import Interrupt, InterruptType
from ..backend.os_kernel import KernelConfig, OSKernel
from ..backend.simulator import SimulatedInterruptSource, SimulatedWorker
from ..backend.utils import EventLogger


TIMER = Interrupt(InterruptType.TIMER)
IO_COMPLETE = Interrupt(InterruptType.IO_COMPLETE)


def syscall(worker_id=None):
    return Interrupt(InterruptType.SYSCALL, worker_id)


@pytest.fixture
def workers():
    return [SimulatedWorker(i) for i in range(3)]


@pytest.fixture
def source():
    return SimulatedInterruptSource()


@pytest.fixture
def kernel(workers, source):
    k = OSKernel(workers, source, trace=EventLogger(clock=lambda: 0))
    k.start()
    return k


def state_of(kernel, worker_id):
    return kernel.table[worker_id].state


def test_start_runs_worker_zero(kernel, workers):
    assert kernel.current_running == 0
    assert workers[0].calls[-1] == ("resume",)
    assert all(state_of(kernel, i) == ProcessState.READY for i in (1, 2))


def test_timer_interrupts_cycle_workers(kernel):
    seen = []
    for _ in range(6):
        kernel.dispatch(TIMER)
        seen.append(kernel.current_running)
    assert seen == [1, 2, 0, 1, 2, 0]
    assert kernel.stats.timer_interrupts == 6


def test_worker_read_blocks_and_returns_ready(kernel, workers, source):
    kernel.dispatch(TIMER)  # worker 1 running
    workers[1].submit(SyscallRequest(5, IOOperation.READ))
    kernel.dispatch(syscall(1))

    pcb = kernel.table[1]
    assert pcb.state == ProcessState.BLOCKED
    assert pcb.io_pending
    assert pcb.saved_pc == 5 and pcb.saved_pc_valid
    assert pcb.saved_operation is IOOperation.READ
    assert ("pause",) in workers[1].calls
    # device was idle, so service started right away
    assert kernel.io_in_progress
    assert kernel.serviced_worker == 1
    assert kernel.blocked_queue.is_empty()
    assert source.starts == 1
    assert kernel.current_running == 2

    kernel.dispatch(IO_COMPLETE)
    assert pcb.state == ProcessState.READY
    assert not pcb.io_pending
    assert not kernel.io_in_progress
    assert kernel.serviced_worker is None


def test_context_round_trip(kernel, workers):
    kernel.dispatch(TIMER)
    workers[1].submit(SyscallRequest(5, IOOperation.READ))
    kernel.dispatch(syscall(1))
    kernel.dispatch(IO_COMPLETE)
    while kernel.current_running != 1:
        kernel.dispatch(TIMER)
    assert workers[1].calls[-2:] == [("context", 5), ("resume",)]
    assert not kernel.table[1].saved_pc_valid
    for _ in range(6):
        kernel.dispatch(TIMER)
    assert [c for c in workers[1].calls if c[0] == "context"] == [("context", 5)]


def test_back_to_back_requests_wait_in_fifo(kernel, workers, source):
    workers[0].submit(SyscallRequest(5, IOOperation.READ))
    kernel.dispatch(syscall(0))  # worker 0 in service, worker 1 runs
    workers[1].submit(SyscallRequest(10, IOOperation.WRITE))
    kernel.dispatch(syscall(1))  # worker 1 waits, worker 2 runs
    workers[2].submit(SyscallRequest(15, IOOperation.READ))
    kernel.dispatch(syscall(2))

    assert source.starts == 1
    assert kernel.serviced_worker == 0
    assert kernel.blocked_queue.snapshot() == [1, 2]
    assert kernel.current_running is None

    kernel.dispatch(IO_COMPLETE)
    assert state_of(kernel, 0) == ProcessState.RUNNING
    assert kernel.serviced_worker == 1
    assert source.starts == 2
    assert state_of(kernel, 1) == ProcessState.BLOCKED and kernel.table[1].io_pending

    kernel.dispatch(IO_COMPLETE)
    # worker 1 follows worker 0 in the scan, so it takes the CPU at once
    assert state_of(kernel, 1) == ProcessState.RUNNING
    assert not kernel.table[1].io_pending
    assert kernel.serviced_worker == 2
    assert source.starts == 3

    kernel.dispatch(IO_COMPLETE)
    assert state_of(kernel, 2) == ProcessState.RUNNING
    assert not kernel.table[2].io_pending
    assert not kernel.io_in_progress
    assert source.starts == 3


def test_idle_kernel_wakes_on_completion(kernel, workers):
    for worker_id in (0, 1, 2):
        workers[worker_id].submit(SyscallRequest(5, IOOperation.READ))
        kernel.dispatch(syscall(worker_id))
    assert kernel.current_running is None
    kernel.dispatch(TIMER)
    assert kernel.current_running is None
    kernel.dispatch(IO_COMPLETE)
    assert kernel.current_running == 0


def test_untagged_syscall_reads_running_worker(kernel, workers):
    workers[0].submit(SyscallRequest(5, IOOperation.READ))
    kernel.dispatch(syscall())
    assert state_of(kernel, 0) == ProcessState.BLOCKED
    assert kernel.serviced_worker == 0


def test_coalesced_notification_drains_every_channel(kernel, workers, source):
    workers[0].submit(SyscallRequest(5, IOOperation.READ))
    workers[2].submit(SyscallRequest(10, IOOperation.WRITE))
    kernel.dispatch(syscall())
    assert state_of(kernel, 0) == ProcessState.BLOCKED
    assert state_of(kernel, 2) == ProcessState.BLOCKED
    assert kernel.serviced_worker == 0
    assert kernel.blocked_queue.snapshot() == [2]
    assert source.starts == 1
    assert kernel.current_running == 1


def test_missing_payload_is_a_diagnostic(kernel):
    kernel.dispatch(syscall(0))
    assert kernel.stats.read_failures == 1
    assert kernel.trace.diagnostics
    assert not kernel.table.in_state(ProcessState.BLOCKED)
    kernel.dispatch(TIMER)
    assert kernel.current_running is not None


def test_second_request_from_same_worker_rejected(kernel, workers, source):
    workers[0].submit(SyscallRequest(5, IOOperation.READ))
    kernel.dispatch(syscall(0))
    workers[0].submit(SyscallRequest(6, IOOperation.WRITE))
    kernel.dispatch(syscall(0))
    assert kernel.stats.rejected_requests == 1
    assert kernel.table[0].saved_pc == 5
    assert source.starts == 1
    assert kernel.blocked_queue.is_empty()


def test_spurious_completion_is_reported(kernel):
    kernel.dispatch(IO_COMPLETE)
    assert kernel.stats.diagnostics == 1
    assert not kernel.io_in_progress
    assert kernel.current_running == 1


def test_handler_failure_is_contained(workers, source):
    class BrokenWorker(SimulatedWorker):
        def receive_request(self):
            raise RuntimeError("pipe exploded")

    workers[0] = BrokenWorker(0)
    kernel = OSKernel(workers, source, trace=EventLogger(clock=lambda: 0))
    kernel.start()
    kernel.dispatch(syscall(0))
    assert any("pipe exploded" in d["message"] for d in kernel.trace.diagnostics)
    kernel.dispatch(TIMER)
    assert kernel.current_running == 1


def test_unreadable_channel_does_not_lose_other_requests(workers, source):
    class GarbledWorker(SimulatedWorker):
        def receive_request(self):
            raise ValueError("request record must be 5 bytes, got 2")

    workers[1] = GarbledWorker(1)
    kernel = OSKernel(workers, source, trace=EventLogger(clock=lambda: 0))
    kernel.start()
    workers[0].submit(SyscallRequest(5, IOOperation.READ))
    kernel.dispatch(syscall(0))

    assert state_of(kernel, 0) == ProcessState.BLOCKED
    assert kernel.serviced_worker == 0
    assert source.starts == 1
    assert kernel.stats.read_failures == 1
    assert any("A1" in d["message"] for d in kernel.trace.diagnostics)
    # the handler still ran the scheduler
    assert kernel.current_running == 1


def test_terminated_worker_skipped_for_service(kernel, workers, source):
    workers[0].submit(SyscallRequest(5, IOOperation.READ))
    kernel.dispatch(syscall(0))
    workers[1].submit(SyscallRequest(5, IOOperation.READ))
    kernel.dispatch(syscall(1))
    workers[1].alive = False
    kernel.dispatch(Interrupt(InterruptType.WORKER_EXIT, 1))
    assert state_of(kernel, 1) == ProcessState.TERMINATED

    kernel.dispatch(IO_COMPLETE)
    assert source.starts == 1
    assert not kernel.io_in_progress
    assert kernel.table.check_invariants() == []


def test_kernel_stops_when_all_workers_exit(kernel, workers):
    for worker in workers:
        worker.alive = False
    kernel.dispatch(Interrupt(InterruptType.WORKER_EXIT))
    assert kernel.table.all_terminated()
    assert not kernel.running


def test_child_state_change_without_exit_does_not_reschedule(kernel):
    kernel.dispatch(Interrupt(InterruptType.WORKER_EXIT))
    assert kernel.current_running == 0
    assert kernel.stats.context_switches == 1


def test_run_loop_stops_on_shutdown(workers, source):
    kernel = OSKernel(workers, source, trace=EventLogger(clock=lambda: 0))
    kernel.interrupts.push(TIMER)
    kernel.interrupts.push(Interrupt(InterruptType.SHUTDOWN))
    kernel.run(poll_interval=0.01)
    assert not kernel.running
    assert kernel.current_running is None
    last = kernel.trace.timeline[-1]
    assert last["worker"] == 1 and last["reason"] == "shutdown"


def test_run_loop_honours_time_limit(workers, source):
    config = KernelConfig(num_workers=3, max_run_time=0.05)
    kernel = OSKernel(workers, source, config=config, trace=EventLogger(clock=lambda: 0))
    kernel.run(poll_interval=0.01)
    assert kernel.current_running == 0


def test_worker_count_must_match_config(workers, source):
    with pytest.raises(ConfigurationError):
        OSKernel(workers, source, config=KernelConfig(num_workers=4))
    with pytest.raises(ConfigurationError):
        OSKernel(workers[:2], source)


def test_table_invariants_hold_throughout(kernel, workers):
    script = [
        (None, TIMER),
        ((1, SyscallRequest(5, IOOperation.READ)), syscall(1)),
        (None, TIMER),
        ((2, SyscallRequest(10, IOOperation.WRITE)), syscall(2)),
        (None, TIMER),
        (None, IO_COMPLETE),
        (None, TIMER),
        (None, IO_COMPLETE),
        (None, TIMER),
    ]
    for submitted, interrupt in script:
        if submitted:
            worker_id, request = submitted
            workers[worker_id].submit(request)
        kernel.dispatch(interrupt)
        assert kernel.table.check_invariants() == []
        running = kernel.table.running()
        assert (running.worker_id if running else None) == kernel.current_running


def test_halt_terminates_everything(kernel, workers, source):
    kernel.halt()
    assert kernel.trace.timeline[-1]["worker"] == 0
    assert kernel.trace.timeline[-1]["reason"] == "halted"
    assert kernel.current_running is None
    assert all(("terminate",) in w.calls for w in workers)
    assert not source.alive
    assert not kernel.running
