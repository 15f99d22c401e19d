"""
Real OS-process backend: workers and the interrupt controller run as child
processes, the kernel talks to them through pipes and POSIX signals.

Signal map (kernel side): SIGUSR1 timer, SIGUSR2 syscall, SIGRTMIN I/O
complete, SIGCHLD worker exit, SIGINT/SIGTERM shutdown.
Controller side: SIGUSR1 means "begin I/O service".
"""

from __future__ import annotations

from typing import List, Optional
import multiprocessing
import os
import signal
import time

from .core import ConfigurationError, SyscallRequest, decode_context, encode_context
from .handles import InterruptSourceHandle, WorkerHandle
from .interrupts import Interrupt, InterruptQueue, InterruptType
from .os_kernel import KernelConfig, OSKernel, WorkerProgram
from .utils import EventLogger


TIMER_SIGNAL = signal.SIGUSR1
SYSCALL_SIGNAL = signal.SIGUSR2
IO_COMPLETE_SIGNAL = signal.SIGRTMIN
IO_START_SIGNAL = signal.SIGUSR1
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)
KERNEL_SIGNALS = {TIMER_SIGNAL, SYSCALL_SIGNAL, IO_COMPLETE_SIGNAL, signal.SIGCHLD}

# fds and handlers are inherited, so children must be forked
_mp = multiprocessing.get_context("fork")


def worker_main(worker_id: int, request_conn, context_conn, program: WorkerProgram) -> None:
    """Body of an application process."""
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    kernel_pid = os.getppid()
    pid = os.getpid()
    print(f"App A{worker_id} started (PID {pid})", flush=True)

    pc = 0
    while pc < program.max_iterations:
        print(f"  A{worker_id} (PID {pid}): executing instruction PC={pc}", flush=True)
        operation = program.io_points.get(pc)
        if operation is not None:
            print(f"  A{worker_id} (PID {pid}, PC={pc}): syscall {operation.name} on disk D1", flush=True)
            request_conn.send_bytes(SyscallRequest(pc, operation).pack())
            os.kill(kernel_pid, SYSCALL_SIGNAL)
            # parked here until the kernel restores our context
            try:
                pc = decode_context(context_conn.recv_bytes())
            except EOFError:
                print(f"  A{worker_id} (PID {pid}): kernel went away, exiting", flush=True)
                return
            print(f"  A{worker_id} (PID {pid}): resumed after I/O at PC={pc}", flush=True)
        pc += 1
        time.sleep(program.instruction_time)

    request_conn.close()
    context_conn.close()


def controller_main(time_slice: float, io_latency: float) -> None:
    """Body of the interrupt controller: periodic timer plus a one-request device."""
    kernel_pid = os.getppid()
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    for signum in (SYSCALL_SIGNAL, IO_COMPLETE_SIGNAL, signal.SIGCHLD, signal.SIGTERM):
        signal.signal(signum, signal.SIG_DFL)
    signal.pthread_sigmask(signal.SIG_BLOCK, {IO_START_SIGNAL})
    print(f"InterControllerSim: started. Kernel PID = {kernel_pid}", flush=True)

    next_tick = time.monotonic() + time_slice
    io_deadline: Optional[float] = None
    queued_starts = 0
    while os.getppid() == kernel_pid:
        wake = next_tick if io_deadline is None else min(next_tick, io_deadline)
        info = signal.sigtimedwait({IO_START_SIGNAL}, max(0.0, wake - time.monotonic()))
        now = time.monotonic()
        if info is not None:
            if io_deadline is None:
                io_deadline = now + io_latency
            else:
                queued_starts += 1
        if io_deadline is not None and now >= io_deadline:
            os.kill(kernel_pid, IO_COMPLETE_SIGNAL)
            if queued_starts:
                queued_starts -= 1
                io_deadline = now + io_latency
            else:
                io_deadline = None
        if now >= next_tick:
            os.kill(kernel_pid, TIMER_SIGNAL)
            next_tick += time_slice


class ProcessWorkerHandle(WorkerHandle):
    """A worker running in its own process."""

    def __init__(self, worker_id: int, program: WorkerProgram):
        self.worker_id = worker_id
        self._request_reader, request_writer = _mp.Pipe(duplex=False)
        context_reader, self._context_writer = _mp.Pipe(duplex=False)
        self._child_ends = (request_writer, context_reader)
        self.process = _mp.Process(
            target=worker_main,
            args=(worker_id, request_writer, context_reader, program),
            name=f"A{worker_id}",
        )

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    def start(self) -> None:
        self.process.start()
        for conn in self._child_ends:
            conn.close()

    def _signal(self, signum: int) -> bool:
        try:
            os.kill(self.process.pid, signum)
        except ProcessLookupError:
            return False
        return True

    def pause(self) -> bool:
        return self._signal(signal.SIGSTOP)

    def resume(self) -> bool:
        return self._signal(signal.SIGCONT)

    def send_context(self, pc: int) -> None:
        self._context_writer.send_bytes(encode_context(pc))

    def receive_request(self) -> Optional[SyscallRequest]:
        try:
            if not self._request_reader.poll():
                return None
            return SyscallRequest.unpack(self._request_reader.recv_bytes())
        except EOFError:
            return None

    def is_alive(self) -> bool:
        return self.process.is_alive()

    def terminate(self) -> None:
        if self.process.pid is None:
            return
        # SIGKILL also works on stopped processes
        if self.process.is_alive():
            self.process.kill()
        self.process.join(timeout=1.0)


class ProcessInterruptSource(InterruptSourceHandle):
    """The InterControllerSim process."""

    def __init__(self, time_slice: float, io_latency: float):
        self.process = _mp.Process(target=controller_main, args=(time_slice, io_latency), name="InterControllerSim")

    def start(self) -> None:
        self.process.start()

    def start_io(self) -> None:
        os.kill(self.process.pid, IO_START_SIGNAL)

    def terminate(self) -> None:
        if self.process.pid is None:
            return
        if self.process.is_alive():
            self.process.kill()
        self.process.join(timeout=1.0)


class SignalRelay:
    """Turns POSIX signals into interrupts on the kernel's queue. Nothing else."""

    def __init__(self, interrupts: InterruptQueue):
        self.interrupts = interrupts

    def install(self) -> None:
        signal.signal(TIMER_SIGNAL, self.on_timer)
        signal.signal(SYSCALL_SIGNAL, self.on_syscall)
        signal.signal(IO_COMPLETE_SIGNAL, self.on_io_complete)
        signal.signal(signal.SIGCHLD, self.on_child)
        for signum in SHUTDOWN_SIGNALS:
            signal.signal(signum, self.on_shutdown)

    def uninstall(self) -> None:
        for signum in (TIMER_SIGNAL, SYSCALL_SIGNAL, IO_COMPLETE_SIGNAL, signal.SIGCHLD):
            signal.signal(signum, signal.SIG_DFL)
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

    def on_timer(self, signum, frame) -> None:
        self.interrupts.push(Interrupt(InterruptType.TIMER))

    def on_syscall(self, signum, frame) -> None:
        self.interrupts.push(Interrupt(InterruptType.SYSCALL))

    def on_io_complete(self, signum, frame) -> None:
        self.interrupts.push(Interrupt(InterruptType.IO_COMPLETE))

    def on_child(self, signum, frame) -> None:
        self.interrupts.push(Interrupt(InterruptType.WORKER_EXIT))

    def on_shutdown(self, signum, frame) -> None:
        self.interrupts.push(Interrupt(InterruptType.SHUTDOWN))


def spawn_workers(config: KernelConfig) -> List[ProcessWorkerHandle]:
    workers: List[ProcessWorkerHandle] = []
    try:
        for i in range(config.num_workers):
            worker = ProcessWorkerHandle(i, config.program)
            worker.start()
            # stopped before its first instruction; only the scheduler continues it
            worker.pause()
            workers.append(worker)
    except OSError as e:
        for worker in workers:
            worker.terminate()
        raise ConfigurationError(f"could not spawn worker {len(workers)}: {e}") from e
    return workers


def boot(config: KernelConfig, trace: Optional[EventLogger] = None) -> OSKernel:
    """Bring the whole system up, run it until shutdown and tear it down.

    Returns the kernel so callers can inspect its trace and statistics.
    """
    config.validate()
    trace = trace or EventLogger(echo=True)

    # held pending until the relay is armed; an early syscall must not kill us
    signal.pthread_sigmask(signal.SIG_BLOCK, KERNEL_SIGNALS)
    trace.log_message(f"creating {config.num_workers} application processes...")
    try:
        workers = spawn_workers(config)
    except ConfigurationError:
        signal.pthread_sigmask(signal.SIG_UNBLOCK, KERNEL_SIGNALS)
        raise
    for worker in workers:
        trace.log_message(f"process A{worker.worker_id} created and stopped (PID {worker.pid})")

    controller = ProcessInterruptSource(config.time_slice, config.io_latency)
    kernel = OSKernel(workers, controller, config=config, trace=trace)
    relay = SignalRelay(kernel.interrupts)
    relay.install()
    signal.pthread_sigmask(signal.SIG_UNBLOCK, KERNEL_SIGNALS)
    try:
        trace.log_message("creating InterControllerSim...")
        try:
            controller.start()
        except OSError as e:
            raise ConfigurationError(f"could not spawn the interrupt controller: {e}") from e
        time.sleep(config.startup_delay)
        kernel.run()
    finally:
        kernel.halt()
        relay.uninstall()
    return kernel

