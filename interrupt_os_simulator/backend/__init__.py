"""
Kernel, scheduler and the two backends (OS processes and in-process simulation).
"""

from .core import BlockedQueue, ConfigurationError, IOOperation, PCB, ProcessState, ProcessTable, SyscallRequest
from .interrupts import Interrupt, InterruptQueue, InterruptType
from .os_kernel import KernelConfig, OSKernel, WorkerProgram
from .schedulers import RoundRobinScheduler

__all__ = [
    'BlockedQueue', 'ConfigurationError', 'IOOperation', 'PCB', 'ProcessState', 'ProcessTable', 'SyscallRequest',
    'Interrupt', 'InterruptQueue', 'InterruptType',
    'KernelConfig', 'OSKernel', 'WorkerProgram',
    'RoundRobinScheduler',
]
