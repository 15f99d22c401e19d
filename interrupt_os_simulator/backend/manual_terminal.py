from __future__ import annotations

import shlex
from typing import List, Optional
from colorama import Fore, Style, init as colorama_init

from .core import ConfigurationError, ProcessState
from .os_kernel import KernelConfig
from .simulator import Simulation


STATE_COLORS = {
    ProcessState.READY: Fore.CYAN,
    ProcessState.RUNNING: Fore.GREEN,
    ProcessState.BLOCKED: Fore.MAGENTA,
    ProcessState.TERMINATED: Fore.WHITE,
}


class ManualTerminal:
    """Step the simulated kernel by hand and inspect its tables."""

    def __init__(self, config: Optional[KernelConfig] = None, echo: bool = True) -> None:
        colorama_init(autoreset=True)
        self.config = config or KernelConfig()
        self.echo = echo
        self.sim = Simulation(self.config, echo=echo)

    def prompt(self) -> None:
        print(Fore.CYAN + "Mini kernel terminal. Type 'help' for commands.")
        while True:
            try:
                raw = input(Fore.GREEN + f"t={self.sim.tick}> ")
            except (EOFError, KeyboardInterrupt):
                print()
                break
            if not raw.strip():
                continue
            self.handle_command(raw)

    def handle_command(self, raw: str) -> None:
        try:
            parts = shlex.split(raw)
        except ValueError as e:
            print(Fore.RED + f"Parse error: {e}")
            return
        if not parts:
            return
        cmd, *args = parts
        cmd = cmd.lower()
        if cmd == "help":
            self._help()
        elif cmd == "step":
            self._step(args)
        elif cmd == "table":
            self._table()
        elif cmd == "queue":
            self._queue()
        elif cmd == "stats":
            self._stats()
        elif cmd == "reset":
            self._reset(args)
        elif cmd == "export":
            self._export(args)
        elif cmd == "exit" or cmd == "quit":
            raise SystemExit(0)
        else:
            print(Fore.YELLOW + "Unknown command. Type 'help'.")

    def _help(self) -> None:
        print("Commands:")
        print("  step [n]          advance n ticks (default 1)")
        print("  table             show the process table")
        print("  queue             show the blocked queue and device")
        print("  stats             kernel counters")
        print("  reset [workers]   start a fresh simulation")
        print("  export <base>     write the trace as <base>.json and CSVs")
        print("  exit")

    def _step(self, args: List[str]) -> None:
        try:
            count = int(args[0]) if args else 1
        except ValueError:
            print(Fore.RED + "Invalid tick count")
            return
        for _ in range(count):
            if self.sim.finished:
                print(Fore.YELLOW + "Kernel halted: every worker terminated")
                break
            self.sim.step()

    def _table(self) -> None:
        kernel = self.sim.kernel
        print(Style.BRIGHT + f"{'ID':<4}{'STATE':<12}{'IO':<5}{'SAVED PC':<10}{'OP':<7}{'RUNS':<6}")
        for pcb in kernel.table:
            saved = str(pcb.saved_pc) if pcb.saved_pc_valid else "-"
            op = pcb.saved_operation.name if pcb.saved_operation else "-"
            color = STATE_COLORS[pcb.state]
            print(color + f"{pcb.name:<4}{pcb.state.value:<12}{'yes' if pcb.io_pending else 'no':<5}{saved:<10}{op:<7}{pcb.stats.dispatches:<6}")

    def _queue(self) -> None:
        kernel = self.sim.kernel
        waiting = ", ".join(f"A{i}" for i in kernel.blocked_queue.snapshot()) or "empty"
        device = f"A{kernel.serviced_worker}" if kernel.io_in_progress else "idle"
        running = kernel.table.running()
        print(f"CPU: {running.name if running else 'idle'}")
        print(f"Blocked queue: {waiting}")
        print(f"Device: {device}")

    def _stats(self) -> None:
        for name, value in self.sim.kernel.stats.as_dict().items():
            print(f"{name}: {value}")

    def _reset(self, args: List[str]) -> None:
        config = self.config
        if args:
            try:
                config = KernelConfig(
                    num_workers=int(args[0]),
                    time_slice=self.config.time_slice,
                    io_latency=self.config.io_latency,
                    program=self.config.program,
                )
            except ValueError:
                print(Fore.RED + "Invalid worker count")
                return
        try:
            self.sim = Simulation(config, echo=self.echo)
        except ConfigurationError as e:
            print(Fore.RED + str(e))
            return
        self.config = config
        print(Fore.CYAN + f"Fresh simulation with {config.num_workers} workers")

    def _export(self, args: List[str]) -> None:
        if not args:
            print(Fore.RED + "Usage: export <base path>")
            return
        base = args[0]
        self.sim.trace.export_json(f"{base}.json")
        self.sim.trace.export_csv(base)
        print(Fore.CYAN + f"Trace written to {base}.json and {base}_*.csv")


def main() -> None:
    ManualTerminal().prompt()


if __name__ == "__main__":
    main()
