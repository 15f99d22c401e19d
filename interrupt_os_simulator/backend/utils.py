from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional
import csv
import json
import time

from colorama import Fore, Style, init as colorama_init


def wall_clock() -> Callable[[], float]:
    """Seconds elapsed since the clock was created."""
    start = time.monotonic()
    return lambda: round(time.monotonic() - start, 3)


class EventLogger:
    """Structured trace of everything the kernel does.

    Every record carries the logger's notion of "now", which is wall-clock
    seconds for real processes and the tick counter for the simulation.
    With ``echo`` enabled each record is also printed to the console.
    """

    def __init__(self, echo: bool = False, clock: Optional[Callable[[], float]] = None) -> None:
        self.interrupts: List[Dict[str, Any]] = []
        self.transitions: List[Dict[str, Any]] = []
        self.io_events: List[Dict[str, Any]] = []
        self.diagnostics: List[Dict[str, Any]] = []
        self.timeline: List[Dict[str, Any]] = []
        self.echo = echo
        self._clock = clock or wall_clock()
        if echo:
            colorama_init(autoreset=True)

    def now(self) -> float:
        return self._clock()

    def _print(self, color: str, text: str) -> None:
        if self.echo:
            print(color + f"[{self.now():>8}] " + text)

    def log_message(self, message: str) -> None:
        self._print(Fore.CYAN, f"KERNEL: {message}")

    def log_interrupt(self, kind: str, worker_id: Optional[int] = None) -> None:
        self.interrupts.append({
            "time": self.now(),
            "irq": kind,
            "worker": worker_id,
        })
        source = f" from A{worker_id}" if worker_id is not None else ""
        self._print(Style.BRIGHT, f"KERNEL: {kind}{source}")

    def log_transition(self, worker_id: int, from_state: str, to_state: str, reason: str) -> None:
        self.transitions.append({
            "time": self.now(),
            "worker": worker_id,
            "from": from_state,
            "to": to_state,
            "reason": reason,
        })
        self._print(Fore.GREEN, f"KERNEL: A{worker_id} {from_state} -> {to_state} ({reason})")

    def log_io_event(self, worker_id: int, event: str, operation: Optional[str] = None, pc: Optional[int] = None) -> None:
        self.io_events.append({
            "time": self.now(),
            "worker": worker_id,
            "event": event,
            "operation": operation,
            "pc": pc,
        })
        detail = f" {operation} at PC={pc}" if operation else ""
        self._print(Fore.MAGENTA, f"KERNEL: I/O {event} for A{worker_id}{detail}")

    def log_diagnostic(self, message: str) -> None:
        self.diagnostics.append({
            "time": self.now(),
            "message": message,
        })
        self._print(Fore.YELLOW, f"KERNEL: warning: {message}")

    def log_timeline_slice(self, start: float, end: float, worker_id: Optional[int], reason: Optional[str] = None) -> None:
        self.timeline.append({
            "start": start,
            "end": end,
            "worker": worker_id,
            "reason": reason,
        })

    def export_json(self, path: str) -> None:
        data = {
            "interrupts": self.interrupts,
            "transitions": self.transitions,
            "io_events": self.io_events,
            "diagnostics": self.diagnostics,
            "timeline": self.timeline,
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def export_csv(self, base_path_no_ext: str) -> None:
        tables = [
            ("interrupts", ["time", "irq", "worker"], self.interrupts),
            ("transitions", ["time", "worker", "from", "to", "reason"], self.transitions),
            ("io", ["time", "worker", "event", "operation", "pc"], self.io_events),
            ("timeline", ["start", "end", "worker", "reason"], self.timeline),
        ]
        for suffix, fieldnames, rows in tables:
            with open(f"{base_path_no_ext}_{suffix}.csv", "w", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=fieldnames)
                writer.writeheader()
                for row in rows:
                    writer.writerow(row)
