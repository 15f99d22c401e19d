from __future__ import annotations

import argparse
import os
import sys

# Ensure project root is on sys.path when running as a script
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.abspath(os.path.join(SCRIPT_DIR, os.pardir, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from interrupt_os_simulator.backend.core import ConfigurationError
from interrupt_os_simulator.backend.os_kernel import KernelConfig, WorkerProgram
from interrupt_os_simulator.backend.simulator import simulate
from interrupt_os_simulator.backend.visualizer import plot_gantt, summarize


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Deterministic simulation of the interrupt-driven round-robin kernel")
    p.add_argument("--workers", type=int, default=3)
    p.add_argument("--ticks", type=int, default=1000, help="Upper bound on simulated ticks")
    p.add_argument("--time-slice", type=int, default=1, help="Ticks per time slice")
    p.add_argument("--io-latency", type=int, default=3, help="Ticks per device request")
    p.add_argument("--instructions", type=int, default=30, help="Instructions per application")
    p.add_argument("--trace", action="store_true", help="Echo the kernel trace")
    p.add_argument("--out", type=str, default=None, help="Save a Gantt chart to this path")
    p.add_argument("--export", type=str, default=None, help="Base path for JSON/CSV trace export")
    return p.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    config = KernelConfig(
        num_workers=args.workers,
        time_slice=args.time_slice,
        io_latency=args.io_latency,
        startup_delay=0.0,
        program=WorkerProgram(max_iterations=args.instructions, instruction_time=1.0),
    )
    try:
        result = simulate(config, ticks=args.ticks, echo=args.trace)
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    print(summarize(result).to_string())
    print(f"Ticks: {result.ticks}, all terminated: {result.all_terminated}")
    for violation in result.violations:
        print(f"invariant violated: {violation}")
    if args.export:
        result.trace.export_json(f"{args.export}.json")
        result.trace.export_csv(args.export)
        print(f"Trace written to {args.export}.json")
    if args.out:
        plot_gantt(result, args.out)
        print(f"Saved plot to {args.out}")


if __name__ == "__main__":
    main()
