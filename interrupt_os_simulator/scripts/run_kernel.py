from __future__ import annotations

import argparse
import sys
from pathlib import Path

from colorama import Fore, init as colorama_init

# Ensure repo root is on sys.path so this script can be executed directly
repo_root = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(repo_root))

from interrupt_os_simulator.backend.core import ConfigurationError
from interrupt_os_simulator.backend.os_kernel import KernelConfig, MAX_WORKERS, MIN_WORKERS
from interrupt_os_simulator.backend.processes import boot
from interrupt_os_simulator.backend.utils import EventLogger


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Run the round-robin kernel over real application processes')
    parser.add_argument('num_workers', type=int, help=f'Number of application processes ({MIN_WORKERS}-{MAX_WORKERS})')
    parser.add_argument('--time-slice', type=float, default=1.0, help='Seconds between timer interrupts')
    parser.add_argument('--io-latency', type=float, default=3.0, help='Seconds a device request takes')
    parser.add_argument('--startup-delay', type=float, default=1.0, help='Seconds to wait after spawning')
    parser.add_argument('--keep-running', action='store_true', help='Do not stop once every application has finished')
    parser.add_argument('--export', type=str, default=None, help='Base path for JSON/CSV trace export')
    return parser.parse_args(argv)


def main(argv=None) -> None:
    colorama_init(autoreset=True)
    args = parse_args(argv)
    config = KernelConfig(
        num_workers=args.num_workers,
        time_slice=args.time_slice,
        io_latency=args.io_latency,
        startup_delay=args.startup_delay,
        exit_when_all_terminated=not args.keep_running,
    )
    try:
        config.validate()
        kernel = boot(config, trace=EventLogger(echo=True))
    except ConfigurationError as e:
        print(Fore.RED + f"ERROR: {e}")
        sys.exit(1)

    print(f"Timer interrupts: {kernel.stats.timer_interrupts}")
    print(f"I/O requests: {kernel.stats.syscalls}, completions: {kernel.stats.io_completions}")
    print(f"Context switches: {kernel.stats.context_switches}")
    if args.export:
        out = Path(args.export)
        out.parent.mkdir(parents=True, exist_ok=True)
        kernel.trace.export_json(f'{out}.json')
        kernel.trace.export_csv(str(out))
        print(f"Trace written to {out}.json / {out}_*.csv")


if __name__ == '__main__':
    main()
