from __future__ import annotations

from typing import Dict, List, Optional
import os

import matplotlib.pyplot as plt
import pandas as pd

from .simulator import SimulationResult
from .utils import EventLogger


def ensure_dir(path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def io_service_spans(logger: EventLogger) -> List[Dict[str, float]]:
    """Pair every I/O "start" with the following "complete" on the device."""
    spans = []
    current: Optional[Dict[str, float]] = None
    for ev in logger.io_events:
        if ev["event"] == "start":
            current = {"worker": ev["worker"], "start": ev["time"]}
        elif ev["event"] == "complete" and current is not None:
            current["end"] = ev["time"]
            spans.append(current)
            current = None
    return spans


def summarize(result: SimulationResult) -> pd.DataFrame:
    """Per-worker summary table of a simulation run."""
    rows = []
    for worker_id, stats in sorted(result.worker_stats.items()):
        rows.append({
            "worker": f"A{worker_id}",
            "final_state": result.final_states[worker_id].value,
            "dispatches": stats.dispatches,
            "preemptions": stats.preemptions,
            "run_time": stats.run_time,
            "io_requests": stats.io_requests,
            "io_completions": stats.io_completions,
            "instructions": len(result.executed.get(worker_id, [])),
        })
    return pd.DataFrame(rows).set_index("worker")


def plot_gantt(result: SimulationResult, out_path: Optional[str] = None) -> None:
    logger = result.trace
    worker_ids = sorted(result.final_states)
    fig, ax = plt.subplots(figsize=(12, 2 + 0.5 * len(worker_ids)))
    cmap = plt.get_cmap("tab10")
    y_positions = {wid: i for i, wid in enumerate(worker_ids)}

    # CPU slices
    for seg in logger.timeline:
        wid = seg.get("worker")
        if wid is None:
            continue
        ax.barh(y_positions[wid], seg["end"] - seg["start"], left=seg["start"], height=0.5,
                color=cmap(wid % 10), edgecolor="black", alpha=0.9)

    # device service drawn as hatched bars under the CPU lane
    for span in io_service_spans(logger):
        wid = span["worker"]
        ax.barh(y_positions[wid] - 0.35, span["end"] - span["start"], left=span["start"], height=0.15,
                color="white", edgecolor=cmap(wid % 10), hatch="////")

    for irq in logger.interrupts:
        if irq["irq"] == "IRQ2":
            ax.axvline(irq["time"], color="#aa3333", linestyle=":", alpha=0.4)

    ax.set_yticks(list(y_positions.values()))
    ax.set_yticklabels([f"A{wid}" for wid in worker_ids])
    ax.set_xlabel("Time")
    ax.set_title("Round Robin with blocking I/O (solid: CPU, hatched: device)")
    ax.grid(True, axis="x", linestyle=":", alpha=0.5)
    fig.tight_layout()

    if out_path:
        ensure_dir(out_path)
        fig.savefig(out_path, dpi=150)
        plt.close(fig)
    else:
        plt.show()
