# metrics/plots.py
import os
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

# NOTE: do not set global matplotlib styles/colors here.
# Each function will create and save its own figures.


def _ensure_dir(d):
    if not os.path.exists(d):
        os.makedirs(d, exist_ok=True)


def _per_class(tick_log: pd.DataFrame):
    if tick_log.empty:
        return []
    return sorted(tick_log["resource_class"].unique())


def cumulative_usage_plot(tick_log: pd.DataFrame, interval, outdir, prefix="run"):
    """
    Cumulative instance-seconds per project, one figure per resource class.
    With fair scheduling the curves fan out in proportion to resource share.
    """
    _ensure_dir(outdir)
    paths = []
    for rsc in _per_class(tick_log):
        df = tick_log[tick_log["resource_class"] == rsc]
        plt.figure(figsize=(8, 5))
        for pid, g in df.groupby("project_id"):
            g = g.sort_values("time")
            plt.plot(g["time"].values, np.cumsum(g["used"].values) * interval, label=pid)
        plt.xlabel("Time (s)")
        plt.ylabel(f"Cumulative {rsc} usage (instance-s)")
        plt.title(f"Cumulative {rsc} usage per project")
        plt.legend(fontsize="small")
        path = os.path.join(outdir, f"{prefix}_{rsc}_usage.png")
        plt.tight_layout()
        plt.savefig(path)
        plt.close()
        paths.append(path)
        print(f"[plots] Saved {rsc} cumulative usage -> {path}")
    if not paths:
        print("[plots] empty tick log; no usage plot")
    return paths


def debt_plot(tick_log: pd.DataFrame, outdir, prefix="run"):
    """Per-project debt over time for each resource class."""
    _ensure_dir(outdir)
    rscs = _per_class(tick_log)
    if not rscs:
        print("[plots] empty tick log; no debt plot")
        return None
    fig, axes = plt.subplots(len(rscs), 1, figsize=(8, 3 * len(rscs)), squeeze=False)
    for ax, rsc in zip(axes[:, 0], rscs):
        df = tick_log[tick_log["resource_class"] == rsc]
        for pid, g in df.groupby("project_id"):
            g = g.sort_values("time")
            ax.plot(g["time"].values, g["debt"].values, label=pid)
        ax.axhline(0.0, color="grey", linewidth=0.5)
        ax.set_ylabel(f"{rsc} debt")
        ax.legend(fontsize="small", loc="upper right")
    axes[-1, 0].set_xlabel("Time (s)")
    path = os.path.join(outdir, f"{prefix}_debt.png")
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)
    print(f"[plots] Saved debt -> {path}")
    return path


def shortfall_plot(tick_log: pd.DataFrame, outdir, prefix="run"):
    """Projected shortfall per resource class; spikes line up with work fetches."""
    _ensure_dir(outdir)
    rscs = _per_class(tick_log)
    if not rscs:
        print("[plots] empty tick log; no shortfall plot")
        return None
    plt.figure(figsize=(8, 4))
    for rsc in rscs:
        g = tick_log[tick_log["resource_class"] == rsc].drop_duplicates("time").sort_values("time")
        plt.plot(g["time"].values, g["shortfall"].values, label=rsc)
    plt.xlabel("Time (s)")
    plt.ylabel("Shortfall (instance-s)")
    plt.title("Projected shortfall over time")
    plt.legend(fontsize="small")
    path = os.path.join(outdir, f"{prefix}_shortfall.png")
    plt.tight_layout()
    plt.savefig(path)
    plt.close()
    print(f"[plots] Saved shortfall -> {path}")
    return path
