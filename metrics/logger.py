# metrics/logger.py
import pandas as pd
import os
from typing import Any, Dict, List


def save_tick_log(rows: List[Dict[str, Any]], filename):
    """One row per (tick, resource class, project) as recorded by EmulatedHost."""
    df = pd.DataFrame(rows)
    df.to_csv(filename, index=False)
    return df


def save_status_snapshot(status: Dict[str, Any], prefix):
    """Write the job, project and resource tables of a client status to <prefix>_*.csv."""
    paths = {}
    for table in ("jobs", "projects", "resources"):
        df = pd.json_normalize(status.get(table, []))
        path = f"{prefix}_{table}.csv"
        df.to_csv(path, index=False)
        paths[table] = path
    return paths


def save_report_log(servers, filename):
    rows = []
    for pid, server in sorted(servers.items()):
        for job_id, state, late in server.reported:
            rows.append({"project_id": pid, "job_id": job_id, "state": state, "late": late})
    df = pd.DataFrame(rows, columns=["project_id", "job_id", "state", "late"])
    df.to_csv(filename, index=False)
    return df


def usage_shares(tick_log: pd.DataFrame, interval: float) -> pd.DataFrame:
    """
    Instance-seconds each project received per resource class and its share
    of that class, next to the share it is entitled to.
    """
    if tick_log.empty:
        return pd.DataFrame(columns=["resource_class", "project_id", "usage", "usage_frac"])
    df = tick_log.assign(usage=tick_log["used"] * interval)
    out = df.groupby(["resource_class", "project_id"], as_index=False)["usage"].sum()
    totals = out.groupby("resource_class")["usage"].transform("sum")
    out["usage_frac"] = (out["usage"] / totals.where(totals > 0)).fillna(0.0)
    return out


def append_summary(summary_row, filename):
    exists = os.path.exists(filename)
    df = pd.DataFrame([summary_row])
    df.to_csv(filename, mode='a', header=not exists, index=False)
