import pandas as pd
from typing import Any, Dict, List, Tuple

from config import CPU
from host.job import Job
from host.project import AppVersion, GpuUsage

REQUIRED_COLUMNS = ("job_id", "project_id", "app_name", "report_deadline", "estimated_cpu_time_remaining")


def _value(row: pd.Series, key: str, default: Any) -> Any:
    value = row.get(key, default)
    return default if pd.isna(value) or value == "" else value


def parse_backlog_csv(file_path: str, now: float = 0.0) -> Tuple[List[AppVersion], List[Job]]:
    """
    Parses a backlog CSV into app versions and NEW jobs.
    Deadlines in the file are relative to `now` (seconds).
    Optional columns: version_num, plan_class, avg_ncpus, resource_class, gpu_usage, max_concurrent.
    """
    df = pd.read_csv(file_path)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{file_path} lacks column(s): {', '.join(missing)}")

    df["report_deadline"] = pd.to_numeric(df["report_deadline"])
    df["estimated_cpu_time_remaining"] = pd.to_numeric(df["estimated_cpu_time_remaining"])

    versions: Dict[str, AppVersion] = {}
    jobs = []
    for _, row in df.iterrows():
        rsc = str(_value(row, "resource_class", CPU))
        gpu_usage = None
        if rsc != CPU:
            gpu_usage = GpuUsage(rsc, float(_value(row, "gpu_usage", 1.0)))
        av = AppVersion(
            project_id=str(row["project_id"]),
            app_name=str(row["app_name"]),
            version_num=int(_value(row, "version_num", 0)),
            plan_class=str(_value(row, "plan_class", "")),
            avg_ncpus=float(_value(row, "avg_ncpus", 1.0)),
            gpu_usage=gpu_usage,
            max_concurrent=int(_value(row, "max_concurrent", 0)),
        )
        av = versions.setdefault(av.av_id, av)
        jobs.append(Job(
            job_id=str(row["job_id"]),
            project_id=av.project_id,
            app_version_id=av.av_id,
            report_deadline=now + float(row["report_deadline"]),
            estimated_cpu_time_remaining=float(row["estimated_cpu_time_remaining"]),
            received_time=now,
        ))

    # Deadline order keeps the initial registry order meaningful
    jobs.sort(key=lambda j: (j.report_deadline, j.job_id))
    return list(versions.values()), jobs
