# workloads/synthetic.py
import random
from typing import Dict, List, Optional, Sequence, Tuple

from config import DRIVER, SECONDS_PER_DAY
from host.job import Job
from host.project import AppVersion, GpuUsage, Project


def synthetic_projects(
    num_projects: int,
    shares: Optional[Sequence[float]] = None,
    gpu_classes: Sequence[str] = (),
) -> List[Tuple[Project, List[AppVersion]]]:
    """
    Build projects named p0, p1, ... each offering one CPU app version and,
    for every GPU class given, one GPU app version.
    """
    shares = list(shares) if shares else [100.0] * num_projects
    if len(shares) != num_projects:
        raise ValueError(f"Got {len(shares)} shares for {num_projects} projects")

    projects = []
    for i in range(num_projects):
        pid = f"p{i}"
        project = Project(project_id=pid, name=f"Project {i}", resource_share=float(shares[i]))
        versions = [AppVersion(project_id=pid, app_name="cpu_app", version_num=1, avg_ncpus=1.0)]
        for rsc in gpu_classes:
            versions.append(AppVersion(
                project_id=pid,
                app_name=f"{rsc}_app",
                version_num=1,
                plan_class=rsc,
                avg_ncpus=0.1,
                gpu_usage=GpuUsage(rsc, 1.0),
            ))
        project.resource_classes.update(av.resource_class for av in versions)
        projects.append((project, versions))
    return projects


def synthetic_jobs(
    av: AppVersion,
    n: int,
    now: float,
    rng: Optional[random.Random] = None,
    id_prefix: Optional[str] = None,
    start_index: int = 0,
    **kwargs
) -> List[Job]:
    """n jobs of one app version with gaussian runtimes and a fixed deadline offset."""
    rng = rng or random.Random()
    runtime_mean = kwargs.get("runtime_mean", DRIVER["runtime_mean"])
    runtime_std = kwargs.get("runtime_std", DRIVER["runtime_std"])
    deadline_days = kwargs.get("deadline_days", DRIVER["deadline_days"])
    prefix = id_prefix or f"{av.project_id}_{av.app_name}"

    jobs: List[Job] = []
    for i in range(n):
        runtime = max(60.0, rng.gauss(runtime_mean, runtime_std))
        jobs.append(Job(
            job_id=f"{prefix}_{start_index + i:06d}",
            project_id=av.project_id,
            app_version_id=av.av_id,
            report_deadline=now + deadline_days * SECONDS_PER_DAY,
            # Remaining time is in instance-seconds of the app's resource class
            estimated_cpu_time_remaining=runtime * av.usage,
            received_time=now,
        ))
    return jobs


def jobs_for_seconds(av: AppVersion, seconds: float, max_jobs: int, **kwargs) -> int:
    """How many average jobs fill the requested instance-seconds."""
    mean = kwargs.get("runtime_mean", DRIVER["runtime_mean"]) * av.usage
    if mean <= 0:
        return max_jobs
    return max(1, min(max_jobs, int(seconds // mean) + 1))


def split_shares(text: Optional[str], num_projects: int) -> List[float]:
    """Parse a comma-separated share list such as '100,50'."""
    if not text:
        return [100.0] * num_projects
    shares = [float(s) for s in text.split(",") if s.strip()]
    if len(shares) != num_projects:
        raise ValueError(f"--shares lists {len(shares)} values for {num_projects} projects")
    return shares


def default_gpu_classes(catalog_cfg: Dict) -> List[str]:
    return [g["name"] for g in catalog_cfg.get("gpus", []) if int(g.get("count", 0)) > 0]
