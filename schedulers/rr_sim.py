# schedulers/rr_sim.py
"""
Round-robin deadline simulator.

Projects the current backlog forward in time assuming nothing external
changes: at every decision point each resource class is filled with the
earliest-deadline jobs that fit. The result tells the scheduler which jobs
are in deadline trouble and tells work fetch how much idle instance time
(shortfall) the backlog leaves inside the work-buffer horizon.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from config import CPU, Preferences
from host.registry import RegistryView
from host.resources import EPS, InstancePool, ResourceCatalog, allocate_job

logger = logging.getLogger(__name__)


@dataclass
class RscProjection:
    rsc: str
    instances: int
    shortfall: float = 0.0
    busy_time: float = 0.0
    # Time from now until the first instance of the class goes idle
    saturated_time: float = 0.0
    idle_instances_now: int = 0
    nrunnable: int = 0
    nqueued: int = 0


@dataclass
class SimResult:
    now: float
    horizon: float
    resources: Dict[str, RscProjection] = field(default_factory=dict)
    completion: Dict[str, float] = field(default_factory=dict)
    deadline_misses: Set[str] = field(default_factory=set)
    project_misses: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def will_miss(self, job_id: str) -> bool:
        return job_id in self.deadline_misses

    def misses_for(self, project_id: str, rsc: str) -> int:
        return self.project_misses.get(project_id, {}).get(rsc, 0)

    def shortfall(self, rsc: str) -> float:
        proj = self.resources.get(rsc)
        return proj.shortfall if proj else 0.0


@dataclass
class _SimJob:
    job_id: str
    project_id: str
    app_key: str
    rsc: str
    deadline: float
    remaining: float
    usage: float
    demands: List[Tuple[str, float]]


def _assign(pending: List[_SimJob], catalog: ResourceCatalog, rscs: List[str],
            limits: Dict[str, int]) -> Tuple[List[_SimJob], Dict[str, InstancePool]]:
    """Fill every class with the earliest-deadline jobs that fit."""
    pools = {rsc: catalog.new_pool(rsc) for rsc in rscs}
    counts: Dict[str, int] = {}
    running = []
    for job in pending:
        limit = limits.get(job.app_key, 0)
        if limit and counts.get(job.app_key, 0) >= limit:
            continue
        if not allocate_job(pools, job.demands, job.project_id):
            continue
        counts[job.app_key] = counts.get(job.app_key, 0) + 1
        running.append(job)
    return running, pools


def simulate(view: RegistryView, catalog: ResourceCatalog, prefs: Preferences,
             now: Optional[float] = None) -> SimResult:
    now = view.now if now is None else now
    horizon = prefs.horizon
    end = now + horizon
    result = SimResult(now=now, horizon=horizon)

    rscs = [r for r in catalog.resource_classes() if prefs.resource_enabled(r)]
    for rsc in rscs:
        result.resources[rsc] = RscProjection(rsc=rsc, instances=catalog.instance_count(rsc))

    pending: List[_SimJob] = []
    for job in view.backlog():
        av = view.app_version(job)
        proj = result.resources.get(av.resource_class)
        if proj is None:
            continue
        proj.nqueued += 1
        if job.is_candidate:
            proj.nrunnable += 1
        if job.estimated_cpu_time_remaining <= EPS:
            result.completion[job.job_id] = now
            continue
        pending.append(_SimJob(
            job_id=job.job_id,
            project_id=job.project_id,
            app_key=av.app_key,
            rsc=av.resource_class,
            deadline=job.report_deadline,
            remaining=job.estimated_cpu_time_remaining,
            usage=av.usage,
            demands=av.demands,
        ))
    # GPU jobs first: they also hold part of a CPU
    pending.sort(key=lambda j: (j.rsc == CPU, j.deadline, j.job_id))

    limits = view.app_limits()
    saturated: Dict[str, float] = {}
    t = now
    first = True
    while pending:
        running, pools = _assign(pending, catalog, rscs, limits)
        if not running:
            break

        if first:
            for rsc, pool in pools.items():
                result.resources[rsc].idle_instances_now = pool.idle_instances
            first = False

        step = min(j.remaining / j.usage for j in running)
        if t < end:
            step = min(step, prefs.sim_slice, end - t)
            for rsc, pool in pools.items():
                proj = result.resources[rsc]
                proj.busy_time += pool.total_used * step
                if rsc not in saturated and pool.total_used < proj.instances - EPS:
                    saturated[rsc] = t - now

        t += step
        done = []
        for job in running:
            job.remaining -= step * job.usage
            if job.remaining <= EPS:
                result.completion[job.job_id] = t
                done.append(job)
        if done:
            finished = {j.job_id for j in done}
            pending = [j for j in pending if j.job_id not in finished]

    for job in pending:
        logger.warning(f"Job {job.job_id} cannot be placed in the simulation")
        result.completion[job.job_id] = math.inf

    if first:
        for rsc in rscs:
            result.resources[rsc].idle_instances_now = result.resources[rsc].instances

    for rsc, proj in result.resources.items():
        proj.shortfall = max(0.0, proj.instances * horizon - proj.busy_time)
        proj.saturated_time = saturated.get(rsc, min(t, end) - now)

    _flag_misses(view, result)
    return result


def _flag_misses(view: RegistryView, result: SimResult) -> None:
    for job_id, completion in sorted(result.completion.items()):
        job = view.jobs[job_id]
        if completion <= job.report_deadline:
            continue
        result.deadline_misses.add(job_id)
        rsc = view.resource_class(job)
        per_project = result.project_misses.setdefault(job.project_id, {})
        per_project[rsc] = per_project.get(rsc, 0) + 1
