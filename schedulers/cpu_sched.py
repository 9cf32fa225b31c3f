# schedulers/cpu_sched.py
"""
CPU/GPU scheduler: picks the jobs that run until the next tick.

Candidates are ranked by (effective priority, deadline, time slice, project
debt, job id) and packed greedily into per-instance pools of their resource
class; GPU jobs also take their CPU fraction from the CPU pool.
Project debt is the fairness mechanism: after every interval each project
gains the difference between its resource-share entitlement and what its
jobs actually used, so projects that got less than their share rank first.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Set, Tuple

from config import CPU, Preferences
from host.job import Job, JobState, PriorityClass
from host.registry import RegistryView
from host.resources import ResourceCatalog, allocate_job
from schedulers.rr_sim import SimResult

logger = logging.getLogger(__name__)


@dataclass
class ScheduleDecision:
    run_set: List[str] = field(default_factory=list)
    to_start: List[str] = field(default_factory=list)
    to_preempt: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    # Preempted before their time slice ended; they resume first
    resume_first: Set[str] = field(default_factory=set)
    allocated: Dict[str, float] = field(default_factory=dict)
    idle_instances: Dict[str, int] = field(default_factory=dict)
    debt: Dict[str, Dict[str, float]] = field(default_factory=dict)
    recent_usage: Dict[str, Dict[str, float]] = field(default_factory=dict)


def _in_time_slice(job: Job, now: float, prefs: Preferences) -> bool:
    return (
        job.state == JobState.RUNNING
        and job.run_started_at is not None
        and now - job.run_started_at < prefs.time_slice
    )


def is_high_priority(job: Job, sim: SimResult, now: float, prefs: Preferences) -> bool:
    return (
        job.priority_class == PriorityClass.HIGH
        or _in_time_slice(job, now, prefs)
        or sim.will_miss(job.job_id)
    )


def account_debt(view: RegistryView, catalog: ResourceCatalog,
                 prefs: Preferences) -> Tuple[Dict[str, Dict[str, float]], Dict[str, Dict[str, float]]]:
    """
    Debt and recent usage per project and class after charging the interval
    that just ended. Participating debts are kept zero-mean and every debt
    decays toward zero with the configured half-life.
    """
    debt = {pid: dict(p.debt) for pid, p in view.projects.items()}
    recent = {pid: dict(p.recent_usage) for pid, p in view.projects.items()}
    if view.interval <= 0:
        return debt, recent

    decay = 0.5 ** (view.interval / prefs.debt_half_life)
    wanting: Dict[str, Set[str]] = {}
    for job in view.candidates():
        wanting.setdefault(view.resource_class(job), set()).add(job.project_id)

    for rsc in catalog.resource_classes():
        used = view.interval_usage.get(rsc, {})
        participants = [
            p for p in view.active_projects()
            if p.project_id in wanting.get(rsc, ()) or used.get(p.project_id, 0.0) > 0
        ]
        if participants:
            shares = [p.resource_share for p in participants]
            total_share = sum(shares)
            if total_share <= 0:
                shares = [1.0] * len(participants)
                total_share = float(len(participants))
            total_used = sum(used.get(p.project_id, 0.0) for p in participants)
            for p, share in zip(participants, shares):
                entitled = total_used * share / total_share
                d = debt[p.project_id]
                d[rsc] = d.get(rsc, 0.0) + entitled - used.get(p.project_id, 0.0)
            mean = sum(debt[p.project_id][rsc] for p in participants) / len(participants)
            for p in participants:
                debt[p.project_id][rsc] -= mean

        for pid in view.projects:
            if rsc in debt[pid]:
                debt[pid][rsc] *= decay
            recent[pid][rsc] = recent[pid].get(rsc, 0.0) * decay + used.get(pid, 0.0)

    return debt, recent


def rank_candidates(view: RegistryView, sim: SimResult, prefs: Preferences,
                    debt: Dict[str, Dict[str, float]], enabled: Set[str]) -> List[Job]:
    """
    Jobs of enabled classes in placement order. GPU jobs come before CPU
    jobs since they also hold part of a CPU. Within a deadline, a job still
    inside its time slice stays ahead of the debt comparison.
    """
    now = view.now

    def key(job: Job):
        rsc = view.resource_class(job)
        return (
            rsc == CPU,
            0 if is_high_priority(job, sim, now, prefs) else 1,
            job.report_deadline,
            0 if _in_time_slice(job, now, prefs) else 1,
            -debt.get(job.project_id, {}).get(rsc, 0.0),
            job.job_id,
        )

    jobs = [j for j in view.candidates() if view.resource_class(j) in enabled]
    return sorted(jobs, key=key)


def schedule(view: RegistryView, catalog: ResourceCatalog, prefs: Preferences,
             sim: SimResult) -> ScheduleDecision:
    now = view.now
    decision = ScheduleDecision()
    decision.debt, decision.recent_usage = account_debt(view, catalog, prefs)

    enabled = {r for r in catalog.resource_classes() if prefs.resource_enabled(r)}
    pools = {rsc: catalog.new_pool(rsc) for rsc in enabled}
    limits = view.app_limits()
    counts: Dict[str, int] = {}

    for job in rank_candidates(view, sim, prefs, decision.debt, enabled):
        av = view.app_version(job)
        limit = limits.get(av.app_key, 0)
        if limit and counts.get(av.app_key, 0) >= limit:
            continue
        if not allocate_job(pools, av.demands, job.project_id):
            continue
        counts[av.app_key] = counts.get(av.app_key, 0) + 1
        decision.run_set.append(job.job_id)
        if job.state == JobState.RUNNING:
            decision.kept.append(job.job_id)
        else:
            decision.to_start.append(job.job_id)

    selected = set(decision.run_set)
    for job_id, job in sorted(view.jobs.items()):
        if job.state != JobState.RUNNING or job_id in selected:
            continue
        decision.to_preempt.append(job_id)
        if _in_time_slice(job, now, prefs):
            decision.resume_first.add(job_id)

    for rsc, pool in pools.items():
        decision.allocated[rsc] = pool.total_used
        decision.idle_instances[rsc] = pool.idle_instances

    if decision.to_preempt or decision.to_start:
        logger.debug(
            f"Schedule at {now:.0f}: start {decision.to_start}, preempt {decision.to_preempt}, "
            f"keep {len(decision.kept)}"
        )
    return decision
