# schedulers/work_fetch.py
"""
Work-fetch policy.

For every enabled resource class, ask at most one project for more work
when the simulator reports shortfall or the class has nothing to run at
all. Failed fetches put the (project, class) pair into exponential backoff.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from config import Preferences
from host.project import FetchBackoff, FetchState, Project
from host.registry import RegistryView
from host.resources import ResourceCatalog
from schedulers.rr_sim import SimResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchRequest:
    project_id: str
    resource_class: str
    seconds: float
    instances: int
    starving: bool = False


def can_supply(view: RegistryView, project: Project, rsc: str) -> bool:
    if project.anonymous_platform or rsc in project.resource_classes:
        return True
    return any(av.resource_class == rsc for av in view.app_versions_for(project.project_id))


def eligible_projects(view: RegistryView, prefs: Preferences, sim: SimResult,
                      rsc: str, starving: bool) -> List[Project]:
    now = view.now
    eligible = []
    for project in view.active_projects():
        pid = project.project_id
        if project.dont_request_more_work or project.min_rpc_time > now:
            continue
        backoff = project.fetch.get(rsc)
        if backoff is not None and backoff.state_at(now) != FetchState.ELIGIBLE:
            continue
        if not can_supply(view, project, rsc):
            continue
        if project.resource_share <= 0 and not starving:
            continue
        if sim.misses_for(pid, rsc) and not starving:
            continue
        if view.queued_count(pid) >= prefs.max_queued_jobs:
            continue
        eligible.append(project)
    return eligible


def pick_project(projects: List[Project], rsc: str,
                 debt: Optional[Dict[str, Dict[str, float]]] = None) -> Optional[Project]:
    """Most-owed project first; without positive debt, least recent usage per share."""
    if not projects:
        return None

    def debt_of(p: Project) -> float:
        if debt is not None and p.project_id in debt:
            return debt[p.project_id].get(rsc, 0.0)
        return p.debt_for(rsc)

    owed = [p for p in projects if debt_of(p) > 0]
    if owed:
        return min(owed, key=lambda p: (-debt_of(p), p.project_id))

    def normalized_usage(p: Project) -> float:
        share = p.resource_share if p.resource_share > 0 else 1e-9
        return p.recent_usage.get(rsc, 0.0) / share

    return min(projects, key=lambda p: (normalized_usage(p), p.project_id))


def choose_fetch(view: RegistryView, catalog: ResourceCatalog, prefs: Preferences, sim: SimResult,
                 debt: Optional[Dict[str, Dict[str, float]]] = None) -> List[FetchRequest]:
    requests = []
    for rsc in catalog.resource_classes():
        if not prefs.resource_enabled(rsc) or catalog.instance_count(rsc) == 0:
            continue
        proj = sim.resources.get(rsc)
        if proj is None:
            continue
        starving = proj.nrunnable == 0
        if proj.shortfall <= 0 and not starving:
            continue

        project = pick_project(eligible_projects(view, prefs, sim, rsc, starving), rsc, debt)
        if project is None:
            logger.debug(f"No eligible project to fetch {rsc} work from")
            continue
        seconds = proj.shortfall if proj.shortfall > 0 else proj.instances * sim.horizon
        requests.append(FetchRequest(
            project_id=project.project_id,
            resource_class=rsc,
            seconds=seconds,
            instances=proj.idle_instances_now,
            starving=starving,
        ))
    return requests


def expired_requests(projects: Mapping[str, Project], now: float,
                     prefs: Preferences) -> List[Tuple[str, str]]:
    """(project_id, class) pairs whose request has been pending too long."""
    expired = []
    for pid, project in sorted(projects.items()):
        for rsc, backoff in sorted(project.fetch.items()):
            if (backoff.state == FetchState.PENDING and backoff.requested_at is not None
                    and now - backoff.requested_at >= prefs.fetch_timeout):
                expired.append((pid, rsc))
    return expired


def record_failure(backoff: FetchBackoff, now: float, prefs: Preferences,
                   project_id: str, rsc: str, reason: str) -> float:
    interval = backoff.mark_failure(now, prefs.backoff_base, prefs.backoff_max)
    logger.warning(
        f"Fetch of {rsc} work from {project_id} failed ({reason}); "
        f"backing off {interval:.0f}s after {backoff.consecutive_failures} failure(s)"
    )
    return interval
