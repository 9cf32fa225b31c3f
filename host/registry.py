# host/registry.py
"""
In-memory Job & Project Registry.

The registry is mutated only by the tick pipeline. Every scheduling
computation works on a RegistryView, a deep copy taken at the start of the
tick, so decisions are computed against a consistent snapshot and applied
afterwards.
"""
import copy
import logging
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Set

from host.job import BACKLOG_STATES, Job, JobState
from host.project import AppVersion, Project
from host.resources import EPS, ResourceCatalog

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Base class for registry misuse."""


class UnknownEntityError(RegistryError, KeyError):
    pass


class DuplicateEntityError(RegistryError):
    pass


@dataclass
class Validation:
    """Entities excluded from this tick, and jobs that can never run here."""
    excluded_projects: Set[str] = field(default_factory=set)
    excluded_jobs: Set[str] = field(default_factory=set)
    unschedulable: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RegistryView:
    now: float
    projects: Mapping[str, Project]
    app_versions: Mapping[str, AppVersion]
    jobs: Mapping[str, Job]
    excluded_projects: FrozenSet[str] = frozenset()
    excluded_jobs: FrozenSet[str] = frozenset()
    # Elapsed time since the previous tick, and per class/project
    # instance-seconds used by jobs that ran during it
    interval: float = 0.0
    interval_usage: Mapping[str, Mapping[str, float]] = field(default_factory=dict)

    def is_project_usable(self, project_id: str) -> bool:
        project = self.projects.get(project_id)
        return project is not None and project.is_active and project_id not in self.excluded_projects

    def active_projects(self) -> List[Project]:
        return [p for pid, p in sorted(self.projects.items()) if self.is_project_usable(pid)]

    def app_version(self, job: Job) -> AppVersion:
        return self.app_versions[job.app_version_id]

    def resource_class(self, job: Job) -> str:
        return self.app_version(job).resource_class

    def is_job_usable(self, job: Job) -> bool:
        return job.job_id not in self.excluded_jobs and self.is_project_usable(job.project_id)

    def candidates(self) -> List[Job]:
        """Jobs that may be selected to run this tick, in job id order."""
        return [j for _, j in sorted(self.jobs.items()) if j.is_candidate and self.is_job_usable(j)]

    def backlog(self) -> List[Job]:
        """Queued work including jobs whose files are still staging."""
        return [j for _, j in sorted(self.jobs.items()) if j.state in BACKLOG_STATES and self.is_job_usable(j)]

    def app_versions_for(self, project_id: str) -> List[AppVersion]:
        return [av for _, av in sorted(self.app_versions.items()) if av.project_id == project_id]

    def queued_count(self, project_id: str) -> int:
        return sum(1 for j in self.jobs.values() if j.project_id == project_id and j.state in BACKLOG_STATES)

    def app_limits(self) -> Dict[str, int]:
        """max_concurrent per app key; apps without a limit are absent."""
        limits: Dict[str, int] = {}
        for av in self.app_versions.values():
            if av.max_concurrent > 0:
                current = limits.get(av.app_key)
                limits[av.app_key] = av.max_concurrent if current is None else min(current, av.max_concurrent)
        return limits


class Registry:
    def __init__(self):
        self.projects: Dict[str, Project] = {}
        self.app_versions: Dict[str, AppVersion] = {}
        self.jobs: Dict[str, Job] = {}
        self._jobs_by_project: Dict[str, Set[str]] = {}
        self._jobs_by_app_version: Dict[str, Set[str]] = {}

        self.last_tick: Optional[float] = None
        self.interval: float = 0.0
        self.interval_usage: Dict[str, Dict[str, float]] = {}
        self._logged_violations: Set[str] = set()

    # ----- projects -----

    def add_project(self, project: Project) -> Project:
        if project.project_id in self.projects:
            raise DuplicateEntityError(f"Project {project.project_id} already registered")
        self.projects[project.project_id] = project
        self._jobs_by_project[project.project_id] = set()
        return project

    def get_project(self, project_id: str) -> Project:
        try:
            return self.projects[project_id]
        except KeyError:
            raise UnknownEntityError(f"Unknown project {project_id}") from None

    def remove_project(self, project_id: str) -> None:
        """Forget a project with its app versions, jobs and fetch state."""
        self.get_project(project_id)
        for job_id in list(self._jobs_by_project.get(project_id, ())):
            self.remove_job(job_id)
        for av_id in [k for k, av in self.app_versions.items() if av.project_id == project_id]:
            del self.app_versions[av_id]
            self._jobs_by_app_version.pop(av_id, None)
        del self.projects[project_id]
        self._jobs_by_project.pop(project_id, None)
        logger.info(f"Removed project {project_id}")

    # ----- app versions -----

    def add_app_version(self, av: AppVersion) -> AppVersion:
        self.get_project(av.project_id)
        if av.av_id in self.app_versions:
            raise DuplicateEntityError(f"App version {av.av_id} already registered")
        self.app_versions[av.av_id] = av
        self._jobs_by_app_version[av.av_id] = set()
        return av

    def get_app_version(self, av_id: str) -> AppVersion:
        try:
            return self.app_versions[av_id]
        except KeyError:
            raise UnknownEntityError(f"Unknown app version {av_id}") from None

    def app_versions_for(self, project_id: str, app_name: Optional[str] = None) -> List[AppVersion]:
        return [
            av for _, av in sorted(self.app_versions.items())
            if av.project_id == project_id and (app_name is None or av.app_name == app_name)
        ]

    # ----- jobs -----

    def add_job(self, job: Job) -> Job:
        if job.job_id in self.jobs:
            raise DuplicateEntityError(f"Job {job.job_id} already registered")
        self.get_project(job.project_id)
        av = self.get_app_version(job.app_version_id)
        if av.project_id != job.project_id:
            raise RegistryError(f"Job {job.job_id} references app version {av.av_id} of another project")
        self.jobs[job.job_id] = job
        self._jobs_by_project[job.project_id].add(job.job_id)
        self._jobs_by_app_version[job.app_version_id].add(job.job_id)
        return job

    def get_job(self, job_id: str) -> Job:
        try:
            return self.jobs[job_id]
        except KeyError:
            raise UnknownEntityError(f"Unknown job {job_id}") from None

    def remove_job(self, job_id: str) -> None:
        job = self.jobs.pop(job_id, None)
        if job is None:
            raise UnknownEntityError(f"Unknown job {job_id}")
        self._jobs_by_project.get(job.project_id, set()).discard(job_id)
        self._jobs_by_app_version.get(job.app_version_id, set()).discard(job_id)
        self._logged_violations.discard(job_id)

    def jobs_for_project(self, project_id: str) -> List[Job]:
        return [self.jobs[j] for j in sorted(self._jobs_by_project.get(project_id, ()))]

    def jobs_for_app_version(self, av_id: str) -> List[Job]:
        return [self.jobs[j] for j in sorted(self._jobs_by_app_version.get(av_id, ()))]

    def jobs_in_state(self, *states: JobState) -> List[Job]:
        return [j for _, j in sorted(self.jobs.items()) if j.state in states]

    # ----- validation & snapshots -----

    def _violation(self, key: str, message: str) -> None:
        if key in self._logged_violations:
            logger.debug(message)
        else:
            self._logged_violations.add(key)
            logger.error(message)

    def validate(self, catalog: ResourceCatalog) -> Validation:
        """
        Find entities that break registry invariants. They are excluded from
        this tick only; jobs that can never fit on this host are returned as
        unschedulable so the caller can fail them.
        """
        result = Validation()
        for pid, project in self.projects.items():
            share = project.resource_share
            if not isinstance(share, (int, float)) or math.isnan(share) or share < 0:
                self._violation(f"project:{pid}", f"Project {pid} has invalid resource_share {share!r}; excluded this tick")
                result.excluded_projects.add(pid)

        for job_id, job in self.jobs.items():
            if job.is_finished:
                continue
            reason = self._job_violation(job)
            if reason:
                self._violation(job_id, f"Job {job_id} {reason}; excluded this tick")
                result.excluded_jobs.add(job_id)
                continue
            av = self.app_versions[job.app_version_id]
            for rsc, usage in av.demands:
                count = catalog.instance_count(rsc)
                if count == 0:
                    result.unschedulable[job_id] = f"no {rsc} instances on this host"
                elif usage <= EPS or usage > count + EPS:
                    result.unschedulable[job_id] = f"needs {usage:g} {rsc} instances, host has {count}"
                else:
                    continue
                break
        return result

    def _job_violation(self, job: Job) -> Optional[str]:
        if job.project_id not in self.projects:
            return f"references unknown project {job.project_id}"
        av = self.app_versions.get(job.app_version_id)
        if av is None:
            return f"references unknown app version {job.app_version_id}"
        if av.project_id != job.project_id:
            return "belongs to a different project than its app version"
        remaining = job.estimated_cpu_time_remaining
        if not isinstance(remaining, (int, float)) or math.isnan(remaining) or remaining < 0:
            return f"has invalid remaining time {remaining!r}"
        if not isinstance(job.report_deadline, (int, float)) or math.isnan(job.report_deadline):
            return f"has invalid deadline {job.report_deadline!r}"
        if not isinstance(job.state, JobState):
            return f"has unknown state {job.state!r}"
        return None

    def snapshot(self, now: float, validation: Optional[Validation] = None) -> RegistryView:
        validation = validation or Validation()
        return RegistryView(
            now=now,
            projects=MappingProxyType(copy.deepcopy(self.projects)),
            app_versions=MappingProxyType(copy.deepcopy(self.app_versions)),
            jobs=MappingProxyType(copy.deepcopy(self.jobs)),
            excluded_projects=frozenset(validation.excluded_projects),
            excluded_jobs=frozenset(validation.excluded_jobs | set(validation.unschedulable)),
            interval=self.interval,
            interval_usage=MappingProxyType(copy.deepcopy(self.interval_usage)),
        )

    def charge_elapsed(self, now: float, stopped_at: Optional[Mapping[str, float]] = None) -> None:
        """
        Charge the time since the previous tick to jobs that were running,
        and record per-project usage for debt accounting. A job listed in
        stopped_at is charged only up to the time it completed or crashed.
        """
        stopped_at = stopped_at or {}
        if self.last_tick is None or now <= self.last_tick:
            self.interval = 0.0
            self.interval_usage = {}
            if self.last_tick is None:
                self.last_tick = now
            return

        dt = now - self.last_tick
        usage: Dict[str, Dict[str, float]] = {}
        for job in self.jobs_in_state(JobState.RUNNING):
            av = self.app_versions.get(job.app_version_id)
            if av is None:
                continue
            ran = min(dt, max(0.0, stopped_at.get(job.job_id, now) - self.last_tick))
            amount = ran * av.usage
            job.current_cpu_time += amount
            job.estimated_cpu_time_remaining = max(0.0, job.estimated_cpu_time_remaining - amount)
            per_rsc = usage.setdefault(av.resource_class, {})
            per_rsc[job.project_id] = per_rsc.get(job.project_id, 0.0) + amount

        self.interval = dt
        self.interval_usage = usage
        self.last_tick = now
