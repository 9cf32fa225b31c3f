# host/client.py
"""
The tick pipeline of the client.

HostClient owns the Registry and runs one scheduling tick at a time:

    charge elapsed run time -> ingest queued events -> promote staged jobs
    -> validate -> snapshot -> simulate -> schedule -> choose fetches
    -> apply decisions -> report finished jobs -> publish status

Collaborator callbacks may arrive from other threads between ticks; they
only append to an event queue, so the registry keeps a single writer.
"""
import copy
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from config import Preferences, make_prefs
from host.app_config import AppConfigs, apply_app_config, check_app_configs, clear_app_config
from host.collaborators import AlwaysReady, FetchReply, Staging, Supervisor, Transport
from host.job import JobState, PriorityClass, SchedulerState
from host.project import AppVersion, FetchState, Project
from host.registry import Registry, RegistryError, RegistryView, Validation
from host.resources import ResourceCatalog
from schedulers.cpu_sched import ScheduleDecision, schedule
from schedulers.rr_sim import SimResult, simulate
from schedulers.work_fetch import FetchRequest, choose_fetch, expired_requests, record_failure

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    now: float
    sim: SimResult
    decision: ScheduleDecision
    fetch_requests: List[FetchRequest] = field(default_factory=list)
    errored: List[str] = field(default_factory=list)
    reported: List[str] = field(default_factory=list)


class HostClient:
    def __init__(
        self,
        catalog: ResourceCatalog,
        prefs: Optional[Preferences] = None,
        transport: Optional[Transport] = None,
        supervisor: Optional[Supervisor] = None,
        staging: Optional[Staging] = None,
        registry: Optional[Registry] = None,
    ):
        self.registry = registry or Registry()
        self.transport = transport
        self.supervisor = supervisor
        self.staging = staging or AlwaysReady()
        self._base_catalog = catalog
        self._prefs = prefs or make_prefs()

        self._lock = threading.Lock()
        self._events: Deque[Tuple[str, tuple]] = deque()
        self._stopped_at: Dict[str, float] = {}
        self._app_configs: Dict[str, AppConfigs] = {}
        self._pending_prefs: Optional[Preferences] = None
        self._pending_catalog: Optional[ResourceCatalog] = None
        self._status: Dict[str, Any] = {"time": None, "jobs": [], "projects": [], "resources": []}
        self.last_result: Optional[TickResult] = None

    # ----- configuration -----

    @property
    def prefs(self) -> Preferences:
        return self._prefs

    @property
    def catalog(self) -> ResourceCatalog:
        return self._base_catalog.with_exclusion(self._prefs.gpu_exclusion)

    def update_prefs(self, prefs: Preferences) -> None:
        """Takes effect at the start of the next tick."""
        with self._lock:
            self._pending_prefs = prefs

    def update_catalog(self, catalog: ResourceCatalog) -> None:
        with self._lock:
            self._pending_catalog = catalog

    # ----- registry setup (between ticks) -----

    def attach_project(self, project: Project, app_versions: Tuple[AppVersion, ...] = ()) -> Project:
        self.registry.add_project(project)
        for av in app_versions:
            self.registry.add_app_version(av)
        logger.info(f"Attached project {project.project_id} (share {project.resource_share:g})")
        return project

    def detach_project(self, project_id: str) -> None:
        for job in self.registry.jobs_for_project(project_id):
            if job.state == JobState.RUNNING or job.scheduler_state == SchedulerState.PREEMPTED:
                self._call_supervisor("kill", job.job_id)
        self.registry.remove_project(project_id)
        self._app_configs.pop(project_id, None)

    def set_app_config(self, project_id: str, configs: Optional[AppConfigs]) -> List[str]:
        """
        Apply (or with None, clear) a project's app config overrides. They are
        kept and applied again to app versions that arrive with new work.
        """
        self.registry.get_project(project_id)
        if configs is None:
            self._app_configs.pop(project_id, None)
            clear_app_config(self.registry, project_id)
            return []
        self._app_configs[project_id] = configs
        return apply_app_config(self.registry, project_id, configs)

    def read_app_configs(self, project_dirs: Dict[str, str]) -> List[str]:
        """Pick up app config files from project directories; returns user warnings."""
        warnings = []
        for project_id, configs in check_app_configs(project_dirs).items():
            if project_id in self.registry.projects:
                warnings.extend(self.set_app_config(project_id, configs))
        return warnings

    # ----- collaborator callbacks (any thread) -----

    def _enqueue(self, kind: str, *args) -> None:
        with self._lock:
            self._events.append((kind, args))

    def _enqueue_exit(self, kind: str, job_id: str, at: Optional[float], *args) -> None:
        with self._lock:
            if at is not None:
                self._stopped_at[job_id] = at
            self._events.append((kind, (job_id,) + args))

    def on_completed(self, job_id: str, success: bool = True, message: Optional[str] = None,
                     at: Optional[float] = None) -> None:
        """`at` is when the process exited, if the supervisor knows it."""
        self._enqueue_exit("completed", job_id, at, success, message)

    def on_crashed(self, job_id: str, at: Optional[float] = None) -> None:
        self._enqueue_exit("crashed", job_id, at)

    def on_progress(self, job_id: str, cpu_time: float, remaining: float) -> None:
        self._enqueue("progress", job_id, cpu_time, remaining)

    def deliver_fetch_reply(self, reply: FetchReply) -> None:
        self._enqueue("fetch_reply", reply)

    # ----- read-only status -----

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._status)

    # ----- tick -----

    def tick(self, now: float) -> TickResult:
        self._apply_config_updates()
        events, stopped_at = self._take_events()
        self.registry.charge_elapsed(now, stopped_at)
        self._apply_events(events, now)
        self._expire_fetches(now)
        self._promote_staged()

        catalog = self.catalog
        prefs = self._prefs
        validation = self.registry.validate(catalog)
        errored = self._fail_unschedulable(validation)

        view = self.registry.snapshot(now, validation)
        sim = simulate(view, catalog, prefs)
        decision = schedule(view, catalog, prefs, sim)
        requests = choose_fetch(view, catalog, prefs, sim, decision.debt)

        self._apply(decision, now)
        self._dispatch_fetches(requests, now)
        reported = self._report_finished()

        result = TickResult(now=now, sim=sim, decision=decision, fetch_requests=requests,
                            errored=errored, reported=reported)
        self._publish(view, result)
        self.last_result = result
        return result

    def _apply_config_updates(self) -> None:
        with self._lock:
            prefs, self._pending_prefs = self._pending_prefs, None
            catalog, self._pending_catalog = self._pending_catalog, None
        if prefs is not None:
            self._prefs = prefs
            logger.info("Preferences updated")
        if catalog is not None:
            self._base_catalog = catalog
            logger.info(f"Resource catalog updated: {catalog.ncpus} CPUs, {len(catalog.gpus)} GPU class(es)")

    def _take_events(self) -> Tuple[List[Tuple[str, tuple]], Dict[str, float]]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
            stopped_at, self._stopped_at = self._stopped_at, {}
        return events, stopped_at

    def _apply_events(self, events: List[Tuple[str, tuple]], now: float) -> None:
        handlers: Dict[str, Callable] = {
            "completed": self._handle_completed,
            "crashed": self._handle_crashed,
            "progress": self._handle_progress,
            "fetch_reply": lambda reply: self._handle_fetch_reply(reply, now),
        }
        for kind, args in events:
            try:
                handlers[kind](*args)
            except Exception:
                logger.exception(f"Failed to apply {kind} event {args!r}")

    def _handle_completed(self, job_id: str, success: bool, message: Optional[str]) -> None:
        job = self.registry.jobs.get(job_id)
        if job is None or job.is_finished:
            logger.info(f"Ignoring completion of unknown or finished job {job_id}")
            return
        if success:
            job.state = JobState.DONE
            job.estimated_cpu_time_remaining = 0.0
            job.run_started_at = None
            logger.info(f"Job {job_id} completed")
        else:
            job.mark_error(message or "computation error")
            logger.warning(f"Job {job_id} failed: {job.error_message}")

    def _handle_crashed(self, job_id: str) -> None:
        job = self.registry.jobs.get(job_id)
        if job is None or job.is_finished:
            return
        job.crash_count += 1
        if job.crash_count >= self._prefs.crash_loop_threshold:
            job.mark_error(f"crashed {job.crash_count} times")
            logger.error(f"Job {job_id} crashed {job.crash_count} times; giving up")
            return
        job.state = JobState.RUNNABLE
        job.scheduler_state = SchedulerState.UNINITIALIZED
        job.run_started_at = None
        logger.warning(f"Job {job_id} crashed ({job.crash_count}/{self._prefs.crash_loop_threshold})")

    def _handle_progress(self, job_id: str, cpu_time: float, remaining: float) -> None:
        job = self.registry.jobs.get(job_id)
        if job is None or job.is_finished:
            return
        if cpu_time < 0 or remaining < 0:
            logger.warning(f"Ignoring bogus progress for {job_id}: cpu={cpu_time}, remaining={remaining}")
            return
        job.current_cpu_time = cpu_time
        job.estimated_cpu_time_remaining = remaining

    def _handle_fetch_reply(self, reply: FetchReply, now: float) -> None:
        project = self.registry.projects.get(reply.project_id)
        if project is None:
            logger.info(f"Dropping fetch reply from removed project {reply.project_id}")
            return
        backoff = project.fetch_state(reply.resource_class)
        if reply.backoff_hint:
            project.min_rpc_time = max(project.min_rpc_time, now + reply.backoff_hint)

        new_versions = 0
        for av in reply.app_versions:
            if av.av_id in self.registry.app_versions:
                continue
            try:
                self.registry.add_app_version(av)
                new_versions += 1
            except RegistryError as e:
                logger.warning(f"Rejecting app version {av.av_id} from {reply.project_id}: {e}")
        configs = self._app_configs.get(reply.project_id)
        if new_versions and configs is not None:
            apply_app_config(self.registry, reply.project_id, configs, show_warnings=False)
        added = 0
        for job in reply.jobs:
            try:
                job.state = JobState.NEW
                job.received_time = now
                self.registry.add_job(job)
                added += 1
            except RegistryError as e:
                logger.warning(f"Rejecting job {job.job_id} from {reply.project_id}: {e}")

        if reply.error is not None:
            record_failure(backoff, now, self._prefs, reply.project_id, reply.resource_class, reply.error)
        elif added == 0:
            record_failure(backoff, now, self._prefs, reply.project_id, reply.resource_class, "no work")
        else:
            backoff.mark_success()
            project.resource_classes.add(reply.resource_class)
            logger.info(f"Got {added} {reply.resource_class} job(s) from {reply.project_id}")

    def _expire_fetches(self, now: float) -> None:
        for pid, rsc in expired_requests(self.registry.projects, now, self._prefs):
            backoff = self.registry.projects[pid].fetch_state(rsc)
            record_failure(backoff, now, self._prefs, pid, rsc, "timed out")

    def _promote_staged(self) -> None:
        for job in self.registry.jobs_in_state(JobState.NEW):
            try:
                ready = self.staging.is_ready(job.job_id)
            except Exception:
                logger.exception(f"Staging check failed for {job.job_id}")
                continue
            if ready:
                job.state = JobState.RUNNABLE

    def _fail_unschedulable(self, validation: Validation) -> List[str]:
        errored = []
        for job_id, reason in sorted(validation.unschedulable.items()):
            job = self.registry.jobs[job_id]
            was_running = job.state == JobState.RUNNING or job.scheduler_state == SchedulerState.PREEMPTED
            job.mark_error(f"unschedulable: {reason}")
            logger.error(f"Job {job_id} is unschedulable ({reason}); marked as error")
            if was_running:
                self._call_supervisor("kill", job_id)
            errored.append(job_id)
        return errored

    # ----- apply -----

    def _apply(self, decision: ScheduleDecision, now: float) -> None:
        for pid, debt in decision.debt.items():
            project = self.registry.projects.get(pid)
            if project is not None:
                project.debt = debt
                project.recent_usage = decision.recent_usage.get(pid, {})

        for job_id in decision.to_preempt:
            job = self.registry.jobs.get(job_id)
            if job is None or job.state != JobState.RUNNING:
                continue
            job.state = JobState.PREEMPTED
            job.scheduler_state = SchedulerState.PREEMPTED
            job.run_started_at = None
            if job_id in decision.resume_first:
                job.priority_class = PriorityClass.HIGH
            self._call_supervisor("suspend", job_id)

        for job_id in decision.to_start:
            job = self.registry.jobs.get(job_id)
            if job is None or not job.is_candidate:
                continue
            resume = job.scheduler_state == SchedulerState.PREEMPTED
            job.state = JobState.RUNNING
            job.scheduler_state = SchedulerState.SCHEDULED
            job.priority_class = PriorityClass.NORMAL
            job.run_started_at = now
            self._call_supervisor("resume" if resume else "start", job_id)

    def _call_supervisor(self, action: str, job_id: str) -> None:
        if self.supervisor is None:
            return
        try:
            getattr(self.supervisor, action)(job_id)
        except Exception:
            logger.exception(f"Supervisor failed to {action} job {job_id}")

    def _dispatch_fetches(self, requests: List[FetchRequest], now: float) -> None:
        if self.transport is None:
            return
        for request in requests:
            project = self.registry.projects[request.project_id]
            backoff = project.fetch_state(request.resource_class)
            backoff.mark_requested(now)
            logger.info(
                f"Requesting {request.seconds:.0f}s of {request.resource_class} work "
                f"from {request.project_id}{' (idle)' if request.starving else ''}"
            )
            try:
                reply = self.transport.fetch_work(request.project_id, request.resource_class, request.seconds)
            except Exception as e:
                record_failure(backoff, now, self._prefs, request.project_id, request.resource_class, str(e))
                continue
            if reply is not None:
                self.deliver_fetch_reply(reply)

    def _report_finished(self) -> List[str]:
        if self.transport is None:
            return []
        reported = []
        for job in self.registry.jobs_in_state(JobState.DONE, JobState.ERROR):
            try:
                acked = self.transport.report_completed(job.job_id)
            except Exception:
                logger.exception(f"Reporting job {job.job_id} failed")
                continue
            if acked:
                job.reported = True
                self.registry.remove_job(job.job_id)
                reported.append(job.job_id)
            else:
                logger.warning(f"Report of job {job.job_id} not acknowledged; will retry")
        return reported

    # ----- status -----

    def _publish(self, view: RegistryView, result: TickResult) -> None:
        now = result.now
        sim = result.sim
        jobs = []
        for job_id, job in sorted(self.registry.jobs.items()):
            completion = sim.completion.get(job_id)
            jobs.append({
                "job_id": job_id,
                "project_id": job.project_id,
                "app_version_id": job.app_version_id,
                "state": job.state.value,
                "priority_class": job.priority_class.value,
                "scheduler_state": job.scheduler_state.value,
                "report_deadline": job.report_deadline,
                "current_cpu_time": job.current_cpu_time,
                "estimated_cpu_time_remaining": job.estimated_cpu_time_remaining,
                "estimated_completion": completion,
                "deadline_miss": sim.will_miss(job_id),
                "crash_count": job.crash_count,
                "error_message": job.error_message,
            })

        projects = []
        for pid, project in sorted(self.registry.projects.items()):
            projects.append({
                "project_id": pid,
                "name": project.name,
                "resource_share": project.resource_share,
                "suspended": project.suspended,
                "detached": project.detached,
                "excluded": pid in view.excluded_projects,
                "min_rpc_time": project.min_rpc_time,
                "debt": dict(project.debt),
                "recent_usage": dict(project.recent_usage),
                "deadline_misses": dict(sim.project_misses.get(pid, {})),
                "backoff": {
                    rsc: {
                        "state": state.state_at(now).value,
                        "backoff_until": state.backoff_until,
                        "consecutive_failures": state.consecutive_failures,
                    }
                    for rsc, state in sorted(project.fetch.items())
                },
            })

        resources = []
        for rsc, proj in sim.resources.items():
            allocated = result.decision.allocated.get(rsc, 0.0)
            resources.append({
                "resource_class": rsc,
                "instances": proj.instances,
                "shortfall": proj.shortfall,
                "busy_time": proj.busy_time,
                "saturated_time": proj.saturated_time,
                "allocated": allocated,
                "utilization": allocated / proj.instances if proj.instances else 0.0,
                "idle_instances": result.decision.idle_instances.get(rsc, proj.instances),
                "nrunnable": proj.nrunnable,
                "starving": proj.nrunnable == 0,
                "fetch_pending": any(
                    p.fetch.get(rsc) is not None and p.fetch[rsc].state == FetchState.PENDING
                    for p in self.registry.projects.values()
                ),
            })

        status = {"time": now, "jobs": jobs, "projects": projects, "resources": resources}
        with self._lock:
            self._status = status
