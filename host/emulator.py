# host/emulator.py
"""
SimPy-backed emulation of the collaborators around HostClient.

Job processes, project servers and file downloads all run on one SimPy
clock, and a ticker process calls HostClient.tick() every tick_interval.
"""
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import simpy

from config import DRIVER, Preferences
from host.client import HostClient, TickResult
from host.collaborators import FetchReply
from host.job import JobState
from host.project import AppVersion, Project
from host.resources import ResourceCatalog
from workloads.synthetic import jobs_for_seconds, synthetic_jobs

logger = logging.getLogger(__name__)


@dataclass
class EmulatedProjectServer:
    project: Project
    app_versions: List[AppVersion]
    rng: random.Random
    down_prob: float = DRIVER["server_down_prob"]
    jobs_per_fetch: int = DRIVER["jobs_per_fetch"]
    # None means the project never runs out of work
    work_available: Optional[int] = None
    workload: Dict = field(default_factory=dict)

    _issued: int = field(default=0, init=False, repr=False)
    reported: List[Tuple[str, str, bool]] = field(default_factory=list, init=False, repr=False)

    def make_reply(self, now: float, rsc: str, seconds: float) -> FetchReply:
        pid = self.project.project_id
        if self.rng.random() < self.down_prob:
            return FetchReply(pid, rsc, error="project server unreachable")
        versions = [av for av in self.app_versions if av.resource_class == rsc]
        if not versions:
            return FetchReply(pid, rsc)
        av = versions[0]
        n = jobs_for_seconds(av, seconds, self.jobs_per_fetch, **self.workload)
        if self.work_available is not None:
            n = min(n, self.work_available - self._issued)
        if n <= 0:
            return FetchReply(pid, rsc)
        jobs = synthetic_jobs(av, n, now, rng=self.rng, id_prefix=f"{pid}_{rsc}",
                              start_index=self._issued, **self.workload)
        self._issued += n
        return FetchReply(pid, rsc, jobs=jobs, app_versions=[av])


class EmulatedHost:
    """Transport, supervisor and staging for a HostClient, on a SimPy clock."""

    def __init__(
        self,
        catalog: ResourceCatalog,
        prefs: Preferences,
        servers: List[EmulatedProjectServer],
        seed: int = DRIVER["seed"],
        fetch_latency: float = DRIVER["fetch_latency"],
        staging_delay: float = DRIVER["staging_delay"],
        crash_prob: float = DRIVER["crash_prob"],
    ):
        self.env = simpy.Environment()
        self.rng = random.Random(seed)
        self.fetch_latency = fetch_latency
        self.staging_delay = staging_delay
        self.crash_prob = crash_prob
        self.servers = {s.project.project_id: s for s in servers}
        self.client = HostClient(catalog, prefs, transport=self, supervisor=self, staging=self)
        for server in servers:
            self.client.attach_project(server.project, tuple(server.app_versions))

        self._procs: Dict[str, simpy.Process] = {}
        self._ready_at: Dict[str, float] = {}
        self.tick_log: List[Dict] = []
        self.starts = 0
        self.preemptions = 0
        self._ticker_started = False

    # ----- Transport -----

    def fetch_work(self, project_id: str, resource_class: str, seconds: float) -> Optional[FetchReply]:
        self.env.process(self._deliver(project_id, resource_class, seconds))
        return None

    def _deliver(self, project_id: str, rsc: str, seconds: float):
        yield self.env.timeout(self.fetch_latency)
        reply = self.servers[project_id].make_reply(self.env.now, rsc, seconds)
        for job in reply.jobs:
            self._ready_at[job.job_id] = self.env.now + self.staging_delay
        self.client.deliver_fetch_reply(reply)

    def report_completed(self, job_id: str) -> bool:
        job = self.client.registry.get_job(job_id)
        late = self.env.now > job.report_deadline
        self.servers[job.project_id].reported.append((job_id, job.state.value, late))
        self._ready_at.pop(job_id, None)
        return True

    # ----- Staging -----

    def is_ready(self, job_id: str) -> bool:
        return self.env.now >= self._ready_at.get(job_id, 0.0)

    # ----- Supervisor -----

    def start(self, job_id: str) -> None:
        self.starts += 1
        self._procs[job_id] = self.env.process(self._run_job(job_id))

    def resume(self, job_id: str) -> None:
        self.start(job_id)

    def suspend(self, job_id: str) -> None:
        self.preemptions += 1
        self._stop(job_id)

    def kill(self, job_id: str) -> None:
        self._stop(job_id)

    def _stop(self, job_id: str) -> None:
        proc = self._procs.pop(job_id, None)
        if proc is not None and proc.is_alive:
            proc.interrupt()

    def _run_job(self, job_id: str):
        """A SimPy process that runs a job until it completes, crashes or is stopped."""
        registry = self.client.registry
        job = registry.get_job(job_id)
        av = registry.get_app_version(job.app_version_id)
        wall = job.estimated_cpu_time_remaining / av.usage
        try:
            if self.rng.random() < self.crash_prob:
                yield self.env.timeout(min(wall, 1.0))
                self._procs.pop(job_id, None)
                logger.debug(f"Emulated crash of job {job_id} at t={self.env.now:.0f}")
                self.client.on_crashed(job_id, at=self.env.now)
                return
            yield self.env.timeout(wall)
            self._procs.pop(job_id, None)
            self.client.on_completed(job_id, True, at=self.env.now)
        except simpy.Interrupt:
            pass

    # ----- ticking -----

    def _ticker(self):
        while True:
            result = self.client.tick(self.env.now)
            self._record(result)
            yield self.env.timeout(self.client.prefs.tick_interval)

    def _record(self, result: TickResult) -> None:
        registry = self.client.registry
        used: Dict[Tuple[str, str], float] = {}
        for job_id in result.decision.run_set:
            job = registry.jobs.get(job_id)
            if job is None or job.state != JobState.RUNNING:
                continue
            av = registry.app_versions[job.app_version_id]
            key = (job.project_id, av.resource_class)
            used[key] = used.get(key, 0.0) + av.usage

        for rsc, proj in result.sim.resources.items():
            for pid, project in sorted(registry.projects.items()):
                backoff = project.fetch.get(rsc)
                self.tick_log.append({
                    "time": result.now,
                    "resource_class": rsc,
                    "project_id": pid,
                    "used": used.get((pid, rsc), 0.0),
                    "debt": project.debt_for(rsc),
                    "shortfall": proj.shortfall,
                    "backoff_state": backoff.state_at(result.now).value if backoff else "eligible",
                    "queued": len(registry.jobs_for_project(pid)),
                    "fetched": any(r.project_id == pid and r.resource_class == rsc
                                   for r in result.fetch_requests),
                })

    def run(self, until: float) -> None:
        """Advance the emulation clock to `until`; may be called repeatedly."""
        if not self._ticker_started:
            self.env.process(self._ticker())
            self._ticker_started = True
        self.env.run(until=until)
