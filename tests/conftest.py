"""Shared fixtures: a small host, a registry and builders for projects and jobs."""

from typing import Optional

import pytest

from config import make_prefs
from host.job import Job, JobState
from host.project import AppVersion, GpuUsage, Project
from host.registry import Registry
from host.resources import GpuClass, ResourceCatalog


@pytest.fixture
def prefs():
    """Preferences with per-tick rotation (no time slice)."""
    return make_prefs(time_slice=0.0)


@pytest.fixture
def cpu_catalog() -> ResourceCatalog:
    return ResourceCatalog(ncpus=1)


@pytest.fixture
def gpu_catalog() -> ResourceCatalog:
    """One CPU and a single non-shareable GPU."""
    return ResourceCatalog(ncpus=1, gpus=(GpuClass("nvidia", 1),))


@pytest.fixture
def registry() -> Registry:
    return Registry()


@pytest.fixture
def add_project(registry):
    """Register a project together with a one-core CPU app version."""

    def _add(project_id: str, share: float = 100.0, **kwargs) -> Project:
        project = Project(project_id=project_id, name=project_id, resource_share=share, **kwargs)
        registry.add_project(project)
        registry.add_app_version(AppVersion(project_id=project_id, app_name="cpu_app", version_num=1))
        return project

    return _add


@pytest.fixture
def add_app(registry):
    def _add(project_id: str, app_name: str, rsc: Optional[str] = None, usage: float = 1.0,
             max_concurrent: int = 0, plan_class: str = "") -> AppVersion:
        if rsc is None:
            av = AppVersion(project_id=project_id, app_name=app_name, version_num=1,
                            plan_class=plan_class, avg_ncpus=usage, max_concurrent=max_concurrent)
        else:
            av = AppVersion(project_id=project_id, app_name=app_name, version_num=1,
                            plan_class=plan_class or rsc, avg_ncpus=0.1,
                            gpu_usage=GpuUsage(rsc, usage), max_concurrent=max_concurrent)
        return registry.add_app_version(av)

    return _add


@pytest.fixture
def add_job(registry):
    """Register a job of a project's app (cpu_app unless an AppVersion is given)."""

    def _add(job_id: str, project_id: str, remaining: float = 3600.0, deadline: float = 1e9,
             state: JobState = JobState.RUNNABLE, av: Optional[AppVersion] = None, **kwargs) -> Job:
        av_id = av.av_id if av is not None else registry.app_versions_for(project_id, "cpu_app")[0].av_id
        job = Job(job_id=job_id, project_id=project_id, app_version_id=av_id,
                  report_deadline=deadline, estimated_cpu_time_remaining=remaining,
                  state=state, **kwargs)
        return registry.add_job(job)

    return _add
