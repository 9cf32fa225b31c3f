"""Tests for workloads.synthetic and workloads.trace_parser."""

import random

import pytest

from config import CPU, make_catalog_cfg
from host.job import JobState
from workloads.synthetic import (
    default_gpu_classes,
    jobs_for_seconds,
    split_shares,
    synthetic_jobs,
    synthetic_projects,
)
from workloads.trace_parser import parse_backlog_csv

BACKLOG_CSV = """job_id,project_id,app_name,report_deadline,estimated_cpu_time_remaining,resource_class,gpu_usage,max_concurrent
j2,a,sim,7200,3600,,,2
j1,a,sim,3600,1800,,,2
g1,b,render,86400,600,nvidia,0.5,
"""


class TestSynthetic:

    def test_projects_and_versions(self):
        projects = synthetic_projects(2, [100, 50], gpu_classes=["nvidia"])

        (p0, v0), (p1, _) = projects
        assert (p0.project_id, p1.project_id) == ("p0", "p1")
        assert p1.resource_share == 50.0
        assert [av.resource_class for av in v0] == [CPU, "nvidia"]
        assert p0.resource_classes == {CPU, "nvidia"}

    def test_share_count_must_match(self):
        with pytest.raises(ValueError):
            synthetic_projects(3, [100, 50])
        with pytest.raises(ValueError):
            split_shares("100,50", 3)
        assert split_shares(None, 2) == [100.0, 100.0]
        assert split_shares("300, 100", 2) == [300.0, 100.0]

    def test_jobs(self):
        (_, versions), = synthetic_projects(1, gpu_classes=["nvidia"])
        gpu = versions[1]

        jobs = synthetic_jobs(gpu, 3, now=100.0, rng=random.Random(1), runtime_mean=1000.0,
                              runtime_std=0.0, deadline_days=1.0, start_index=5)

        assert [j.job_id for j in jobs] == ["p0_nvidia_app_000005", "p0_nvidia_app_000006", "p0_nvidia_app_000007"]
        assert all(j.estimated_cpu_time_remaining == 1000.0 for j in jobs)
        assert all(j.report_deadline == 100.0 + 86400.0 for j in jobs)
        assert all(j.state == JobState.NEW for j in jobs)

    def test_jobs_for_seconds(self):
        (_, versions), = synthetic_projects(1)

        assert jobs_for_seconds(versions[0], 3000.0, 10, runtime_mean=1000.0) == 4
        assert jobs_for_seconds(versions[0], 1e9, 10, runtime_mean=1000.0) == 10
        assert jobs_for_seconds(versions[0], 0.0, 10, runtime_mean=1000.0) == 1

    def test_gpu_classes_from_cfg(self):
        cfg = make_catalog_cfg(gpu_types=[{"name": "nvidia", "count": 1}, {"name": "amd", "count": 0}])
        assert default_gpu_classes(cfg) == ["nvidia"]


class TestBacklogCsv:

    def test_parse(self, tmp_path):
        path = tmp_path / "backlog.csv"
        path.write_text(BACKLOG_CSV)

        versions, jobs = parse_backlog_csv(str(path), now=1000.0)

        assert [j.job_id for j in jobs] == ["j1", "j2", "g1"]
        assert jobs[0].report_deadline == 4600.0
        by_id = {av.av_id: av for av in versions}
        assert len(by_id) == 2
        sim_av = by_id[jobs[0].app_version_id]
        assert sim_av.max_concurrent == 2
        render = by_id[jobs[2].app_version_id]
        assert render.resource_class == "nvidia"
        assert render.usage == 0.5

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "backlog.csv"
        path.write_text("job_id,project_id\nj1,a\n")

        with pytest.raises(ValueError, match="report_deadline"):
            parse_backlog_csv(str(path))
