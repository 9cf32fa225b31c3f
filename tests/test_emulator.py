"""End-to-end runs of HostClient inside the SimPy emulator."""

import random

import pytest

from config import make_prefs
from host.emulator import EmulatedHost, EmulatedProjectServer
from host.resources import GpuClass, ResourceCatalog
from workloads.synthetic import synthetic_projects

SHORT_JOBS = {"runtime_mean": 600.0, "runtime_std": 60.0, "deadline_days": 1.0}


def _servers(shares, gpu_classes=(), seed=0, **kwargs):
    rng = random.Random(seed)
    return [
        EmulatedProjectServer(project, versions, rng=rng, workload=dict(SHORT_JOBS), **kwargs)
        for project, versions in synthetic_projects(len(shares), shares, gpu_classes)
    ]


@pytest.fixture
def short_prefs():
    return make_prefs(time_slice=0.0, work_buf_days=0.05, tick_interval=60.0)


def test_jobs_flow_through_the_host(short_prefs):
    host = EmulatedHost(ResourceCatalog(ncpus=2), short_prefs, _servers([100.0, 100.0], down_prob=0.0),
                        fetch_latency=5.0, staging_delay=30.0)

    host.run(until=4 * 3600.0)

    reported = [r for s in host.servers.values() for r in s.reported]
    assert len(reported) > 10
    assert all(state == "done" for _, state, _ in reported)
    assert not any(late for _, _, late in reported)
    assert host.tick_log
    assert {row["project_id"] for row in host.tick_log} == {"p0", "p1"}


def test_cpu_usage_follows_shares(short_prefs):
    host = EmulatedHost(ResourceCatalog(ncpus=1), short_prefs, _servers([300.0, 100.0], down_prob=0.0))

    host.run(until=24 * 3600.0)

    used = {"p0": 0.0, "p1": 0.0}
    for row in host.tick_log:
        used[row["project_id"]] += row["used"]
    frac = used["p0"] / (used["p0"] + used["p1"])
    assert frac == pytest.approx(0.75, abs=0.1)


def test_gpu_work_is_fetched_separately(short_prefs):
    catalog = ResourceCatalog(ncpus=2, gpus=(GpuClass("nvidia", 1),))
    host = EmulatedHost(catalog, short_prefs, _servers([100.0], gpu_classes=("nvidia",), down_prob=0.0))

    host.run(until=2 * 3600.0)

    gpu_rows = [r for r in host.tick_log if r["resource_class"] == "nvidia" and r["used"] > 0]
    cpu_rows = [r for r in host.tick_log if r["resource_class"] == "cpu" and r["used"] > 0]
    assert gpu_rows and cpu_rows


def test_unreachable_server_backs_off(short_prefs):
    host = EmulatedHost(ResourceCatalog(ncpus=1), short_prefs, _servers([100.0], down_prob=1.0))

    host.run(until=600.0)

    backoff = host.client.registry.projects["p0"].fetch["cpu"]
    assert backoff.consecutive_failures >= 2
    assert host.client.registry.jobs == {}


def test_crashing_jobs_end_in_error(short_prefs):
    servers = _servers([100.0], down_prob=0.0, work_available=2)
    host = EmulatedHost(ResourceCatalog(ncpus=1), short_prefs, servers, crash_prob=1.0)

    host.run(until=3600.0)

    states = [state for _, state, _ in servers[0].reported]
    assert states == ["error", "error"]
    assert host.starts == 2 * short_prefs.crash_loop_threshold
