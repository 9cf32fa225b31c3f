"""Tests for host.client: the tick pipeline against fake collaborators."""

from collections import deque

import pytest

from config import make_prefs
from host.app_config import APP_CONFIG_FILE_NAME, AppConfig, AppConfigs
from host.client import HostClient
from host.collaborators import FetchReply
from host.job import Job, JobState, PriorityClass
from host.project import AppVersion, FetchState, GpuUsage
from host.resources import ResourceCatalog

FAR = 1e12


class FakeSupervisor:
    def __init__(self):
        self.calls = []

    def start(self, job_id):
        self.calls.append(("start", job_id))

    def suspend(self, job_id):
        self.calls.append(("suspend", job_id))

    def resume(self, job_id):
        self.calls.append(("resume", job_id))

    def kill(self, job_id):
        self.calls.append(("kill", job_id))


class FakeTransport:
    """Answers fetches from a queue of canned replies; None means 'reply later'."""

    def __init__(self, replies=()):
        self.replies = deque(replies)
        self.requests = []
        self.reported = []
        self.ack = True

    def fetch_work(self, project_id, resource_class, seconds):
        self.requests.append((project_id, resource_class, seconds))
        return self.replies.popleft() if self.replies else None

    def report_completed(self, job_id):
        self.reported.append(job_id)
        return self.ack


def _new_job(registry, job_id, project_id="a", remaining=3600.0, deadline=FAR):
    av_id = registry.app_versions_for(project_id, "cpu_app")[0].av_id
    return Job(job_id, project_id, av_id, report_deadline=deadline, estimated_cpu_time_remaining=remaining)


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def client(registry, cpu_catalog, prefs, supervisor, transport):
    return HostClient(cpu_catalog, prefs, transport=transport, supervisor=supervisor, registry=registry)


class TestFetchCycle:

    def test_starving_host_fetches_and_runs_new_work(self, registry, add_project, client, transport, supervisor):
        add_project("a")
        transport.replies.append(FetchReply("a", "cpu", jobs=[_new_job(registry, "j1"), _new_job(registry, "j2")]))

        first = client.tick(0.0)
        assert [(r.project_id, r.resource_class) for r in first.fetch_requests] == [("a", "cpu")]
        assert transport.requests[0][:2] == ("a", "cpu")
        assert registry.projects["a"].fetch["cpu"].state == FetchState.PENDING

        second = client.tick(60.0)
        assert second.decision.to_start == ["j1"]
        assert supervisor.calls == [("start", "j1")]
        assert registry.jobs["j1"].state == JobState.RUNNING
        assert registry.jobs["j2"].state == JobState.RUNNABLE
        assert registry.jobs["j2"].received_time == 60.0
        assert registry.projects["a"].fetch["cpu"].consecutive_failures == 0

    def test_empty_reply_backs_off(self, registry, add_project, client, transport):
        add_project("a")
        transport.replies.append(FetchReply("a", "cpu"))

        client.tick(0.0)
        client.tick(60.0)

        backoff = registry.projects["a"].fetch["cpu"]
        assert backoff.state == FetchState.BACKOFF
        assert backoff.backoff_until == 60.0 + client.prefs.backoff_base

    def test_error_reply_and_backoff_hint(self, registry, add_project, client, transport):
        add_project("a")
        transport.replies.append(FetchReply("a", "cpu", error="server down", backoff_hint=3600.0))

        client.tick(0.0)
        result = client.tick(60.0)

        assert registry.projects["a"].min_rpc_time == 3660.0
        assert registry.projects["a"].fetch["cpu"].consecutive_failures == 1
        assert result.fetch_requests == []

    def test_transport_exception_counts_as_failure(self, registry, add_project, client, transport):
        add_project("a")

        def broken(*args):
            raise ConnectionError("unreachable")

        transport.fetch_work = broken
        client.tick(0.0)

        assert registry.projects["a"].fetch["cpu"].state == FetchState.BACKOFF

    def test_late_reply_after_timeout_is_applied(self, registry, add_project, client, transport):
        add_project("a")

        client.tick(0.0)
        client.tick(client.prefs.fetch_timeout)
        backoff = registry.projects["a"].fetch["cpu"]
        assert backoff.state == FetchState.BACKOFF
        assert backoff.consecutive_failures == 1

        client.deliver_fetch_reply(FetchReply("a", "cpu", jobs=[_new_job(registry, "late")]))
        client.tick(client.prefs.fetch_timeout + 60.0)

        assert registry.jobs["late"].state == JobState.RUNNING
        assert backoff.consecutive_failures == 0

    def test_reply_for_detached_project_is_dropped(self, registry, add_project, client):
        add_project("a")
        add_project("b")
        job = _new_job(registry, "orphan", project_id="b")
        client.detach_project("b")

        client.deliver_fetch_reply(FetchReply("b", "cpu", jobs=[job]))
        client.tick(0.0)

        assert "orphan" not in registry.jobs


class TestJobLifecycle:

    def test_completed_job_is_reported_and_removed(self, registry, add_project, add_job, client, transport):
        add_project("a")
        add_job("j1", "a")
        client.tick(0.0)

        client.on_completed("j1")
        result = client.tick(60.0)

        assert result.reported == ["j1"]
        assert transport.reported == ["j1"]
        assert "j1" not in registry.jobs

    def test_exit_time_limits_the_charge(self, registry, add_project, add_job, client):
        add_project("a")
        add_project("b")
        add_job("a1", "a")
        add_job("b1", "b")
        client.tick(0.0)

        client.on_completed("a1", at=20.0)
        client.tick(60.0)

        assert registry.interval_usage == {"cpu": {"a": 20.0}}

    def test_unacknowledged_report_is_retried(self, registry, add_project, add_job, client, transport):
        add_project("a")
        add_job("j1", "a")
        transport.ack = False
        client.tick(0.0)
        client.on_completed("j1")

        client.tick(60.0)
        client.tick(120.0)

        assert transport.reported == ["j1", "j1"]
        assert registry.jobs["j1"].state == JobState.DONE
        assert not registry.jobs["j1"].reported

    def test_crash_loop_ends_in_error(self, registry, add_project, add_job, cpu_catalog, supervisor):
        add_project("a")
        add_job("j1", "a")
        client = HostClient(cpu_catalog, make_prefs(time_slice=0.0, crash_loop_threshold=3),
                            supervisor=supervisor, registry=registry)

        client.tick(0.0)
        for i in range(1, 4):
            client.on_crashed("j1")
            client.tick(60.0 * i)

        job = registry.jobs["j1"]
        assert job.state == JobState.ERROR
        assert job.crash_count == 3
        assert "crashed" in job.error_message
        assert supervisor.calls == [("start", "j1")] * 3

    def test_failed_completion_marks_error(self, registry, add_project, add_job, client):
        add_project("a")
        add_job("j1", "a")
        client.tick(0.0)

        client.on_completed("j1", success=False, message="exit code 1")
        client.tick(60.0)

        assert "j1" not in registry.jobs

    def test_unschedulable_job_is_failed_and_reported(self, registry, add_project, add_app, add_job, client, transport):
        add_project("a")
        add_job("gpu_job", "a", av=add_app("a", "gpu_app", rsc="nvidia"))

        result = client.tick(0.0)

        assert result.errored == ["gpu_job"]
        assert result.reported == ["gpu_job"]
        assert transport.reported == ["gpu_job"]

    def test_progress_updates_estimates(self, registry, add_project, add_job, client):
        add_project("a")
        add_job("j1", "a")

        client.on_progress("j1", 120.0, 500.0)
        client.on_progress("j1", -1.0, 10.0)
        client.tick(0.0)

        assert registry.jobs["j1"].current_cpu_time == 120.0
        assert registry.jobs["j1"].estimated_cpu_time_remaining == 500.0

    def test_preempted_job_is_resumed(self, registry, add_project, add_job, supervisor):
        add_project("a")
        add_project("b")
        add_job("a1", "a", remaining=1e6)
        add_job("b1", "b", remaining=1e6)
        client = HostClient(ResourceCatalog(ncpus=1), make_prefs(time_slice=0.0),
                            supervisor=supervisor, registry=registry)

        for i in range(3):
            client.tick(60.0 * i)

        assert supervisor.calls == [
            ("start", "a1"),
            ("suspend", "a1"), ("start", "b1"),
            ("suspend", "b1"), ("resume", "a1"),
        ]

    def test_preempted_inside_time_slice_resumes_first(self, registry, add_project, add_job, supervisor):
        add_project("a")
        add_job("steady", "a", deadline=FAR)
        client = HostClient(ResourceCatalog(ncpus=1), make_prefs(time_slice=3600.0),
                            supervisor=supervisor, registry=registry)
        client.tick(0.0)

        add_job("urgent", "a", remaining=7200.0, deadline=3700.0)
        client.tick(60.0)

        assert registry.jobs["urgent"].state == JobState.RUNNING
        assert registry.jobs["steady"].state == JobState.PREEMPTED
        assert registry.jobs["steady"].priority_class == PriorityClass.HIGH


class TestProjectsAndPrefs:

    def test_suspended_project_neither_runs_nor_fetches(self, registry, add_project, add_job, client, transport):
        add_project("a", suspended=True)
        add_job("j1", "a")

        result = client.tick(0.0)

        assert result.decision.run_set == []
        assert transport.requests == []

    def test_suspending_a_project_preempts_its_jobs(self, registry, add_project, add_job, client, supervisor):
        add_project("a")
        add_job("j1", "a")
        client.tick(0.0)

        registry.projects["a"].suspended = True
        client.tick(60.0)

        assert supervisor.calls == [("start", "j1"), ("suspend", "j1")]

    def test_detach_kills_running_jobs(self, registry, add_project, add_job, client, supervisor):
        add_project("a")
        add_job("j1", "a")
        client.tick(0.0)

        client.detach_project("a")

        assert supervisor.calls[-1] == ("kill", "j1")
        assert "a" not in registry.projects

    def test_prefs_update_applies_next_tick(self, registry, add_project, add_job, client):
        add_project("a")
        add_job("j1", "a")
        client.tick(0.0)

        client.update_prefs(make_prefs(use_cpu=False))
        assert client.prefs.use_cpu
        result = client.tick(60.0)

        assert not client.prefs.use_cpu
        assert "cpu" not in result.sim.resources
        assert result.decision.to_preempt == ["j1"]

    def test_catalog_update(self, registry, add_project, add_job, client):
        add_project("a")
        for i in range(3):
            add_job(f"j{i}", "a")

        client.update_catalog(ResourceCatalog(ncpus=3))
        result = client.tick(0.0)

        assert len(result.decision.run_set) == 3

    def test_app_config_caps_concurrency(self, registry, add_project, add_job, client):
        add_project("a")
        for i in range(3):
            add_job(f"j{i}", "a")
        client.update_catalog(ResourceCatalog(ncpus=3))

        client.set_app_config("a", AppConfigs(apps=(AppConfig("cpu_app", max_concurrent=2),)))
        assert len(client.tick(0.0).decision.run_set) == 2

        client.set_app_config("a", None)
        assert len(client.tick(60.0).decision.run_set) == 3

    def test_app_config_covers_versions_fetched_later(self, registry, add_project, add_app, client):
        add_project("a")
        add_app("a", "gpu_app", rsc="nvidia")
        client.set_app_config("a", AppConfigs(apps=(
            AppConfig("gpu_app", max_concurrent=1, gpu_usage=0.5, cpu_usage=0.2),
        )))

        v2 = AppVersion(project_id="a", app_name="gpu_app", version_num=2, plan_class="nvidia",
                        avg_ncpus=1.0, gpu_usage=GpuUsage("nvidia", 1.0))
        job = Job("g1", "a", v2.av_id, report_deadline=FAR, estimated_cpu_time_remaining=600.0)
        client.deliver_fetch_reply(FetchReply("a", "nvidia", jobs=[job], app_versions=[v2]))
        client.tick(0.0)

        fetched = registry.app_versions[v2.av_id]
        assert fetched.usage == 0.5
        assert fetched.avg_ncpus == 0.2
        assert fetched.max_concurrent == 1

    def test_app_config_files_are_read_and_cleared(self, registry, add_project, client, tmp_path):
        add_project("a")
        project_dir = tmp_path / "a"
        project_dir.mkdir()
        config_file = project_dir / APP_CONFIG_FILE_NAME
        config_file.write_text("apps:\n  - name: cpu_app\n    max_concurrent: 2\n  - name: nope\n")
        cpu = registry.app_versions_for("a", "cpu_app")[0]

        warnings = client.read_app_configs({"a": str(project_dir), "gone": str(tmp_path)})
        assert cpu.max_concurrent == 2
        assert len(warnings) == 1
        assert "nope" in warnings[0]

        config_file.unlink()
        client.read_app_configs({"a": str(project_dir)})
        assert cpu.max_concurrent == 0


class TestStatus:

    def test_status_snapshot(self, registry, add_project, add_job, client):
        add_project("a")
        add_job("j1", "a", remaining=7200.0, deadline=3600.0)
        client.tick(0.0)

        status = client.status()

        assert status["time"] == 0.0
        [job] = status["jobs"]
        assert job["state"] == "running"
        assert job["deadline_miss"]
        assert job["estimated_completion"] == pytest.approx(7200.0)
        [project] = status["projects"]
        assert project["deadline_misses"] == {"cpu": 1}
        [cpu] = status["resources"]
        assert cpu["utilization"] == pytest.approx(1.0)
        assert not cpu["starving"]

    def test_status_is_a_copy(self, registry, add_project, add_job, client):
        add_project("a")
        add_job("j1", "a")
        client.tick(0.0)

        client.status()["jobs"][0]["state"] = "bogus"

        assert client.status()["jobs"][0]["state"] == "running"
