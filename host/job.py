# host/job.py
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class JobState(str, Enum):
    NEW = "new"
    RUNNABLE = "runnable"
    RUNNING = "running"
    PREEMPTED = "preempted"
    DONE = "done"
    ERROR = "error"


class PriorityClass(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class SchedulerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    PREEMPTED = "preempted"
    SCHEDULED = "scheduled"


CANDIDATE_STATES = (JobState.RUNNABLE, JobState.RUNNING, JobState.PREEMPTED)
BACKLOG_STATES = (JobState.NEW,) + CANDIDATE_STATES
FINISHED_STATES = (JobState.DONE, JobState.ERROR)


@dataclass
class Job:
    job_id: str
    project_id: str
    app_version_id: str
    report_deadline: float
    estimated_cpu_time_remaining: float

    # These attributes are maintained by the client at runtime
    current_cpu_time: float = 0.0
    received_time: float = 0.0
    state: JobState = JobState.NEW
    priority_class: PriorityClass = PriorityClass.NORMAL
    scheduler_state: SchedulerState = SchedulerState.UNINITIALIZED
    run_started_at: Optional[float] = None
    crash_count: int = 0
    error_message: Optional[str] = None
    reported: bool = False

    @property
    def is_candidate(self) -> bool:
        return self.state in CANDIDATE_STATES

    @property
    def is_finished(self) -> bool:
        return self.state in FINISHED_STATES

    def mark_error(self, message: str) -> None:
        self.state = JobState.ERROR
        self.error_message = message
        self.run_started_at = None
