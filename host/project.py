# host/project.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from config import CPU


class FetchState(str, Enum):
    ELIGIBLE = "eligible"
    PENDING = "pending"
    BACKOFF = "backoff"


@dataclass
class FetchBackoff:
    """Work-fetch state of one (project, resource class) pair."""
    state: FetchState = FetchState.ELIGIBLE
    consecutive_failures: int = 0
    backoff_interval: float = 0.0
    backoff_until: float = 0.0
    requested_at: Optional[float] = None

    def state_at(self, now: float) -> FetchState:
        if self.state == FetchState.BACKOFF and now >= self.backoff_until:
            return FetchState.ELIGIBLE
        return self.state

    def mark_requested(self, now: float) -> None:
        self.state = FetchState.PENDING
        self.requested_at = now

    def mark_success(self) -> None:
        self.state = FetchState.ELIGIBLE
        self.consecutive_failures = 0
        self.backoff_interval = 0.0
        self.backoff_until = 0.0
        self.requested_at = None

    def mark_failure(self, now: float, base: float, maximum: float) -> float:
        """Enter BACKOFF; the interval doubles per consecutive failure up to maximum."""
        self.consecutive_failures += 1
        interval = base * 2.0 ** (self.consecutive_failures - 1)
        self.backoff_interval = min(maximum, interval)
        self.backoff_until = now + self.backoff_interval
        self.state = FetchState.BACKOFF
        self.requested_at = None
        return self.backoff_interval


@dataclass
class Project:
    project_id: str
    name: str = ""
    resource_share: float = 100.0
    suspended: bool = False
    detached: bool = False
    dont_request_more_work: bool = False
    anonymous_platform: bool = False
    min_rpc_time: float = 0.0
    # Classes the server has announced applications for
    resource_classes: Set[str] = field(default_factory=set)

    debt: Dict[str, float] = field(default_factory=dict)
    recent_usage: Dict[str, float] = field(default_factory=dict)
    fetch: Dict[str, FetchBackoff] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return not (self.suspended or self.detached)

    def debt_for(self, rsc: str) -> float:
        return self.debt.get(rsc, 0.0)

    def fetch_state(self, rsc: str) -> FetchBackoff:
        if rsc not in self.fetch:
            self.fetch[rsc] = FetchBackoff()
        return self.fetch[rsc]


@dataclass(frozen=True)
class GpuUsage:
    rsc: str
    usage: float


@dataclass
class AppVersion:
    project_id: str
    app_name: str
    version_num: int = 0
    plan_class: str = ""
    avg_ncpus: float = 1.0
    gpu_usage: Optional[GpuUsage] = None
    max_concurrent: int = 0
    cmdline: str = ""

    @property
    def av_id(self) -> str:
        return app_version_id(self.project_id, self.app_name, self.version_num, self.plan_class)

    @property
    def app_key(self) -> str:
        """Jobs sharing this key count against the same max_concurrent."""
        return f"{self.project_id}/{self.app_name}"

    @property
    def resource_class(self) -> str:
        return self.gpu_usage.rsc if self.gpu_usage else CPU

    @property
    def usage(self) -> float:
        """Instances of resource_class one job occupies."""
        return self.gpu_usage.usage if self.gpu_usage else self.avg_ncpus

    @property
    def demands(self) -> List[Tuple[str, float]]:
        """Every (resource class, instances) one job holds; GPU jobs also hold CPU."""
        if self.gpu_usage is None:
            return [(CPU, self.avg_ncpus)]
        demands = [(self.gpu_usage.rsc, self.gpu_usage.usage)]
        if self.avg_ncpus > 0:
            demands.append((CPU, self.avg_ncpus))
        return demands


def app_version_id(project_id: str, app_name: str, version_num: int = 0, plan_class: str = "") -> str:
    return f"{project_id}/{app_name}/{version_num}/{plan_class}"
