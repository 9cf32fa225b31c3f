# host/collaborators.py
"""Interfaces of the components the scheduling core talks to."""
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from host.job import Job
from host.project import AppVersion


@dataclass
class FetchReply:
    """Outcome of one work request to a project server."""
    project_id: str
    resource_class: str
    jobs: List[Job] = field(default_factory=list)
    app_versions: List[AppVersion] = field(default_factory=list)
    error: Optional[str] = None
    # Server-requested delay before the next contact, in seconds
    backoff_hint: Optional[float] = None


class Transport(Protocol):
    def fetch_work(self, project_id: str, resource_class: str, seconds: float) -> Optional[FetchReply]:
        """Return the reply, or None if it will arrive later via deliver_fetch_reply."""

    def report_completed(self, job_id: str) -> bool:
        """Report a finished job; True once the project acknowledged it."""


class Supervisor(Protocol):
    def start(self, job_id: str) -> None: ...

    def suspend(self, job_id: str) -> None: ...

    def resume(self, job_id: str) -> None: ...

    def kill(self, job_id: str) -> None: ...


class Staging(Protocol):
    def is_ready(self, job_id: str) -> bool: ...


class AlwaysReady:
    """Staging for jobs whose input files are already local."""

    def is_ready(self, job_id: str) -> bool:
        return True
