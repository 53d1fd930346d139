# model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "workflow_dispatch"

    @classmethod
    def parse(cls, value: str) -> EventKind:
        aliases = {"manual": cls.MANUAL, "dispatch": cls.MANUAL, "pr": cls.PULL_REQUEST}
        value = value.strip().lower()
        if value in aliases:
            return aliases[value]
        return cls(value)


# ---------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single unit of work inside a job.

    Exactly one of `uses` (a registered action, e.g. "actions/cache@v3")
    or `run` (a shell command) is set.
    """
    name: str
    run: str | None = None
    uses: str | None = None
    params: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    @property
    def kind(self) -> str:
        return "action" if self.uses else "command"


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + execution metadata.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    runs_on: str = "local"
    env: Dict[str, str] = field(default_factory=dict)

    # Secret names this job asks for (explicit + `${{ secrets.X }}` references)
    secrets: List[str] = field(default_factory=list)

    # A failed/skipped optional job does not fail the run
    optional: bool = False


@dataclass(frozen=True)
class TriggerRule:
    kind: EventKind
    branches: tuple[str, ...] = ()

    def matches(self, event: Event) -> bool:
        if event.kind != self.kind:
            return False
        if self.kind is EventKind.MANUAL:
            return True
        # no branch filter -> any branch
        if not self.branches:
            return True
        return event.branch in self.branches


@dataclass
class PipelineDefinition:
    name: str
    jobs: List[Job]
    triggers: List[TriggerRule] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]


# ---------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------

@dataclass
class Event:
    """An inbound trigger: webhook delivery or manual request."""
    kind: EventKind
    branch: str
    sha: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    received_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "branch": self.branch,
            "sha": self.sha,
            "payload": self.payload,
            "received_at": self.received_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Event:
        received = data.get("received_at")
        return cls(
            kind=EventKind.parse(data["kind"]),
            branch=data.get("branch", ""),
            sha=data.get("sha"),
            payload=data.get("payload") or {},
            id=data.get("id") or new_id(),
            received_at=datetime.fromisoformat(received) if received else now_utc(),
        )


@dataclass
class JobRecord:
    name: str
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None
    skipped_because: Optional[str] = None
    logs: str = ""

    @property
    def duration_s(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class Run:
    pipeline: str
    event_kind: EventKind
    branch: str
    jobs: Dict[str, JobRecord] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None

    def statuses(self) -> Dict[str, JobStatus]:
        return {name: rec.status for name, rec in self.jobs.items()}

    def first_failure(self) -> Optional[JobRecord]:
        failed = [rec for rec in self.jobs.values() if rec.status is JobStatus.FAILED]
        if not failed:
            return None
        # earliest finisher is the one that broke the run
        return min(failed, key=lambda r: r.finished_at or r.started_at or self.created_at)
