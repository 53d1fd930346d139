# recorder.py
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import RunNotFound
from .model import EventKind, JobRecord, JobStatus, Run, RunStatus

log = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///.pipewright/runs.db"


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_kind: Mapped[str] = mapped_column(sa.Text, nullable=False)
    branch: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)


class JobRow(Base):
    __tablename__ = "jobs"
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    name: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    failed_step: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    skipped_because: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    logs: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RunRecorder:
    """
    Persists runs and their per-job state.

    record() is an upsert keyed by run id (and job name), so the scheduler
    may call it after every status change.
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL):
        self.url = url
        kwargs = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            else:
                db_path = url.split("///", 1)[-1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.engine = sa.create_engine(url, pool_pre_ping=True, **kwargs)
        self.SessionLocal = sessionmaker(self.engine, class_=Session, expire_on_commit=False)
        self._write_lock = threading.Lock()
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def record(self, run: Run) -> None:
        # SQLite allows one writer at a time; serialise here instead of retrying
        with self._write_lock, self.SessionLocal() as s, s.begin():
            s.merge(
                RunRow(
                    id=run.id,
                    pipeline=run.pipeline,
                    event_kind=run.event_kind.value,
                    branch=run.branch,
                    status=run.status.value,
                    created_at=run.created_at,
                    finished_at=run.finished_at,
                )
            )
            for position, rec in enumerate(run.jobs.values()):
                s.merge(
                    JobRow(
                        run_id=run.id,
                        name=rec.name,
                        position=position,
                        status=rec.status.value,
                        started_at=rec.started_at,
                        finished_at=rec.finished_at,
                        exit_code=rec.exit_code,
                        error=rec.error,
                        failed_step=rec.failed_step,
                        skipped_because=rec.skipped_because,
                        logs=rec.logs,
                    )
                )
        log.debug("recorded run %s (%s)", run.id, run.status.value)

    def _to_run(self, row: RunRow, job_rows: List[JobRow]) -> Run:
        run = Run(
            pipeline=row.pipeline,
            event_kind=EventKind(row.event_kind),
            branch=row.branch,
            status=RunStatus(row.status),
            id=row.id,
            created_at=_utc(row.created_at),
            finished_at=_utc(row.finished_at),
        )
        for jr in sorted(job_rows, key=lambda r: r.position):
            run.jobs[jr.name] = JobRecord(
                name=jr.name,
                status=JobStatus(jr.status),
                started_at=_utc(jr.started_at),
                finished_at=_utc(jr.finished_at),
                exit_code=jr.exit_code,
                error=jr.error,
                failed_step=jr.failed_step,
                skipped_because=jr.skipped_because,
                logs=jr.logs or "",
            )
        return run

    def get(self, run_id: str) -> Run:
        with self.SessionLocal() as s:
            row = s.get(RunRow, run_id)
            if row is None:
                raise RunNotFound(run_id)
            job_rows = s.scalars(sa.select(JobRow).where(JobRow.run_id == run_id)).all()
            return self._to_run(row, list(job_rows))

    def list_runs(self, limit: int = 20) -> List[Run]:
        with self.SessionLocal() as s:
            rows = s.scalars(sa.select(RunRow).order_by(RunRow.created_at.desc()).limit(limit)).all()
            out = []
            for row in rows:
                job_rows = s.scalars(sa.select(JobRow).where(JobRow.run_id == row.id)).all()
                out.append(self._to_run(row, list(job_rows)))
            return out
