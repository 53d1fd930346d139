from datetime import timedelta

import pytest

from pipewright.errors import RunNotFound
from pipewright.model import EventKind, JobRecord, JobStatus, Run, RunStatus, now_utc
from pipewright.recorder import RunRecorder


@pytest.fixture
def recorder(tmp_path):
    rec = RunRecorder(f"sqlite:///{tmp_path / 'db' / 'runs.db'}")
    yield rec
    rec.close()


def _run(**kw) -> Run:
    run = Run(pipeline="ci", event_kind=EventKind.PUSH, branch="master", **kw)
    run.jobs["build"] = JobRecord(name="build")
    run.jobs["test"] = JobRecord(name="test")
    return run


def test_record_is_an_upsert(recorder):
    run = _run()
    run.status = RunStatus.RUNNING
    recorder.record(run)

    started = now_utc()
    run.jobs["build"].status = JobStatus.FAILED
    run.jobs["build"].started_at = started
    run.jobs["build"].finished_at = started + timedelta(seconds=2)
    run.jobs["build"].exit_code = 2
    run.jobs["build"].error = "boom"
    run.jobs["build"].logs = "line1\nline2"
    run.jobs["test"].status = JobStatus.SKIPPED
    run.jobs["test"].skipped_because = "build"
    run.status = RunStatus.FAILED
    run.finished_at = now_utc()
    recorder.record(run)

    stored = recorder.get(run.id)
    assert stored.status is RunStatus.FAILED
    assert stored.branch == "master"
    assert list(stored.jobs) == ["build", "test"]
    build = stored.jobs["build"]
    assert build.exit_code == 2
    assert build.logs == "line1\nline2"
    assert build.duration_s == pytest.approx(2.0)
    assert stored.jobs["test"].skipped_because == "build"
    assert stored.finished_at is not None and stored.finished_at.tzinfo is not None


def test_unknown_run(recorder):
    with pytest.raises(RunNotFound):
        recorder.get("missing")


def test_list_runs_newest_first(recorder):
    older = _run()
    older.created_at = now_utc() - timedelta(minutes=5)
    newer = _run()
    recorder.record(older)
    recorder.record(newer)

    assert [r.id for r in recorder.list_runs()] == [newer.id, older.id]
    assert [r.id for r in recorder.list_runs(limit=1)] == [newer.id]


def test_in_memory_database():
    rec = RunRecorder("sqlite://")
    run = _run()
    rec.record(run)
    assert rec.get(run.id).pipeline == "ci"
    rec.close()
