import logging
import threading
import time

import pytest

from pipewright.actions import ToolCommand, _sonar_args, default_registry
from pipewright.executor import JobExecutor, LogBuffer
from pipewright.model import Event, EventKind, Job, JobStatus, Step
from pipewright.secrets import MappingSecretStore, Redactor, SecretProvider

SECRET = "s3cr3t-value-123"


@pytest.fixture
def source(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "hello.txt").write_text("hello from source\n")
    return src


@pytest.fixture
def executor(tmp_path, source):
    return JobExecutor(source_root=source, work_root=tmp_path / "work")


@pytest.fixture
def secrets():
    return SecretProvider(MappingSecretStore({"TOKEN": SECRET}), grants={"TOKEN": ["build"]})


def _job(name, *runs, **kw) -> Job:
    steps = [Step(name=f"step{i}", run=cmd) for i, cmd in enumerate(runs)]
    return Job(name=name, steps=steps, **kw)


def test_successful_job_captures_output(executor, secrets, cache, tmp_path):
    result = executor.execute(_job("build", "echo hello", "echo world"), secrets, cache)

    assert result.status is JobStatus.SUCCEEDED
    assert result.exit_code == 0
    assert "hello" in result.logs and "world" in result.logs
    # workspace removed afterwards
    assert list((tmp_path / "work").iterdir()) == []


def test_failing_step_stops_the_job(executor, secrets, cache):
    result = executor.execute(_job("build", "echo one", "exit 3", "echo never"), secrets, cache)

    assert result.status is JobStatus.FAILED
    assert result.exit_code == 3
    assert result.failed_step == "step1"
    assert "one" in result.logs
    assert "never" not in result.logs


def test_secret_values_are_redacted(executor, secrets, cache):
    job = _job(
        "build",
        'echo "token is $TOKEN"',
        "echo inline ${{ secrets.TOKEN }}",
        env={"TOKEN": "${{ secrets.TOKEN }}"},
        secrets=["TOKEN"],
    )
    result = executor.execute(job, secrets, cache)

    assert result.status is JobStatus.SUCCEEDED
    assert SECRET not in result.logs
    assert "token is ***" in result.logs
    assert "inline ***" in result.logs


def test_ungranted_secret_fails_before_any_step(executor, secrets, cache):
    job = _job("deploy", "echo should not run", secrets=["TOKEN"])
    result = executor.execute(job, secrets, cache)

    assert result.status is JobStatus.FAILED
    assert "not granted" in result.error
    assert "should not run" not in result.logs
    assert "##[step]" not in result.logs


def test_missing_secret_fails_job(executor, cache):
    provider = SecretProvider(MappingSecretStore({}))
    result = executor.execute(_job("build", "true", secrets=["NOPE"]), provider, cache)

    assert result.status is JobStatus.FAILED
    assert "NOPE" in result.error


def test_each_job_gets_a_fresh_workspace(executor, secrets, cache):
    job = _job("build", "test ! -e marker", "touch marker")
    assert executor.execute(job, secrets, cache).status is JobStatus.SUCCEEDED
    assert executor.execute(job, secrets, cache).status is JobStatus.SUCCEEDED


def test_checkout_copies_source_tree(executor, secrets, cache):
    job = Job(
        name="build",
        steps=[
            Step(name="Checkout", uses="actions/checkout@v3"),
            Step(name="Read", run="cat hello.txt"),
        ],
    )
    result = executor.execute(job, secrets, cache)
    assert result.status is JobStatus.SUCCEEDED
    assert "hello from source" in result.logs


def test_event_and_expressions_reach_the_environment(executor, secrets, cache):
    job = _job(
        "build",
        'echo "branch=$PIPEWRIGHT_BRANCH kind=${{ event.kind }} ref=${{ github.ref }}"',
        'echo "greeting=$GREETING"',
        env={"GREETING": "hi-${{ event.branch }}"},
    )
    event = Event(kind=EventKind.PUSH, branch="master", sha="abc123")
    result = executor.execute(job, secrets, cache, event=event)

    assert result.status is JobStatus.SUCCEEDED
    assert "branch=master kind=push ref=refs/heads/master" in result.logs
    assert "greeting=hi-master" in result.logs


def test_host_environment_is_not_leaked(executor, secrets, cache, monkeypatch):
    monkeypatch.setenv("SOME_HOST_ONLY_VAR", "leaky")
    result = executor.execute(_job("build", 'echo "value=${SOME_HOST_ONLY_VAR:-unset}"'), secrets, cache)
    assert "value=unset" in result.logs


def test_cache_action_saves_then_restores(executor, secrets, cache):
    cache_step = Step(name="Cache", uses="actions/cache@v3", params={"path": "deps", "key": "linux-deps-v1"})
    producer = Job(
        name="build",
        steps=[cache_step, Step(name="Make deps", run="mkdir -p deps && echo built > deps/lib.txt")],
    )
    consumer = Job(name="build", steps=[cache_step, Step(name="Use deps", run="cat deps/lib.txt")])

    first = executor.execute(producer, secrets, cache)
    assert first.status is JobStatus.SUCCEEDED
    assert "cache miss" in first.logs
    assert cache.get("linux-deps-v1") is not None

    second = executor.execute(consumer, secrets, cache)
    assert second.status is JobStatus.SUCCEEDED
    assert "cache hit" in second.logs
    assert "built" in second.logs


def test_unknown_tool_fails_with_hint(executor, secrets, cache, monkeypatch):
    monkeypatch.setenv("PATH", "/nonexistent")
    job = Job(name="scan", steps=[Step(name="Trivy", uses="aquasecurity/trivy-action@0.28.0", params={"input": "."})])
    result = executor.execute(job, secrets, cache)
    assert result.status is JobStatus.FAILED
    assert "trivy" in result.error


def test_cancel_before_start(executor, secrets, cache):
    cancel = threading.Event()
    cancel.set()
    result = executor.execute(_job("build", "echo hi"), secrets, cache, cancel=cancel)
    assert result.status is JobStatus.CANCELLED
    assert "##[step]" not in result.logs


def test_cancel_terminates_running_step(executor, secrets, cache):
    cancel = threading.Event()
    threading.Timer(0.3, cancel.set).start()

    started = time.monotonic()
    result = executor.execute(_job("build", "echo before", "sleep 30"), secrets, cache, cancel=cancel)

    assert result.status is JobStatus.CANCELLED
    assert result.failed_step == "step1"
    assert "before" in result.logs
    assert time.monotonic() - started < 15


def test_log_buffer_redacts_and_echoes():
    seen = []
    buf = LogBuffer(Redactor([SECRET]), echo=seen.append)
    buf.write(f"value {SECRET}\n")
    buf("plain")
    assert buf.lines() == ["value ***", "plain"]
    assert seen == ["value ***", "plain"]
    assert buf.tail(1) == "plain"


def test_tool_arguments_are_redacted_in_debug_log(tmp_path, source, secrets, cache, caplog):
    registry = default_registry()
    registry.register("acme/echo-scan", ToolCommand("acme/echo-scan", "echo", _sonar_args))
    executor = JobExecutor(registry=registry, source_root=source, work_root=tmp_path / "work")
    job = Job(
        name="build",
        steps=[Step(name="Scan", uses="acme/echo-scan@v1", params={"args": "-Dtoken=${{ secrets.TOKEN }}"})],
        secrets=["TOKEN"],
    )

    with caplog.at_level(logging.DEBUG, logger="pipewright.executor"):
        result = executor.execute(job, secrets, cache)

    assert result.status is JobStatus.SUCCEEDED
    assert "-Dtoken=***" in result.logs
    assert "exec echo -Dtoken=***" in caplog.text
    assert SECRET not in caplog.text
