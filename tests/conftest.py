from __future__ import annotations

import threading
import time

import pytest

from pipewright.cache import CacheStore
from pipewright.executor import JobResult
from pipewright.model import Job, JobStatus, PipelineDefinition, Step, now_utc
from pipewright.secrets import MappingSecretStore, SecretProvider
from pipewright.ui.console import Console


def make_job(name, needs=(), *, run="true", optional=False, secrets=(), env=None) -> Job:
    return Job(
        name=name,
        steps=[Step(name=f"{name} step", run=run)],
        needs=list(needs),
        env=dict(env or {}),
        secrets=list(secrets),
        optional=optional,
    )


def make_definition(*jobs: Job, name: str = "ci", triggers=()) -> PipelineDefinition:
    return PipelineDefinition(name=name, jobs=list(jobs), triggers=list(triggers))


def diamond(**optional) -> PipelineDefinition:
    """build -> (scan1, scan2) -> test -> deploy"""
    return make_definition(
        make_job("build"),
        make_job("scan1", ["build"], optional=optional.get("scan1", False)),
        make_job("scan2", ["build"], optional=optional.get("scan2", False)),
        make_job("test", ["scan1", "scan2"]),
        make_job("deploy", ["test"]),
    )


class FakeExecutor:
    """
    Stands in for JobExecutor. outcomes maps job name -> JobStatus (default
    SUCCEEDED); jobs named in `block` wait for the run's cancel signal.
    """

    def __init__(self, outcomes=None, *, delay=0.0, block=(), crash=()):
        self.outcomes = dict(outcomes or {})
        self.delay = delay
        self.block = set(block)
        self.crash = set(crash)
        self.started = []
        self.running = 0
        self.max_running = 0
        self.blocked = threading.Event()
        self._lock = threading.Lock()

    def execute(self, job, secrets, cache, *, event=None, cancel=None, on_step=None):
        started = now_utc()
        with self._lock:
            self.started.append(job.name)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if job.name in self.crash:
                raise RuntimeError("executor blew up")
            if job.name in self.block:
                self.blocked.set()
                cancel.wait(timeout=10)
                return JobResult(job.name, JobStatus.CANCELLED, "partial output", started, now_utc(), error="cancelled")
            if self.delay:
                time.sleep(self.delay)
            status = self.outcomes.get(job.name, JobStatus.SUCCEEDED)
            exit_code = 0 if status is JobStatus.SUCCEEDED else 1
            return JobResult(job.name, status, f"{job.name} output", started, now_utc(), exit_code=exit_code)
        finally:
            with self._lock:
                self.running -= 1


@pytest.fixture
def console():
    return Console()


@pytest.fixture
def cache(tmp_path):
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def open_secrets():
    return SecretProvider(MappingSecretStore({}))

