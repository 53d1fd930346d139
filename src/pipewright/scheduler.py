# scheduler.py
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Protocol

from .cache import CacheStore
from .dag import Graph
from .executor import JobResult
from .model import Event, EventKind, Job, JobRecord, JobStatus, Run, RunStatus, Step, now_utc
from .recorder import RunRecorder
from .secrets import SecretProvider
from .ui.console import Console

log = logging.getLogger(__name__)


class Executor(Protocol):
    def execute(
        self,
        job: Job,
        secrets: SecretProvider,
        cache: CacheStore,
        *,
        event: Optional[Event] = None,
        cancel: Optional[threading.Event] = None,
        on_step: Optional[Callable[[Job, Step], None]] = None,
    ) -> JobResult:
        ...


def default_max_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def run_status(graph: Graph, run: Run, cancelled: bool) -> RunStatus:
    """
    Terminal run status. Every job must have Succeeded unless it is marked
    optional; a Skipped required job fails the run like a Failed one.
    """
    if cancelled and any(rec.status is JobStatus.CANCELLED for rec in run.jobs.values()):
        return RunStatus.CANCELLED
    for name, rec in run.jobs.items():
        if rec.status is JobStatus.SUCCEEDED:
            continue
        if graph.jobs[name].optional and rec.status in (JobStatus.FAILED, JobStatus.SKIPPED):
            continue
        return RunStatus.FAILED
    return RunStatus.SUCCEEDED


class Scheduler:
    """
    Walks a job graph, dispatching ready jobs to a bounded worker pool.

    Readiness is recomputed on every job completion. Among jobs that become
    ready together, dispatch follows declaration order. A Failed or Cancelled
    job turns every pending transitive dependent into Skipped.
    """

    def __init__(
        self,
        executor: Executor,
        secrets: SecretProvider,
        cache: CacheStore,
        *,
        recorder: Optional[RunRecorder] = None,
        max_workers: Optional[int] = None,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.secrets = secrets
        self.cache = cache
        self.recorder = recorder
        self.max_workers = max_workers or default_max_workers()
        self.console = console or Console()
        self._cancels: Dict[str, threading.Event] = {}
        self._guard = threading.Lock()
        # Names in the order they were handed to the pool; handy for tracing
        self.dispatch_log: List[str] = []

    # ---- cancellation ----

    def cancel(self, run_id: str) -> bool:
        """Signal an in-flight run to stop. False if this scheduler is not running it."""
        with self._guard:
            ev = self._cancels.get(run_id)
        if ev is None:
            return False
        log.info("cancelling run %s", run_id)
        ev.set()
        return True

    def active_runs(self) -> List[str]:
        with self._guard:
            return list(self._cancels)

    # ---- helpers ----

    def _record(self, run: Run) -> None:
        if self.recorder is not None:
            self.recorder.record(run)

    def _skip_dependents(self, graph: Graph, run: Run, name: str) -> None:
        for dep in graph.transitive_dependents(name):
            rec = run.jobs[dep]
            if rec.status is not JobStatus.PENDING:
                continue
            rec.status = JobStatus.SKIPPED
            rec.skipped_because = name
            rec.finished_at = now_utc()
            self.console.print_job_skipped(dep, f"dependency '{name}' {run.jobs[name].status.value}")

    def _apply_result(self, run: Run, result: JobResult) -> JobRecord:
        rec = run.jobs[result.name]
        rec.status = result.status
        rec.started_at = result.started_at
        rec.finished_at = result.finished_at
        rec.exit_code = result.exit_code
        rec.error = result.error
        rec.failed_step = result.failed_step
        rec.logs = result.logs
        return rec

    def _cancel_pending(self, run: Run) -> None:
        for rec in run.jobs.values():
            if rec.status in (JobStatus.PENDING, JobStatus.READY):
                rec.status = JobStatus.CANCELLED
                rec.finished_at = now_utc()

    # ---- main loop ----

    def run(
        self,
        graph: Graph,
        event: Optional[Event] = None,
        *,
        run_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        secrets: Optional[SecretProvider] = None,
    ) -> Run:
        """
        Execute graph to completion and return the terminal Run.

        secrets overrides the scheduler's provider for this run only (grants
        usually differ per pipeline).
        """
        secrets = secrets or self.secrets
        run = Run(
            pipeline=graph.definition.name,
            event_kind=event.kind if event else EventKind.MANUAL,
            branch=event.branch if event else "",
            jobs={name: JobRecord(name=name) for name in graph.order},
        )
        if run_id:
            run.id = run_id
        cancel = cancel or threading.Event()
        with self._guard:
            self._cancels[run.id] = cancel

        run.status = RunStatus.RUNNING
        self._record(run)
        self.console.print_run_started(run, len(graph))

        ready: List[str] = []
        in_flight: Dict[Future, str] = {}

        def on_step(job: Job, step: Step) -> None:
            self.console.print_step(job.name, step.name)

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="pipewright-job") as pool:
                while True:
                    if cancel.is_set():
                        self._cancel_pending(run)
                        ready.clear()
                    else:
                        for name in graph.ready_jobs(run.statuses()):
                            run.jobs[name].status = JobStatus.READY
                            ready.append(name)
                        ready.sort(key=graph.order.index)

                    # schedule ready jobs up to the concurrency limit
                    while ready and len(in_flight) < self.max_workers:
                        name = ready.pop(0)
                        rec = run.jobs[name]
                        rec.status = JobStatus.RUNNING
                        rec.started_at = now_utc()
                        self.dispatch_log.append(name)
                        self.console.print_job_start(name)
                        fut = pool.submit(
                            self.executor.execute,
                            graph.jobs[name],
                            secrets,
                            self.cache,
                            event=event,
                            cancel=cancel,
                            on_step=on_step,
                        )
                        in_flight[fut] = name
                    if in_flight:
                        self._record(run)

                    if not in_flight:
                        break

                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for fut in sorted(done, key=lambda f: graph.order.index(in_flight[f])):
                        name = in_flight.pop(fut)
                        try:
                            rec = self._apply_result(run, fut.result())
                        except Exception as e:
                            # executor bug: keep it local to the job
                            log.exception("executor crashed on job %s", name)
                            rec = run.jobs[name]
                            rec.status = JobStatus.FAILED
                            rec.error = f"{type(e).__name__}: {e}"
                            rec.finished_at = now_utc()

                        self.console.print_job_finished(rec)
                        # on cancel, pending dependents become Cancelled instead
                        if rec.status is not JobStatus.SUCCEEDED and not cancel.is_set():
                            self._skip_dependents(graph, run, name)
                    self._record(run)
        finally:
            with self._guard:
                self._cancels.pop(run.id, None)

        # anything never reached (e.g. cancelled while waiting) is cancelled
        self._cancel_pending(run)
        run.status = run_status(graph, run, cancel.is_set())
        run.finished_at = now_utc()
        self._record(run)
        return run
