"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional

from ..model import JobRecord, JobStatus, Run, RunStatus


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream_logs: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream_logs: If True, echo every job log line as it is produced
        """
        self.debug = debug
        self.stream_logs = stream_logs
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _print(self, *lines: str, file=None) -> None:
        with self._lock:
            for line in lines:
                print(line, file=file or sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(self, run: Run, job_count: int) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Run ID: {run.id}",
            f"Pipeline: {run.pipeline}",
            f"Event: {run.event_kind.value} ({run.branch or '-'})",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._print(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._print(f"[{job}] STEP: {name}")

    def print_log_line(self, job: str, line: str) -> None:
        if self.stream_logs:
            self._print(f"[{job}] {line}")

    def print_job_finished(self, record: JobRecord) -> None:
        """Print a job's terminal status."""
        lines = [f"JOB {record.status.value.upper()}: {record.name}"]
        if record.duration_s is not None:
            lines[0] += f" ({record.duration_s:.1f}s)"
        if record.status is JobStatus.FAILED:
            if record.exit_code is not None:
                lines.append(f"  Exit code: {record.exit_code}")
            if record.error:
                error_line = record.error if self.debug else record.error.split("\n")[0]
                lines.append(f"  Error: {error_line}")
        self._print(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._print(f"JOB SKIPPED: {name} ({reason})")

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the stage plan of a validated pipeline."""
        for idx, level in enumerate(levels):
            self._print(f"  Stage {idx + 1}: {', '.join(level)}")

    def print_results(self, run: Run) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for name, rec in run.jobs.items():
            status_display = rec.status.value.upper()
            if rec.skipped_because:
                status_display += f" (needs {rec.skipped_because})"
            lines.append(f"  {name}: {status_display}")
        lines.append(f"\nRUN {run.status.value.upper()}: {run.id}")
        self._print(*lines)

        failed = run.first_failure()
        if run.status is RunStatus.FAILED and failed is not None:
            self.print_failure_logs(failed)

    def print_failure_logs(self, record: JobRecord, tail: int = 40) -> None:
        """Print the captured logs of the job that broke the run."""
        logs = record.logs.splitlines()
        if not self.debug:
            logs = logs[-tail:]
        self._print(f"\nLOGS ({record.name}):", *[f"  {line}" for line in logs])

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._print(f"Error: {exc}", file=sys.stderr)

    def print_dispatcher_started(self, queue_name: str, pipelines: List[str], poll_interval: float) -> None:
        """Print dispatcher start information."""
        self._print(
            "\nDISPATCHER STARTED",
            f"Queue: {queue_name}",
            f"Pipelines: {', '.join(pipelines) or '-'}",
            f"Polling every: {poll_interval}s",
            "",
        )

    def print_event_received(self, kind: str, branch: str, event_id: str) -> None:
        """Print event intake message."""
        self._print(f"\nEVENT RECEIVED: {kind} ({branch or '-'}) id={event_id}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", file=sys.stderr)
