# executor.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .actions import ActionRegistry, ShellCommand, StepContext, default_registry, require_tool
from .cache import CacheStore
from .errors import AccessDenied, JobCancelled, PipelineError, SecretNotFound, StepExecutionError
from .expressions import ExpressionContext, ExpressionError, render
from .model import Event, Job, JobStatus, Step, now_utc
from .secrets import Redactor, SecretProvider

log = logging.getLogger(__name__)

DEFAULT_WORK_DIR = ".pipewright/work"

# Host variables a job may see; everything else starts empty
HOST_ENV_PASSTHROUGH = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "USER", "SHELL", "SYSTEMROOT", "DOTNET_ROOT")

TERMINATE_GRACE_S = 5.0


# ----------------------------------------------------------------------
# Logs
# ----------------------------------------------------------------------

class LogBuffer:
    """
    Append-only, thread-safe job log. Every line passes through the redactor
    before it is stored or echoed, so secret values never leave the job.
    """

    def __init__(self, redactor: Redactor | None = None, echo: Callable[[str], None] | None = None):
        self.redactor = redactor or Redactor()
        self.echo = echo
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def write(self, line: str) -> None:
        line = self.redactor(line.rstrip("\n"))
        with self._lock:
            self._lines.append(line)
        if self.echo is not None:
            self.echo(line)

    __call__ = write

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines())

    def tail(self, n: int = 40) -> str:
        return "\n".join(self.lines()[-n:])


@dataclass
class JobResult:
    name: str
    status: JobStatus
    logs: str
    started_at: datetime
    finished_at: datetime
    exit_code: Optional[int] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

@dataclass
class JobExecutor:
    """
    Runs one job's steps, in order, inside a fresh workspace directory.

    runners maps a job's `runs_on` tag to a container image; jobs whose tag
    is not mapped run on the host.
    """
    registry: ActionRegistry = field(default_factory=default_registry)
    source_root: Path = Path(".")
    work_root: Path = Path(DEFAULT_WORK_DIR)
    runners: Dict[str, str] = field(default_factory=dict)
    extra_env: Dict[str, str] = field(default_factory=dict)
    keep_workspace: bool = False
    echo: Optional[Callable[[str, str], None]] = None

    def __post_init__(self):
        self.source_root = Path(self.source_root).resolve()
        self.work_root = Path(self.work_root).resolve()

    # ---- environment ----

    def _base_env(self, job: Job, workspace: Path, expr: ExpressionContext) -> Dict[str, str]:
        env = {k: os.environ[k] for k in HOST_ENV_PASSTHROUGH if k in os.environ}
        env.update(
            {
                "CI": "true",
                "PIPEWRIGHT": "true",
                "PIPEWRIGHT_JOB": job.name,
                "PIPEWRIGHT_WORKSPACE": str(workspace),
                "RUNNER_OS": expr.os_name,
            }
        )
        if expr.event is not None:
            env["PIPEWRIGHT_EVENT"] = expr.event.kind.value
            env["PIPEWRIGHT_BRANCH"] = expr.event.branch
        expr.env = env
        for layer in (self.extra_env, job.env):
            for k, v in layer.items():
                env[k] = str(render(v, expr))
        return env

    # ---- subprocess ----

    def _argv(self, job: Job, cmd: str | Sequence[str], cwd: Path, env: Mapping[str, str], workspace: Path) -> List[str]:
        shell_cmd = cmd if isinstance(cmd, str) else None
        image = self.runners.get(job.runs_on)
        if image is None:
            if shell_cmd is None:
                return list(cmd)
            shell = shutil.which("bash") or "/bin/sh"
            return [shell, "-e", "-c", shell_cmd]

        require_tool("docker")
        container_root = "/workspace"
        rel = os.path.relpath(cwd, workspace).replace("\\", "/")
        workdir = container_root if rel == "." else f"{container_root}/{rel}"
        argv = ["docker", "run", "--rm", "-v", f"{workspace}:{container_root}", "-w", workdir]
        for key, value in env.items():
            if key in HOST_ENV_PASSTHROUGH:
                continue
            argv.extend(["-e", f"{key}={value}"])
        argv.append(image)
        if shell_cmd is not None:
            argv.extend(["sh", "-e", "-c", shell_cmd])
        else:
            argv.extend(cmd)
        return argv

    def _run_command(
        self,
        ctx: StepContext,
        cmd: str | Sequence[str],
        *,
        cwd: Path,
        env: Dict[str, str],
    ) -> None:
        if not cwd.exists():
            raise FileNotFoundError(f"[{ctx.job.name}] step '{ctx.step.name}' cwd not found: {cwd}")

        argv = self._argv(ctx.job, cmd, cwd, env, ctx.workspace)
        display = cmd if isinstance(cmd, str) else " ".join(cmd)
        log.debug("[%s] exec %s", ctx.job.name, ctx.log.redactor(" ".join(argv)))

        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )

        def pump() -> None:
            assert proc.stdout is not None
            for line in proc.stdout:
                ctx.log(line)

        reader = threading.Thread(target=pump, name=f"log-{ctx.job.name}", daemon=True)
        reader.start()

        while True:
            try:
                proc.wait(timeout=0.1)
                break
            except subprocess.TimeoutExpired:
                if ctx.cancel.is_set():
                    proc.terminate()
                    try:
                        proc.wait(timeout=TERMINATE_GRACE_S)
                    except subprocess.TimeoutExpired:
                        proc.kill()
                        proc.wait()
                    reader.join(timeout=TERMINATE_GRACE_S)
                    raise JobCancelled(f"[{ctx.job.name}] cancelled during step '{ctx.step.name}'")

        reader.join()
        if proc.returncode != 0:
            raise StepExecutionError(
                job=ctx.job.name,
                step=ctx.step.name,
                cmd=display,
                exit_code=proc.returncode,
            )

    # ---- job ----

    def _workspace(self, job: Job) -> Path:
        ws = self.work_root / f"{job.name}-{uuid.uuid4().hex[:12]}"
        ws.mkdir(parents=True, exist_ok=False)
        return ws

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
        """
        Run every step of job. Never raises for job-level problems: failures,
        denied secrets and cancellation are all reported in the JobResult.
        """
        cancel = cancel or threading.Event()
        started = now_utc()
        redactor = Redactor()
        def echo(line: str) -> None:
            if self.echo is not None:
                self.echo(job.name, line)

        buf = LogBuffer(redactor, echo=echo)

        def finish(status: JobStatus, **kw) -> JobResult:
            error = kw.pop("error", None)
            if error:
                error = redactor(error)
                buf.write(f"Error: {error}")
            return JobResult(
                name=job.name,
                status=status,
                logs=buf.text(),
                started_at=started,
                finished_at=now_utc(),
                error=error,
                **kw,
            )

        if cancel.is_set():
            return finish(JobStatus.CANCELLED, error="run cancelled before job started")

        try:
            values = secrets.resolve(job.secrets, scope=job.name)
        except (AccessDenied, SecretNotFound) as e:
            return finish(JobStatus.FAILED, error=str(e))
        redactor.add(*values.values())

        workspace = self._workspace(job)
        expr = ExpressionContext(workspace=workspace, event=event, secrets=values)
        post: List[Callable[[], None]] = []
        current: Optional[Step] = None

        try:
            job_env = self._base_env(job, workspace, expr)
            for step in job.steps:
                current = step
                if cancel.is_set():
                    raise JobCancelled(f"[{job.name}] cancelled before step '{step.name}'")
                buf.write(f"##[step] {step.name}")
                if on_step is not None:
                    on_step(job, step)

                step_env = dict(job_env)
                expr.env = step_env
                step_env.update({k: str(render(v, expr)) for k, v in step.env.items()})

                ctx = StepContext(
                    job=job,
                    step=step,
                    workspace=workspace,
                    source_root=self.source_root,
                    env=step_env,
                    cache=cache,
                    expr=expr,
                    log=buf,
                    run_command=self._run_command,
                    cancel=cancel,
                    post=post,
                )
                if step.uses:
                    action = self.registry.resolve(step.uses)
                    action.execute(ctx, render(dict(step.params), expr))
                else:
                    ShellCommand().execute(ctx, {"run": render(step.run, expr)})

            current = None
            for hook in post:
                hook()

        except JobCancelled as e:
            return finish(JobStatus.CANCELLED, error=str(e), failed_step=current.name if current else None)
        except StepExecutionError as e:
            return finish(JobStatus.FAILED, error=str(e), exit_code=e.exit_code, failed_step=e.step)
        except (PipelineError, ExpressionError, OSError, subprocess.SubprocessError) as e:
            return finish(JobStatus.FAILED, error=str(e), failed_step=current.name if current else None)
        finally:
            values.clear()
            if not self.keep_workspace:
                shutil.rmtree(workspace, ignore_errors=True)

        return finish(JobStatus.SUCCEEDED, exit_code=0)
