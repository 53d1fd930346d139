# actions.py
# `uses:` handlers. Every action identifier is resolved through an
# ActionRegistry when the pipeline is loaded, so a typo fails validation
# instead of failing halfway through a run.
from __future__ import annotations

import logging
import shlex
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

from .cache import CacheStore, compose_key, hash_files
from .errors import ToolUnavailable, UnknownActionError
from .expressions import ExpressionContext
from .model import Job, Step

log = logging.getLogger(__name__)


TOOL_HINTS = {
    "dotnet": "Install the .NET SDK or fix PATH.",
    "trivy": "Install trivy (https://aquasecurity.github.io/trivy).",
    "sonar-scanner": "Install sonar-scanner CLI or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


def require_tool(tool: str) -> str:
    """Return the tool's full path or raise ToolUnavailable with a hint."""
    path = shutil.which(tool)
    if path is None:
        raise ToolUnavailable(tool=tool, hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."))
    return path


def _lines(value: Any) -> List[str]:
    """Multi-line YAML strings and lists both become a list of non-empty lines."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [line.strip() for line in str(value).splitlines() if line.strip()]


# ---------------------------------------------------------------------
# Step context
# ---------------------------------------------------------------------

@dataclass
class StepContext:
    """Everything a step may touch. Built by the JobExecutor for each step."""
    job: Job
    step: Step
    workspace: Path
    source_root: Path
    env: Dict[str, str]
    cache: CacheStore
    expr: ExpressionContext
    log: Callable[[str], None]
    run_command: Callable[..., None]
    cancel: threading.Event = field(default_factory=threading.Event)
    post: List[Callable[[], None]] = field(default_factory=list)

    @property
    def cwd(self) -> Path:
        return (self.workspace / (self.step.cwd or ".")).resolve()

    def run(self, cmd: str | Sequence[str], *, cwd: Path | None = None, env: Dict[str, str] | None = None) -> None:
        """Run cmd in the job environment; raises StepExecutionError on non-zero exit."""
        merged = dict(self.env)
        if env:
            merged.update(env)
        self.run_command(self, cmd, cwd=cwd or self.cwd, env=merged)

    def add_post(self, fn: Callable[[], None]) -> None:
        """Register fn to run after every step of the job succeeded."""
        self.post.append(fn)


# ---------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------

class Action:
    """Base class: execute(ctx, params) either returns or raises."""
    name = ""
    required: Sequence[str] = ()

    def validate(self, params: Dict[str, Any]) -> List[str]:
        return [f"missing required input '{p}'" for p in self.required if p not in params]

    def execute(self, ctx: StepContext, params: Dict[str, Any]) -> None:
        raise NotImplementedError


class ShellCommand(Action):
    """Backs every `run:` step."""
    name = "run"
    required = ("run",)

    def execute(self, ctx: StepContext, params: Dict[str, Any]) -> None:
        ctx.run(str(params["run"]))


class Checkout(Action):
    """Copy the source tree into the job's fresh workspace."""
    name = "actions/checkout"
    ignore = (".git", ".pipewright", "__pycache__", "*.pyc")

    def execute(self, ctx: StepContext, params: Dict[str, Any]) -> None:
        target = (ctx.workspace / str(params.get("path", "."))).resolve()
        if ctx.source_root.resolve() == target:
            return

        by_pattern = shutil.ignore_patterns(*self.ignore)
        workspace = ctx.workspace.resolve()

        def ignore(directory: str, names: List[str]) -> set:
            ignored = set(by_pattern(directory, names))
            for n in names:
                # never copy the work root into itself
                p = (Path(directory) / n).resolve()
                if p == workspace or p in workspace.parents:
                    ignored.add(n)
            return ignored

        shutil.copytree(ctx.source_root, target, ignore=ignore, dirs_exist_ok=True)
        ctx.log(f"checked out {ctx.source_root} -> {target}")


class CacheAction(Action):
    """
    Restore `path` from `key` (falling back to `restore-keys` prefixes) and
    save it once the job succeeds, unless the exact key was already there.

    When `key` is omitted it is composed from runner.os, the job name and
    hashFiles(`hash-files`).
    """
    name = "actions/cache"
    required = ("path",)

    def validate(self, params: Dict[str, Any]) -> List[str]:
        problems = super().validate(params)
        if "key" not in params and "hash-files" not in params:
            problems.append("either 'key' or 'hash-files' is required")
        return problems

    def execute(self, ctx: StepContext, params: Dict[str, Any]) -> None:
        paths = _lines(params["path"])
        key = str(params.get("key") or "").strip()
        restore_keys = _lines(params.get("restore-keys"))
        if not key:
            prefix = compose_key(ctx.expr.os_name, ctx.job.name, "")
            key = compose_key(prefix, "", hash_files(ctx.workspace, _lines(params["hash-files"])))
            restore_keys = restore_keys or [prefix + "-"]

        hit = ctx.cache.restore(key, restore_keys, dest=ctx.workspace)
        ctx.log(f"cache: {hit.reason} (key={key})")
        if hit.exact:
            return

        def save() -> None:
            entry = ctx.cache.save(key, paths, root=ctx.workspace)
            ctx.log(f"cache: saved {entry.key} ({entry.size} bytes)")

        ctx.add_post(save)


class SetupTool(Action):
    """setup-* actions: the toolchain is external, so only verify it is installed."""

    def __init__(self, name: str, tool: str, version_input: str | None = None):
        self.name = name
        self.tool = tool
        self.version_input = version_input

    def execute(self, ctx: StepContext, params: Dict[str, Any]) -> None:
        path = require_tool(self.tool)
        wanted = params.get(self.version_input) if self.version_input else None
        ctx.log(f"using {self.tool} at {path}" + (f" (requested {wanted})" if wanted else ""))
        ctx.run([self.tool, "--version"])


class ToolCommand(Action):
    """Action that shells out to an external tool; build() maps inputs to argv."""

    def __init__(
        self,
        name: str,
        tool: str,
        build: Callable[[Dict[str, Any]], List[str]],
        *,
        cwd_input: str | None = None,
        required: Sequence[str] = (),
    ):
        self.name = name
        self.tool = tool
        self.build = build
        self.cwd_input = cwd_input
        self.required = tuple(required)

    def execute(self, ctx: StepContext, params: Dict[str, Any]) -> None:
        require_tool(self.tool)
        argv = [self.tool, *self.build(params)]
        cwd = ctx.cwd
        if self.cwd_input and params.get(self.cwd_input):
            cwd = (ctx.workspace / str(params[self.cwd_input])).resolve()
        ctx.run(argv, cwd=cwd)


def _trivy_args(params: Dict[str, Any]) -> List[str]:
    argv = [str(params.get("scan-type", "fs"))]
    if params.get("severity"):
        argv += ["--severity", str(params["severity"])]
    if params.get("exit-code") is not None:
        argv += ["--exit-code", str(params["exit-code"])]
    argv.append(str(params.get("input") or params.get("image-ref") or "."))
    return argv


def _sonar_args(params: Dict[str, Any]) -> List[str]:
    return shlex.split(str(params.get("args") or ""))


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

class ActionRegistry:
    def __init__(self):
        self._actions: Dict[str, Action] = {}

    def register(self, name: str, action: Action) -> None:
        self._actions[name.lower()] = action

    @staticmethod
    def normalize(uses: str) -> str:
        # "actions/cache@v3" -> "actions/cache"
        return uses.split("@", 1)[0].strip().lower()

    def __contains__(self, uses: str) -> bool:
        return self.normalize(uses) in self._actions

    def names(self) -> List[str]:
        return sorted(self._actions)

    def resolve(self, uses: str) -> Action:
        name = self.normalize(uses)
        try:
            return self._actions[name]
        except KeyError:
            raise UnknownActionError(f"unknown action '{uses}'", [f"registered actions: {self.names()}"]) from None


def default_registry() -> ActionRegistry:
    reg = ActionRegistry()
    reg.register("actions/checkout", Checkout())
    reg.register("actions/cache", CacheAction())
    reg.register("actions/setup-dotnet", SetupTool("actions/setup-dotnet", "dotnet", "dotnet-version"))
    reg.register("actions/setup-node", SetupTool("actions/setup-node", "node", "node-version"))
    reg.register("actions/setup-python", SetupTool("actions/setup-python", "python3", "python-version"))
    reg.register("aquasecurity/trivy-action", ToolCommand("aquasecurity/trivy-action", "trivy", _trivy_args))
    reg.register(
        "sonarsource/sonarcloud-github-action",
        ToolCommand("sonarsource/sonarcloud-github-action", "sonar-scanner", _sonar_args, cwd_input="projectBaseDir"),
    )
    return reg
