# expressions.py
# `${{ ... }}` substitution for step parameters and env values.
#
# Supported:
#   ${{ secrets.NAME }}         resolved secret (job must be granted it)
#   ${{ env.NAME }}             pipeline/job/step env
#   ${{ runner.os }}            e.g. Linux, macOS, Windows
#   ${{ event.branch }}         also event.kind, event.sha
#   ${{ github.ref }}           refs/heads/<branch>, github.event_name, github.sha
#   ${{ hashFiles('**/*.csproj', ...) }}
from __future__ import annotations

import platform
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cache import hash_files
from .model import Event

EXPR_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
SECRET_REF_RE = re.compile(r"\$\{\{\s*secrets\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_HASH_FILES_RE = re.compile(r"^hashFiles\((.*)\)$")
_STR_ARG_RE = re.compile(r"'([^']*)'|\"([^\"]*)\"")


class ExpressionError(ValueError):
    pass


def runner_os() -> str:
    system = platform.system()
    return {"Darwin": "macOS"}.get(system, system or "Linux")


@dataclass
class ExpressionContext:
    workspace: Path
    event: Optional[Event] = None
    env: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    os_name: str = field(default_factory=runner_os)


def secret_refs(value: Any) -> List[str]:
    """Secret names referenced anywhere inside value (str, list or dict)."""
    found: List[str] = []
    if isinstance(value, str):
        found.extend(SECRET_REF_RE.findall(value))
    elif isinstance(value, dict):
        for v in value.values():
            found.extend(secret_refs(v))
    elif isinstance(value, (list, tuple)):
        for v in value:
            found.extend(secret_refs(v))
    return list(dict.fromkeys(found))


def _evaluate(expr: str, ctx: ExpressionContext) -> str:
    m = _HASH_FILES_RE.match(expr)
    if m:
        patterns = [a or b for a, b in _STR_ARG_RE.findall(m.group(1))]
        if not patterns:
            raise ExpressionError(f"hashFiles() needs at least one pattern: {expr}")
        return hash_files(ctx.workspace, patterns)

    head, _, tail = expr.partition(".")
    if not tail:
        raise ExpressionError(f"unsupported expression: {expr}")

    if head == "secrets":
        if tail not in ctx.secrets:
            raise ExpressionError(f"secret '{tail}' was not resolved for this job")
        return ctx.secrets[tail]
    if head == "env":
        return ctx.env.get(tail, "")
    if head == "runner" and tail == "os":
        return ctx.os_name

    event = ctx.event
    if head == "event":
        if event is None:
            return ""
        values = {"branch": event.branch, "kind": event.kind.value, "sha": event.sha or ""}
        if tail not in values:
            raise ExpressionError(f"unsupported expression: {expr}")
        return values[tail]
    if head == "github":
        if event is None:
            return ""
        values = {
            "ref": f"refs/heads/{event.branch}",
            "ref_name": event.branch,
            "event_name": event.kind.value,
            "sha": event.sha or "",
        }
        if tail not in values:
            raise ExpressionError(f"unsupported expression: {expr}")
        return values[tail]

    raise ExpressionError(f"unsupported expression: {expr}")


def render(value: Any, ctx: ExpressionContext) -> Any:
    """Render every `${{ }}` in value; lists and dicts are rendered recursively."""
    if isinstance(value, str):
        return EXPR_RE.sub(lambda m: _evaluate(m.group(1), ctx), value)
    if isinstance(value, dict):
        return {k: render(v, ctx) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, ctx) for v in value]
    return value
