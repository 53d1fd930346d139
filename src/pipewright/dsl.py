# dsl.py
# Python alternative to YAML pipeline documents.
#
#   from pipewright.dsl import pipeline, job, sh, uses, push, manual
#
#   PIPELINE = pipeline(
#       "ci",
#       job("build", uses("Checkout", "actions/checkout@v3"), sh("Build", "make")),
#       job("test", sh("Test", "make test"), needs=["build"]),
#       on=[push("master"), manual()],
#   )
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from .expressions import secret_refs
from .model import EventKind, Job, PipelineDefinition, Step, TriggerRule


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env=dict(env or {}))


def uses(name: str, action: str, *, env: Optional[Dict[str, str]] = None, **params: Any) -> Step:
    """
    Create an action step. Python identifiers cannot contain '-', so
    restore_keys=... is passed to the action as restore-keys.
    """
    return Step(
        name=name,
        uses=action,
        params={k.replace("_", "-"): v for k, v in params.items()},
        env=dict(env or {}),
    )


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    needs: Optional[List[str]] = None,
    runs_on: str = "local",
    env: Optional[Dict[str, str]] = None,
    secrets: Optional[List[str]] = None,
    optional: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    if not steps:
        raise ValueError(f"job({name!r}) must have at least one step")

    steps_final = list(steps)
    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    env = dict(env or {})
    requested = list(secrets or [])
    requested.extend(secret_refs(env))
    for s in steps_final:
        requested.extend(secret_refs(s.env))
        requested.extend(secret_refs(s.params))
        requested.extend(secret_refs(s.run or ""))

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        runs_on=runs_on,
        env=env,
        secrets=list(dict.fromkeys(requested)),
        optional=optional,
    )


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def push(*branches: str) -> TriggerRule:
    return TriggerRule(kind=EventKind.PUSH, branches=tuple(branches))


def pull_request(*branches: str) -> TriggerRule:
    return TriggerRule(kind=EventKind.PULL_REQUEST, branches=tuple(branches))


def manual() -> TriggerRule:
    return TriggerRule(kind=EventKind.MANUAL)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *jobs: Job,
    on: Iterable[TriggerRule] = (),
    env: Optional[Dict[str, str]] = None,
) -> PipelineDefinition:
    """
    Pipeline definition helper. A .py pipeline file can write either

        PIPELINE = pipeline("ci", job(...), job(...), on=[push("main")])

    or, to build it lazily, use the `define` alias so the name `pipeline`
    stays free for your own function:

        def pipeline():
            return define("ci", job(...), on=[manual()])
    """
    env = dict(env or {})
    jobs_final = list(jobs)
    if env:
        # job env overrides pipeline env
        jobs_final = [
            replace(j, env={**env, **j.env}, secrets=list(dict.fromkeys([*j.secrets, *secret_refs(env)])))
            for j in jobs_final
        ]
    return PipelineDefinition(name=name, jobs=jobs_final, triggers=list(on), env=env)


define = pipeline  # alias for files that define their own pipeline()
