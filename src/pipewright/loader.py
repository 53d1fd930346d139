# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from . import dag, dsl
from .actions import ActionRegistry, default_registry
from .errors import UnknownActionError, ValidationError
from .expressions import secret_refs
from .model import EventKind, Job, PipelineDefinition, Step, TriggerRule

PIPELINE_SUFFIXES = (".yml", ".yaml", ".py")


# ----------------------------------------------------------------------
# Document -> model
# ----------------------------------------------------------------------

def _as_list(value: Any, where: str, problems: List[str]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        problems.append(f"{where}: expected a string or a list")
        return []
    return [str(v) for v in value]


def _str_map(value: Any, where: str, problems: List[str]) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        problems.append(f"{where}: env must be a mapping")
        return {}
    # YAML turns `true`/`8` into bool/int; env values are always strings
    return {str(k): str(v).lower() if isinstance(v, bool) else str(v) for k, v in value.items()}


def parse_triggers(on: Any, problems: List[str]) -> List[TriggerRule]:
    """
    `on:` accepts "push", ["push", "pull_request"] or a mapping:

        on:
          push:
            branches: [master]
          workflow_dispatch:
    """
    if on is None:
        return []
    if isinstance(on, str):
        on = [on]
    if isinstance(on, list):
        on = {name: None for name in on}
    if not isinstance(on, Mapping):
        problems.append("on: must be a string, list or mapping")
        return []

    rules: List[TriggerRule] = []
    for name, spec in on.items():
        try:
            kind = EventKind.parse(str(name))
        except ValueError:
            problems.append(f"on: unsupported event '{name}'")
            continue
        branches: List[str] = []
        if isinstance(spec, Mapping):
            branches = _as_list(spec.get("branches"), f"on.{name}.branches", problems)
        rules.append(TriggerRule(kind=kind, branches=tuple(branches)))
    return rules


def _parse_step(raw: Any, where: str, problems: List[str]) -> Optional[Step]:
    if not isinstance(raw, Mapping):
        problems.append(f"{where}: step must be a mapping")
        return None

    uses = str(raw.get("uses") or "").strip()
    run = str(raw.get("run") or "")
    # a blank `run:` counts as missing
    if not run.strip():
        run = ""
    if bool(uses) == bool(run):
        problems.append(f"{where}: step needs exactly one of 'uses' or 'run'")
        return None

    params = raw.get("with") or {}
    if not isinstance(params, Mapping):
        problems.append(f"{where}: 'with' must be a mapping")
        params = {}

    name = raw.get("name") or uses or run.strip().splitlines()[0]
    return Step(
        name=str(name),
        run=run or None,
        uses=uses or None,
        params=dict(params),
        env=_str_map(raw.get("env"), where, problems),
        cwd=raw.get("working-directory") or raw.get("cwd"),
    )


def _collect_secrets(explicit: List[str], env: Dict[str, str], steps: List[Step]) -> List[str]:
    names = list(explicit)
    names.extend(secret_refs(env))
    for s in steps:
        names.extend(secret_refs(s.env))
        names.extend(secret_refs(s.params))
        names.extend(secret_refs(s.run or ""))
    return list(dict.fromkeys(names))


def _parse_job(name: str, raw: Any, problems: List[str], pipeline_env: Dict[str, str]) -> Optional[Job]:
    where = f"jobs.{name}"
    if not isinstance(raw, Mapping):
        problems.append(f"{where}: job must be a mapping")
        return None

    raw_steps = raw.get("steps") or []
    if not isinstance(raw_steps, list) or not raw_steps:
        problems.append(f"{where}: job must have at least one step")
        raw_steps = []

    steps = []
    for i, raw_step in enumerate(raw_steps):
        step = _parse_step(raw_step, f"{where}.steps[{i}]", problems)
        if step is not None:
            steps.append(step)

    # job env overrides pipeline env
    env = {**pipeline_env, **_str_map(raw.get("env"), where, problems)}
    runs_on = raw.get("runs-on") or raw.get("runsOn") or raw.get("runs_on") or "local"
    optional = bool(raw.get("optional", raw.get("continue-on-error", False)))

    return Job(
        name=str(name),
        steps=steps,
        needs=_as_list(raw.get("needs"), f"{where}.needs", problems),
        runs_on=str(runs_on),
        env=env,
        secrets=_collect_secrets(_as_list(raw.get("secrets"), f"{where}.secrets", problems), env, steps),
        optional=optional,
    )


def parse_pipeline(data: Any, *, name: str = "pipeline") -> PipelineDefinition:
    """Structural parse of a pipeline document. Raises ValidationError."""
    if not isinstance(data, Mapping):
        raise ValidationError("pipeline document must be a mapping")

    problems: List[str] = []

    # YAML 1.1 reads a bare `on` key as boolean True
    on = data.get("on", data.get(True))
    triggers = parse_triggers(on, problems)

    env = _str_map(data.get("env"), "env", problems)

    raw_jobs = data.get("jobs")
    jobs: List[Job] = []
    if not isinstance(raw_jobs, Mapping) or not raw_jobs:
        problems.append("jobs: at least one job is required")
    else:
        for job_name, raw in raw_jobs.items():
            job = _parse_job(str(job_name), raw, problems, env)
            if job is not None:
                jobs.append(job)

    if problems:
        raise ValidationError("invalid pipeline definition", problems)

    return PipelineDefinition(name=str(data.get("name") or name), jobs=jobs, triggers=triggers, env=env)


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def validate_definition(definition: PipelineDefinition, registry: Optional[ActionRegistry] = None) -> dag.Graph:
    """
    Resolve every `uses:` against the registry, check action inputs, then
    validate the job graph. Returns the Graph.
    """
    registry = registry or default_registry()
    problems: List[str] = []
    unknown = False

    for job in definition.jobs:
        for i, step in enumerate(job.steps):
            where = f"jobs.{job.name}.steps[{i}] ({step.name})"
            if bool(step.uses) == bool(step.run):
                problems.append(f"{where}: step needs exactly one of 'uses' or 'run'")
                continue
            if not step.uses:
                continue
            try:
                action = registry.resolve(step.uses)
            except UnknownActionError:
                unknown = True
                problems.append(f"{where}: unknown action '{step.uses}'")
                continue
            problems.extend(f"{where}: {p}" for p in action.validate(step.params))

    if problems:
        cls = UnknownActionError if unknown else ValidationError
        raise cls(f"invalid pipeline '{definition.name}'", problems)

    return dag.load(definition)


# ----------------------------------------------------------------------
# Files
# ----------------------------------------------------------------------

def _load_python(path: Path) -> PipelineDefinition:
    """
    The file must define either:
      - pipeline() -> PipelineDefinition
      - PIPELINE = PipelineDefinition(...)
    """
    module_name = f"pipewright_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    definition = globals_dict.get("PIPELINE")
    factory = globals_dict.get("pipeline")
    # `from pipewright.dsl import pipeline` must not be mistaken for a factory
    if definition is None and callable(factory) and factory is not dsl.pipeline:
        definition = factory()

    if not isinstance(definition, PipelineDefinition):
        raise ValidationError(
            f"{path.name} must define pipeline() -> PipelineDefinition or PIPELINE = PipelineDefinition(...)"
        )
    return definition


def load_pipeline(path: str | Path, registry: Optional[ActionRegistry] = None) -> PipelineDefinition:
    """Load and fully validate a pipeline from a .yml/.yaml/.py file."""
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix not in PIPELINE_SUFFIXES:
        raise ValidationError(f"Pipeline must be one of {PIPELINE_SUFFIXES}, got: {p.name}")

    if p.suffix == ".py":
        definition = _load_python(p)
    else:
        with p.open("r", encoding="utf-8") as handle:
            try:
                data = yaml.safe_load(handle)
            except yaml.YAMLError as e:
                raise ValidationError(f"{p.name} is not valid YAML", [str(e)]) from e
        definition = parse_pipeline(data, name=p.stem)

    validate_definition(definition, registry)
    return definition
