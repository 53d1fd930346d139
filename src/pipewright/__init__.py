from .dsl import define, job, manual, pipeline, pull_request, push, sh, uses
from .loader import load_pipeline, validate_definition
from .model import Event, EventKind, Job, JobStatus, PipelineDefinition, Run, RunStatus, Step
from .scheduler import Scheduler

__all__ = [
    "define",
    "job",
    "manual",
    "pipeline",
    "pull_request",
    "push",
    "sh",
    "uses",
    "load_pipeline",
    "validate_definition",
    "Event",
    "EventKind",
    "Job",
    "JobStatus",
    "PipelineDefinition",
    "Run",
    "RunStatus",
    "Step",
    "Scheduler",
]
