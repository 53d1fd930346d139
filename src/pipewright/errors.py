# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class PipelineError(Exception):
    """Base class for every error raised by pipewright."""


@dataclass
class ValidationError(PipelineError):
    """
    Malformed or cyclic pipeline definition.

    Raised at load time, before any job is dispatched.
    """
    message: str
    problems: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        if not self.problems:
            return self.message
        lines = [self.message]
        lines.extend(f"  - {p}" for p in self.problems)
        return "\n".join(lines)


class UnknownActionError(ValidationError):
    """A step `uses:` an action identifier nobody registered."""


@dataclass
class StepExecutionError(PipelineError):
    job: str
    step: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class ToolUnavailable(PipelineError):
    tool: str
    hint: str

    def __str__(self) -> str:
        return f"{self.tool} is not available. {self.hint}"


@dataclass
class AccessDenied(PipelineError):
    """A job asked for secrets outside its granted scope."""
    scope: str
    names: List[str]

    def __str__(self) -> str:
        return f"job '{self.scope}' is not granted access to secret(s): {', '.join(self.names)}"


@dataclass
class SecretNotFound(PipelineError):
    name: str

    def __str__(self) -> str:
        return f"secret '{self.name}' is not defined in the secret store"


@dataclass
class RunNotFound(PipelineError):
    run_id: str

    def __str__(self) -> str:
        return f"run '{self.run_id}' not found"


class JobCancelled(PipelineError):
    """Raised inside an executor when the run's cancel signal fires."""
