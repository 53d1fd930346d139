# secrets.py
# Scoped secret resolution. Values are handed to a single job invocation and
# masked everywhere they could be echoed.
from __future__ import annotations

import logging
import os
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set

from .errors import AccessDenied, SecretNotFound
from .model import PipelineDefinition

log = logging.getLogger(__name__)

MASK = "***"


class SecretStore(Protocol):
    def get(self, name: str) -> Optional[str]:
        ...


class EnvSecretStore:
    """Reads secrets from the process environment, e.g. PIPEWRIGHT_SECRET_SONAR_TOKEN."""

    def __init__(self, prefix: str = "PIPEWRIGHT_SECRET_", environ: Mapping[str, str] | None = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> Optional[str]:
        return self._environ.get(f"{self.prefix}{name}")


class MappingSecretStore:
    def __init__(self, values: Mapping[str, str]):
        self._values = dict(values)

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)


class SecretProvider:
    """
    Resolve secret names for a job.

    grants maps secret name -> job names allowed to read it. A secret that
    does not appear in grants is denied to every job. Pass grants=None to
    allow any job to read any secret (local runs only).
    """

    def __init__(self, store: SecretStore, grants: Mapping[str, Iterable[str]] | None = None):
        self.store = store
        self.grants: Optional[Dict[str, Set[str]]] = None
        if grants is not None:
            self.grants = {name: set(jobs) for name, jobs in grants.items()}

    @classmethod
    def from_definition(cls, store: SecretStore, definition: PipelineDefinition) -> SecretProvider:
        """Grant each job exactly the secrets its definition asks for."""
        grants: Dict[str, Set[str]] = {}
        for job in definition.jobs:
            for name in job.secrets:
                grants.setdefault(name, set()).add(job.name)
        return cls(store, grants)

    def allowed(self, name: str, scope: str) -> bool:
        if self.grants is None:
            return True
        return scope in self.grants.get(name, set())

    def resolve(self, names: Iterable[str], scope: str) -> Dict[str, str]:
        names = list(dict.fromkeys(names))
        denied = [n for n in names if not self.allowed(n, scope)]
        if denied:
            log.warning("job %s denied secrets %s", scope, denied)
            raise AccessDenied(scope=scope, names=denied)

        out: Dict[str, str] = {}
        for name in names:
            value = self.store.get(name)
            if value is None:
                raise SecretNotFound(name)
            out[name] = value
        log.debug("resolved %d secret(s) for job %s", len(out), scope)
        return out


class Redactor:
    """Masks known secret values in text. Longest values are replaced first."""

    def __init__(self, values: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._values: List[str] = []
        self.add(*values)

    def add(self, *values: str) -> None:
        with self._lock:
            for v in values:
                # Masking one-char values would shred the whole log
                if v and len(v) > 1 and v not in self._values:
                    self._values.append(v)
            self._values.sort(key=len, reverse=True)

    def __call__(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            values = list(self._values)
        for v in values:
            text = text.replace(v, MASK)
        return text
