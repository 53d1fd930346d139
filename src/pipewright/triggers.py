# triggers.py
from __future__ import annotations

import json
import logging
import queue
from typing import Any, Dict, Iterable, List, Optional, Protocol

import redis

from .model import Event, EventKind, PipelineDefinition

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------

class TriggerEvaluator:
    """
    Picks the pipeline an event should start.

    Definitions are tried in registration order and the first one whose
    rules match wins. No match is not an error: match() returns None.
    """

    def __init__(self, definitions: Iterable[PipelineDefinition] = ()):
        self.definitions: List[PipelineDefinition] = list(definitions)

    def add(self, definition: PipelineDefinition) -> None:
        self.definitions.append(definition)

    def match(self, event: Event) -> Optional[PipelineDefinition]:
        for definition in self.definitions:
            if any(rule.matches(event) for rule in definition.triggers):
                log.debug("event %s (%s@%s) matched %s", event.id, event.kind.value, event.branch, definition.name)
                return definition
        log.info("no trigger matched %s on branch %r", event.kind.value, event.branch)
        return None


def _strip_ref(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def event_from_webhook(event_name: str, payload: Dict[str, Any]) -> Event:
    """
    Convert a GitHub-style webhook delivery into an Event.

      push               -> branch from payload["ref"] (refs/heads/<b>)
      pull_request       -> branch is the PR's base branch
      workflow_dispatch  -> branch from payload["ref"], may be empty
    """
    kind = EventKind.parse(event_name)
    if kind is EventKind.PULL_REQUEST:
        pr = payload.get("pull_request") or {}
        branch = (pr.get("base") or {}).get("ref", "")
        sha = (pr.get("head") or {}).get("sha")
    else:
        branch = _strip_ref(str(payload.get("ref") or ""))
        sha = payload.get("after") or payload.get("sha")
    return Event(kind=kind, branch=branch, sha=sha, payload=payload)


# ---------------------------------------------------------------------
# Inbound event queue
# ---------------------------------------------------------------------

class EventQueue(Protocol):
    def put(self, event: Event) -> None:
        ...

    def get(self, timeout: float = 5.0) -> Optional[Event]:
        ...


class InMemoryEventQueue:
    """Single-process queue (CLI, tests, `serve` without Redis)."""

    def __init__(self):
        self._q: "queue.Queue[Event]" = queue.Queue()

    def put(self, event: Event) -> None:
        self._q.put(event)

    def get(self, timeout: float = 5.0) -> Optional[Event]:
        try:
            return self._q.get(timeout=timeout)
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._q.qsize()


class RedisEventQueue:
    """
    FIFO list in Redis shared by API processes and dispatchers:
    rpush on ingest, blpop on consume.
    """

    def __init__(self, client, name: str = "pipewright:events"):
        self.r = client
        self.name = name

    @classmethod
    def from_url(cls, url: str, name: str = "pipewright:events") -> RedisEventQueue:
        return cls(redis.Redis.from_url(url, decode_responses=True), name)

    def put(self, event: Event) -> None:
        self.r.rpush(self.name, json.dumps(event.to_dict()))  # FIFO: push right

    def get(self, timeout: float = 5.0) -> Optional[Event]:
        item = self.r.blpop(self.name, timeout=max(1, int(timeout)))  # FIFO: pop left
        if not item:
            return None
        _q, raw = item
        try:
            return Event.from_dict(json.loads(raw))
        except (ValueError, KeyError) as e:
            log.error("dropping malformed event from %s: %s", self.name, e)
            return None

    def __len__(self) -> int:
        return int(self.r.llen(self.name))
