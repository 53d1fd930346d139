from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .cache import DEFAULT_CACHE_DIR
from .executor import DEFAULT_WORK_DIR
from .recorder import DEFAULT_DATABASE_URL


def parse_runners(value: str) -> Dict[str, str]:
    """'ubuntu-latest=ubuntu:22.04,alpine=alpine:3' -> {tag: image}"""
    out: Dict[str, str] = {}
    for item in value.split(","):
        tag, sep, image = item.partition("=")
        if sep and tag.strip() and image.strip():
            out[tag.strip()] = image.strip()
    return out


@dataclass
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    cache_dir: str = DEFAULT_CACHE_DIR
    cache_max_bytes: Optional[int] = None
    work_dir: str = DEFAULT_WORK_DIR
    max_workers: Optional[int] = None
    runners: Dict[str, str] = field(default_factory=dict)
    redis_url: Optional[str] = None
    queue_name: str = "pipewright:events"
    secret_prefix: str = "PIPEWRIGHT_SECRET_"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        max_bytes = env.get("PIPEWRIGHT_CACHE_MAX_BYTES")
        workers = env.get("PIPEWRIGHT_MAX_WORKERS")
        return cls(
            database_url=env.get("PIPEWRIGHT_DATABASE_URL", DEFAULT_DATABASE_URL),
            cache_dir=env.get("PIPEWRIGHT_CACHE_DIR", DEFAULT_CACHE_DIR),
            cache_max_bytes=int(max_bytes) if max_bytes else None,
            work_dir=env.get("PIPEWRIGHT_WORK_DIR", DEFAULT_WORK_DIR),
            max_workers=int(workers) if workers else None,
            runners=parse_runners(env.get("PIPEWRIGHT_RUNNERS", "")),
            redis_url=env.get("REDIS_URL") or None,
            queue_name=env.get("PIPEWRIGHT_QUEUE", "pipewright:events"),
            secret_prefix=env.get("PIPEWRIGHT_SECRET_PREFIX", "PIPEWRIGHT_SECRET_"),
        )
