# cache.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tarfile
import tempfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed artifact cache:
#   key = "<env discriminator>-<name>-" + hash(contents of declared inputs)
#
# The same key always means the same inputs, so an entry is written once and
# never replaced. A miss on the exact key may still fall back to the newest
# entry matching one of the restore-key prefixes ("best available" cache).
#
# Store layout:
#   root/
#     entries/
#       <sha256(key)>.tar.gz
#       <sha256(key)>.json     metadata (key, size, timestamps, paths)
#
# Archive layout:
#   ws/<relpath>    paths inside the job workspace
#   abs/<path>      absolute paths outside it (e.g. ~/.nuget/packages)
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".pipewright/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".pipewright/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    archive: str
    size: int
    created_at: float
    last_access: float
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str                       # requested key
    reason: str                    # human readable
    matched_key: Optional[str] = None

    @property
    def exact(self) -> bool:
        return self.hit and self.matched_key == self.key


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    # Path.match treats "**" like "*", so "dir/**" also gets a prefix check
    rel_path = Path(rel)
    for g in globs:
        if g.endswith("/**") and (rel + "/").startswith(g[:-2]):
            return True
        if rel_path.match(g):
            return True
    return False


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand patterns into concrete paths.
    Supports:
      - file path: "pyproject.toml"
      - dir path:  "src/"
      - glob:      "**/*.csproj", "tests/**/*.py"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if "*" not in pat and p.exists():
            out.append(p)
            continue
        out.extend(sorted(m for m in root.glob(pat) if m.exists()))

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def hash_files(
    root: str | Path,
    patterns: Sequence[str],
    *,
    excludes: Optional[List[str]] = None,
) -> str:
    """
    Stable sha256 over the relative paths and contents of every file matched
    by patterns. Returns "" when nothing matches.
    """
    root = Path(root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    file_fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, exclude_globs):
                continue
            file_fps.append((rel, _hash_file_contents(f)))

    if not file_fps:
        return ""
    file_fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    return _sha256_str(_json_dumps_stable(file_fps))


def compose_key(discriminator: str, name: str, inputs_hash: str) -> str:
    """'<os>-<name>-<hash>'; the part before the hash doubles as a restore prefix."""
    return "-".join(p for p in (discriminator, name, inputs_hash) if p)


def _arcname(path: Path, root: Path) -> str:
    try:
        return "ws/" + _relpath(path, root)
    except ValueError:
        return "abs/" + str(path.resolve()).lstrip("/").replace("\\", "/")


class CacheStore:
    """
    File-based artifact cache shared by every run on this host.

    Concurrent access is safe for distinct keys; operations on the same key
    are serialised by a per-key lock.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, *, max_bytes: Optional[int] = None):
        self.root = Path(root).resolve()
        self.entries_dir = self.root / "entries"
        self.entries_dir.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    # ---- paths / locks ----

    def _lock(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def archive_path(self, key: str) -> Path:
        return self.entries_dir / f"{_sha256_str(key)}.tar.gz"

    def meta_path(self, key: str) -> Path:
        return self.entries_dir / f"{_sha256_str(key)}.json"

    def _read_meta(self, path: Path) -> Optional[CacheEntry]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            data["paths"] = tuple(data.get("paths", ()))
            return CacheEntry(**data)
        except (OSError, ValueError, TypeError) as e:
            log.warning("ignoring unreadable cache metadata %s: %s", path, e)
            return None

    def _write_meta(self, entry: CacheEntry) -> None:
        man = self.meta_path(entry.key)
        tmp = man.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(asdict(entry), sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(man)

    # ---- queries ----

    def entries(self) -> List[CacheEntry]:
        out = []
        for man in sorted(self.entries_dir.glob("*.json")):
            entry = self._read_meta(man)
            if entry is not None and Path(entry.archive).exists():
                out.append(entry)
        return out

    def get(self, key: str) -> Optional[CacheEntry]:
        man = self.meta_path(key)
        if not man.exists() or not self.archive_path(key).exists():
            return None
        return self._read_meta(man)

    def lookup(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheEntry]:
        """Exact key first, then each restore key as a prefix (newest entry wins)."""
        entry = self.get(key)
        if entry is not None:
            return entry
        if not restore_keys:
            return None
        all_entries = self.entries()
        for prefix in restore_keys:
            prefix = prefix.strip()
            if not prefix:
                continue
            candidates = [e for e in all_entries if e.key.startswith(prefix)]
            if candidates:
                return max(candidates, key=lambda e: e.created_at)
        return None

    def total_bytes(self) -> int:
        return sum(e.size for e in self.entries())

    # ---- restore / save ----

    def restore(
        self,
        key: str,
        restore_keys: Sequence[str] = (),
        *,
        dest: str | Path = ".",
    ) -> CacheHit:
        """
        Extract the best matching entry into dest.

        A miss is a normal outcome and is reported through CacheHit.hit.
        """
        dest_root = Path(dest).resolve()
        entry = self.lookup(key, restore_keys)
        if entry is None:
            return CacheHit(hit=False, key=key, reason="cache miss")

        with self._lock(entry.key):
            try:
                with tempfile.TemporaryDirectory(prefix="pipewright-restore-") as tmp:
                    with tarfile.open(entry.archive, mode="r:gz") as tar:
                        tar.extractall(path=tmp, filter="data")
                    staged = Path(tmp)
                    if (staged / "ws").exists():
                        shutil.copytree(staged / "ws", dest_root, dirs_exist_ok=True)
                    if (staged / "abs").exists():
                        shutil.copytree(staged / "abs", Path("/"), dirs_exist_ok=True)
            except (OSError, tarfile.TarError) as e:
                log.warning("cache entry %s exists but restore failed: %s", entry.key, e)
                return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}")

            self._write_meta(
                CacheEntry(
                    key=entry.key,
                    archive=entry.archive,
                    size=entry.size,
                    created_at=entry.created_at,
                    last_access=time.time(),
                    paths=entry.paths,
                )
            )

        if entry.key == key:
            return CacheHit(hit=True, key=key, matched_key=entry.key, reason="cache hit")
        return CacheHit(hit=True, key=key, matched_key=entry.key, reason=f"restored from prefix match {entry.key}")

    def save(self, key: str, paths: Sequence[str], *, root: str | Path = ".") -> CacheEntry:
        """
        Archive paths under key. Saving a key that already exists is a no-op:
        entries are immutable once written.
        """
        if not key:
            raise ValueError("cache key must not be empty")
        src_root = Path(root).resolve()

        with self._lock(key):
            existing = self.get(key)
            if existing is not None:
                log.debug("cache key %s already present, not overwriting", key)
                return existing

            art = self.archive_path(key)
            tmp = art.with_suffix(".tmp")
            try:
                # Build tar.gz in tmp, then atomic rename
                with tarfile.open(str(tmp), mode="w:gz") as tar:
                    for entry in paths:
                        src = Path(os.path.expanduser(entry))
                        if not src.is_absolute():
                            src = src_root / src
                        if not src.exists():
                            log.debug("cache path %s does not exist, skipping", src)
                            continue
                        files = [src] if src.is_file() else list(_iter_files_under(src))
                        for f in files:
                            tar.add(str(f), arcname=_arcname(f, src_root), recursive=False)
                tmp.replace(art)
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)

            now = time.time()
            saved = CacheEntry(
                key=key,
                archive=str(art),
                size=art.stat().st_size,
                created_at=now,
                last_access=now,
                paths=tuple(paths),
            )
            self._write_meta(saved)

        if self.max_bytes is not None:
            self.evict(self.max_bytes)
        return saved

    # ---- eviction ----

    def delete(self, key: str) -> None:
        with self._lock(key):
            self.archive_path(key).unlink(missing_ok=True)
            self.meta_path(key).unlink(missing_ok=True)

    def evict(self, max_bytes: Optional[int] = None) -> List[str]:
        """
        Drop least-recently-used entries until the store fits max_bytes.
        Returns the evicted keys.
        """
        budget = self.max_bytes if max_bytes is None else max_bytes
        if budget is None:
            return []

        entries = sorted(self.entries(), key=lambda e: e.last_access)
        total = sum(e.size for e in entries)
        evicted: List[str] = []
        for entry in entries:
            if total <= budget:
                break
            self.delete(entry.key)
            total -= entry.size
            evicted.append(entry.key)
        if evicted:
            log.info("evicted %d cache entr(ies) to fit %d bytes", len(evicted), budget)
        return evicted
