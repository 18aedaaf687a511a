"""
Tool result cache.

Entries are keyed by the invocation fingerprint and remember the mtime of
every file the arguments reference. A hit is only served after re-checking
those files, so edits made outside the agent are never masked.
"""

import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult, fingerprint
from tools.schemas import CACHEABLE_TOOLS, LISTING_TOOLS, PATH_KEYS, WRITE_TOOLS

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    tool_name: str
    result: ToolResult
    created_at: float
    file_mtimes: Dict[str, Any] = field(default_factory=dict)
    absent_paths: FrozenSet[str] = frozenset()
    expires_at: Optional[float] = None

    @property
    def paths(self) -> Iterable[str]:
        yield from self.file_mtimes
        yield from self.absent_paths


@dataclass
class CacheStats:
    entry_count: int
    hits: int
    misses: int


def extract_paths(arguments: Any) -> List[str]:
    """Filesystem paths referenced by tool arguments (by key convention)."""
    if not isinstance(arguments, dict):
        return []
    return [arguments[k] for k in PATH_KEYS if isinstance(arguments.get(k), str) and arguments[k]]


def _is_under(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


class ToolCache:
    """Fingerprint-keyed cache of successful tool results with file freshness checks."""

    def __init__(self, backend: Optional[Backend] = None):
        self.backend = backend or LocalBackend(".")
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def _mtime(self, path: str) -> Optional[Any]:
        try:
            return self.backend.stat(path)["mtime"]
        except OSError:
            return None

    def _is_stale(self, entry: CacheEntry) -> bool:
        if entry.expires_at is not None and time.time() >= entry.expires_at:
            return True
        for path, recorded in entry.file_mtimes.items():
            if self._mtime(path) != recorded:
                return True
        for path in entry.absent_paths:
            if self._mtime(path) is not None:
                return True
        return False

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def get(self, tool_name: str, arguments: Any) -> Optional[ToolResult]:
        key = fingerprint(tool_name, arguments)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._is_stale(entry):
                del self._entries[key]
                self._misses += 1
                logger.debug(f"Cache entry for {tool_name} is stale, evicted")
                return None
            self._hits += 1
            return entry.result

    def set(self, tool_name: str, arguments: Any, result: ToolResult, ttl: Optional[float] = None) -> None:
        if not result.success:
            return
        mtimes: Dict[str, Any] = {}
        absent = set()
        for raw in extract_paths(arguments):
            path = self.backend.resolve_path(raw)
            mtime = self._mtime(path)
            if mtime is None:
                absent.add(path)
            else:
                mtimes[path] = mtime
        now = time.time()
        entry = CacheEntry(
            tool_name=tool_name,
            result=result,
            created_at=now,
            file_mtimes=mtimes,
            absent_paths=frozenset(absent),
            expires_at=now + ttl if ttl else None,
        )
        with self._lock:
            self._entries[fingerprint(tool_name, arguments)] = entry

    def has(self, tool_name: str, arguments: Any) -> bool:
        """Presence check; does not touch the hit/miss counters."""
        with self._lock:
            return fingerprint(tool_name, arguments) in self._entries

    def delete(self, tool_name: str, arguments: Any) -> bool:
        with self._lock:
            return self._entries.pop(fingerprint(tool_name, arguments), None) is not None

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def _evict_where(self, predicate) -> int:
        with self._lock:
            doomed = [k for k, e in self._entries.items() if predicate(e)]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def invalidate_file(self, path: str) -> int:
        """Drop every entry that references ``path`` (or something under it)."""
        root = self.backend.resolve_path(path)
        count = self._evict_where(lambda e: any(_is_under(p, root) for p in e.paths))
        if count:
            logger.debug(f"Invalidated {count} cache entries for {root}")
        return count

    def invalidate_directory(self, path: str) -> int:
        return self.invalidate_file(path)

    def invalidate_tool(self, tool_name: str) -> int:
        return self._evict_where(lambda e: e.tool_name == tool_name)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(entry_count=len(self._entries), hits=self._hits, misses=self._misses)

    def get_hit_rate(self) -> float:
        with self._lock:
            total = self._hits + self._misses
            return self._hits / total if total else 0.0


# ============================================================
# Invalidation policy
# ============================================================

_BASH_WRITE_PATTERNS = [
    re.compile(r"\b(write|create|save)\b", re.IGNORECASE),
    re.compile(r"\b(delete|remove|rm)\b", re.IGNORECASE),
    re.compile(r"\b(move|rename|mv)\b", re.IGNORECASE),
    re.compile(r"\b(copy|cp)\b", re.IGNORECASE),
    re.compile(r"\b(edit|modify)\b", re.IGNORECASE),
]
_QUOTED_PATH_RE = re.compile(r"""['"]([/.][^'"]+)['"]""")


def should_cache_tool(tool_name: str, arguments: Any) -> bool:
    """Only read-only tools are cached; ``no_cache: true`` opts a call out."""
    if tool_name not in CACHEABLE_TOOLS:
        return False
    if isinstance(arguments, dict) and arguments.get("no_cache") is True:
        return False
    return True


def _drop_listings(cache: ToolCache) -> int:
    return sum(cache.invalidate_tool(name) for name in LISTING_TOOLS)


def invalidate_on_write(cache: ToolCache, tool_name: str, arguments: Any) -> int:
    """Evict whatever a write tool may have made stale. Returns entries removed."""
    if tool_name not in WRITE_TOOLS:
        return 0
    removed = 0
    for path in extract_paths(arguments):
        removed += cache.invalidate_file(path)
    if isinstance(arguments, dict):
        dest = arguments.get("dest")
        if tool_name in ("move", "copy") and isinstance(dest, str):
            removed += cache.invalidate_file(dest)
    removed += _drop_listings(cache)
    return removed


def invalidate_on_bash(cache: ToolCache, command: str, affected_paths: Optional[List[str]] = None) -> int:
    """Evict entries a shell command may have touched.

    With no explicit paths, quoted paths in a write-looking command are used.
    """
    removed = 0
    paths = list(affected_paths or [])
    if not paths and any(p.search(command) for p in _BASH_WRITE_PATTERNS):
        paths = _QUOTED_PATH_RE.findall(command)
    for path in paths:
        removed += cache.invalidate_file(path)
    if paths:
        removed += _drop_listings(cache)
    return removed
