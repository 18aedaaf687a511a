"""
Speculative tool prefetching.

After a tool runs, predict the read-only calls the model is likely to make
next (from fixed follow-up rules and from calls repeated in the last few
minutes) and run them in the background so their results are already in
the tool cache. At most MAX_PREFETCH_QUEUE prefetches are in flight.
"""

import asyncio
import logging
import os
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from tools._common import ToolResult, fingerprint
from tools.dispatch import ExecutionContext, ToolRegistry
from tools.schemas import normalize_tool_name

from .cache import ToolCache, should_cache_tool

logger = logging.getLogger(__name__)

MAX_PREFETCH_QUEUE = 10
MAX_RECENT_PATTERNS = 50
HISTORY_WINDOW_SECONDS = 300
HISTORY_MIN_REPEATS = 2
MAX_HISTORY_PREDICTIONS = 5

PREFETCHABLE_TOOLS = frozenset({
    "read", "file_info", "list_dir", "glob", "grep",
    "git_status", "git_diff", "git_log",
})

SOURCE_EXTENSIONS = frozenset({"py", "ts", "tsx", "js", "jsx", "go", "rs"})
LISTING_GLOBS = ("**/*.py", "**/*.json")

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

Prediction = Tuple[str, Dict[str, Any]]


@dataclass(frozen=True)
class PrefetchTarget:
    """A likely follow-up call; ``map_args`` returns None when it does not apply."""
    tool: str
    map_args: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]
    priority: str = "low"


def _directory_of(arguments: Dict[str, Any]) -> Optional[str]:
    path = arguments.get("file_path")
    if not isinstance(path, str) or not path:
        return None
    return os.path.dirname(path) or "."


def _same_file(arguments: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    path = arguments.get("file_path")
    return {"file_path": path} if isinstance(path, str) and path else None


def _containing_dir(arguments: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    directory = _directory_of(arguments)
    return {"dir_path": directory} if directory else None


def _imports_near(arguments: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    directory = _directory_of(arguments)
    ext = os.path.splitext(arguments.get("file_path") or "")[1].lstrip(".")
    if directory is None or ext not in SOURCE_EXTENSIONS:
        return None
    return {"pattern": "import|require|from", "path": directory, "include": f"*.{ext}"}


def _listing_glob(pattern: str) -> Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]:
    def _map(arguments: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        directory = arguments.get("dir_path") or arguments.get("path")
        return {"pattern": pattern, "path": directory} if isinstance(directory, str) else None
    return _map


PREFETCH_RULES: Dict[str, List[PrefetchTarget]] = {
    "read": [
        PrefetchTarget("file_info", _same_file, "medium"),
        PrefetchTarget("list_dir", _containing_dir),
        PrefetchTarget("grep", _imports_near),
    ],
    "list_dir": [PrefetchTarget("glob", _listing_glob(p)) for p in LISTING_GLOBS],
    "git_status": [
        PrefetchTarget("git_diff", lambda a: {}, "high"),
        PrefetchTarget("git_log", lambda a: {"n": 5}, "medium"),
    ],
    # re-read what was just written; the write invalidated the cached copy
    "edit": [PrefetchTarget("read", _same_file, "high")],
    "write": [PrefetchTarget("read", _same_file, "high")],
}


class Prefetcher:
    """Bounded background cache warmer for one session."""

    def __init__(
        self,
        registry: ToolRegistry,
        cache: ToolCache,
        context: Optional[ExecutionContext] = None,
        rules: Optional[Dict[str, List[PrefetchTarget]]] = None,
        max_pending: int = MAX_PREFETCH_QUEUE,
        timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.cache = cache
        self.context = context or ExecutionContext(call_id="prefetch")
        self.rules = PREFETCH_RULES if rules is None else rules
        self.max_pending = max_pending
        self.timeout = timeout
        self.enabled = True
        self._pending: Dict[str, asyncio.Task] = {}
        self._recent: Deque[Tuple[str, Dict[str, Any], float]] = deque(maxlen=MAX_RECENT_PATTERNS)
        self.started = 0
        self.warmed = 0

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        if not enabled:
            self._cancel_pending()

    def record_pattern(self, tool_name: str, arguments: Dict[str, Any]) -> None:
        self._recent.append((tool_name, dict(arguments or {}), time.monotonic()))

    def predict_from_history(self) -> List[Prediction]:
        """Calls repeated at least twice in the recent window, most frequent first."""
        cutoff = time.monotonic() - HISTORY_WINDOW_SECONDS
        counts: Counter = Counter()
        calls: Dict[str, Prediction] = {}
        for tool, args, seen_at in self._recent:
            if seen_at < cutoff:
                continue
            key = fingerprint(tool, args)
            counts[key] += 1
            calls[key] = (tool, args)
        return [calls[key] for key, n in counts.most_common(MAX_HISTORY_PREDICTIONS) if n >= HISTORY_MIN_REPEATS]

    def predictions(self, tool_name: str, arguments: Dict[str, Any]) -> List[Prediction]:
        """Rule-based follow-ups (by priority) then history-based ones."""
        targets = sorted(self.rules.get(tool_name, []), key=lambda t: PRIORITY_ORDER.get(t.priority, 2))
        out: List[Prediction] = []
        for target in targets:
            args = target.map_args(arguments)
            if args is not None:
                out.append((target.tool, args))
        return out + self.predict_from_history()

    def predict(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> int:
        """Start prefetches for likely next calls. Returns how many were started.

        Must be called from a running event loop.
        """
        if not self.enabled:
            return 0
        name = normalize_tool_name(tool_name)
        arguments = arguments or {}
        self.record_pattern(name, arguments)

        started = 0
        for tool, args in self.predictions(name, arguments):
            if len(self._pending) >= self.max_pending:
                logger.debug(f"Prefetch queue full ({self.max_pending}), skipping the rest")
                break
            if tool not in PREFETCHABLE_TOOLS or not should_cache_tool(tool, args):
                continue
            if self.registry.get(tool) is None:
                continue
            key = fingerprint(tool, args)
            if key in self._pending or self.cache.has(tool, args):
                continue
            task = asyncio.get_running_loop().create_task(self._prefetch(tool, args))
            self._pending[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))
            started += 1

        self.started += started
        return started

    async def _prefetch(self, tool: str, arguments: Dict[str, Any]) -> ToolResult:
        result = await self.registry.execute(tool, arguments, self.context, default_timeout=self.timeout)
        if result.success:
            self.cache.set(tool, arguments, result)
            self.warmed += 1
            logger.debug(f"Prefetched {tool}")
        else:
            logger.debug(f"Prefetch of {tool} failed: {result.error}")
        return result

    def take(self, tool_name: str, arguments: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Hand over an in-flight prefetch for this exact call, if any."""
        return self._pending.pop(fingerprint(normalize_tool_name(tool_name), arguments or {}), None)

    def has_pending(self, tool_name: str, arguments: Dict[str, Any]) -> bool:
        return fingerprint(normalize_tool_name(tool_name), arguments or {}) in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every in-flight prefetch to finish."""
        tasks = list(self._pending.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    def _cancel_pending(self) -> None:
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()

    def clear(self) -> None:
        self._cancel_pending()
        self._recent.clear()

    def get_stats(self) -> Dict[str, int]:
        return {
            "pending": len(self._pending),
            "recent_patterns": len(self._recent),
            "started": self.started,
            "warmed": self.warmed,
        }
