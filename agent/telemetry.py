"""
Per-session performance accounting: tool timings, cache hits, parallel
savings and model cost. Owned by the runtime; reset() starts a new session.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List

from config import estimate_cost

logger = logging.getLogger(__name__)


@dataclass
class ToolExecutionMetric:
    tool_name: str
    duration_ms: float
    success: bool
    cache_hit: bool
    timestamp: float = field(default_factory=time.time)


@dataclass
class ParallelExecutionMetric:
    tool_count: int
    parallel_ms: float
    sequential_estimate_ms: float
    savings_ms: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class ModelUsageMetric:
    model_id: str
    prompt_tokens: int
    completion_tokens: int
    cost: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class ToolStats:
    count: int = 0
    total_ms: float = 0.0
    avg_ms: float = 0.0
    success_rate: float = 0.0


class Telemetry:
    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.tool_executions: List[ToolExecutionMetric] = []
            self.parallel_executions: List[ParallelExecutionMetric] = []
            self.model_usage: List[ModelUsageMetric] = []
            self.cache_hits = 0
            self.cache_misses = 0
            self.session_start = time.time()

    def record_tool_execution(self, tool_name: str, duration_ms: float, success: bool,
                              cache_hit: bool = False) -> None:
        if not self.enabled:
            return
        with self._lock:
            self.tool_executions.append(ToolExecutionMetric(tool_name, duration_ms, success, cache_hit))
            if cache_hit:
                self.cache_hits += 1
            else:
                self.cache_misses += 1

    def record_parallel_execution(self, tool_count: int, parallel_ms: float, sequential_estimate_ms: float) -> None:
        if not self.enabled:
            return
        savings = max(0.0, sequential_estimate_ms - parallel_ms)
        with self._lock:
            self.parallel_executions.append(
                ParallelExecutionMetric(tool_count, parallel_ms, sequential_estimate_ms, savings)
            )

    def record_model_usage(self, model_id: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Record one model call; returns its estimated cost in USD."""
        cost = estimate_cost(model_id, prompt_tokens, completion_tokens)
        if self.enabled:
            with self._lock:
                self.model_usage.append(ModelUsageMetric(model_id, prompt_tokens, completion_tokens, cost))
        return cost

    @property
    def total_tool_calls(self) -> int:
        return len(self.tool_executions)

    @property
    def cache_hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        return self.cache_hits / total if total else 0.0

    @property
    def total_cost(self) -> float:
        return sum(m.cost for m in self.model_usage)

    @property
    def parallel_savings_ms(self) -> float:
        return sum(m.savings_ms for m in self.parallel_executions)

    def get_tool_stats(self) -> Dict[str, ToolStats]:
        with self._lock:
            executions = list(self.tool_executions)
        stats: Dict[str, ToolStats] = {}
        successes: Dict[str, int] = {}
        for m in executions:
            s = stats.setdefault(m.tool_name, ToolStats())
            s.count += 1
            s.total_ms += m.duration_ms
            successes[m.tool_name] = successes.get(m.tool_name, 0) + (1 if m.success else 0)
        for name, s in stats.items():
            s.avg_ms = s.total_ms / s.count
            s.success_rate = successes[name] / s.count
        return stats

    def summary(self) -> str:
        lines = [
            "Performance Summary",
            f"Session Duration: {time.time() - self.session_start:.1f}s",
            f"Total Tool Calls: {self.total_tool_calls}",
            f"Cache Hit Rate: {self.cache_hit_rate * 100:.1f}%",
            f"Time Saved (Parallel): {self.parallel_savings_ms / 1000:.2f}s",
            f"Model Cost: ${self.total_cost:.4f}",
        ]
        stats = self.get_tool_stats()
        if stats:
            lines.append("Tool Stats:")
            for name, s in sorted(stats.items(), key=lambda kv: -kv[1].count):
                lines.append(f"  {name}: {s.count} calls, avg {s.avg_ms:.0f}ms, {s.success_rate * 100:.0f}% success")
        return "\n".join(lines)
