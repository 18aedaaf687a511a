"""
Tool call execution pipeline.

Gates every proposed call through the permission engine (in the order the
model proposed them), then runs read-only calls concurrently under a bounded
runner and everything else one at a time. Results go through the tool cache,
cache invalidation, hooks and telemetry before being appended to the
transcript. A successful call may start background prefetches of likely
follow-up reads.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend import Backend, LocalBackend
from config import app_config
from tools._common import ToolInvocation, ToolResult
from tools.dispatch import ExecutionContext, ToolRegistry
from tools.schemas import INTERACTIVE_TOOLS, PATH_KEYS, SAFE_PARALLEL_TOOLS, WEB_TOOLS, normalize_tool_name

from .cache import ToolCache, invalidate_on_bash, invalidate_on_write, should_cache_tool
from .concurrency import Mutex, run_with_concurrency
from .events import AgentEvent, PermissionDecision
from .hooks import HookContext, HookRunner
from .permissions import PermissionEngine
from .prefetch import Prefetcher
from .telemetry import Telemetry

logger = logging.getLogger(__name__)

EventCallback = Callable[[AgentEvent], Awaitable[None]]


@dataclass
class ToolCallOutcome:
    call: ToolInvocation
    result: ToolResult
    allowed: bool = True
    cache_hit: bool = False
    deduplicated: bool = False
    duration_ms: float = 0.0
    decision: Optional[PermissionDecision] = None


@dataclass
class ClassifiedCalls:
    parallel: List[int]
    sequential: List[int]
    interactive: List[int]


def classify_tool_calls(calls: List[ToolInvocation]) -> ClassifiedCalls:
    """Split call indices into parallel-safe, sequential and interactive groups."""
    groups = ClassifiedCalls([], [], [])
    for i, call in enumerate(calls):
        name = normalize_tool_name(call.name)
        if name in INTERACTIVE_TOOLS:
            groups.interactive.append(i)
        elif name in SAFE_PARALLEL_TOOLS:
            groups.parallel.append(i)
        else:
            groups.sequential.append(i)
    return groups


def tool_message(call: ToolInvocation, result: ToolResult) -> Dict[str, Any]:
    """Tool-role transcript entry for a result"""
    return {
        "role": "tool",
        "tool_call_id": call.call_id,
        "name": call.name,
        "content": result.output if result.success else (result.error or "Unknown error"),
        "is_error": not result.success,
    }


def _first_path(arguments: Dict[str, Any]) -> Optional[str]:
    for key in PATH_KEYS:
        if isinstance(arguments.get(key), str):
            return arguments[key]
    return None


class ToolExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        permissions: PermissionEngine,
        cache: Optional[ToolCache] = None,
        telemetry: Optional[Telemetry] = None,
        hooks: Optional[HookRunner] = None,
        backend: Optional[Backend] = None,
        max_concurrency: Optional[int] = None,
        web_cache_ttl: Optional[float] = None,
        tool_timeout: Optional[float] = None,
        prefetcher: Optional[Prefetcher] = None,
    ):
        self.registry = registry
        self.permissions = permissions
        self.backend = backend or LocalBackend(app_config.working_directory)
        self.cache = cache or ToolCache(self.backend)
        self.telemetry = telemetry or Telemetry()
        self.hooks = hooks
        self.max_concurrency = max_concurrency or app_config.max_tool_concurrency
        self.web_cache_ttl = app_config.web_cache_ttl if web_cache_ttl is None else web_cache_ttl
        # applies only to tools with no timeout of their own or from the registry; 0 disables
        self.tool_timeout = app_config.tool_timeout if tool_timeout is None else tool_timeout
        self.prefetcher = prefetcher
        self._transcript_lock = Mutex()
        # fingerprint -> result future of the execution currently running
        self._in_flight: Dict[str, asyncio.Future] = {}

    async def _emit(self, on_event: Optional[EventCallback], event: AgentEvent) -> None:
        if on_event is not None:
            await on_event(event)

    # ------------------------------------------------------------------
    # Single call
    # ------------------------------------------------------------------

    async def _run_tool(self, call: ToolInvocation) -> ToolResult:
        context = ExecutionContext(
            working_directory=self.backend.working_directory, backend=self.backend, call_id=call.call_id,
        )
        return await self.registry.execute(
            call.name, call.arguments, context, default_timeout=self.tool_timeout or None,
        )

    async def _run_deduplicated(self, call: ToolInvocation) -> tuple:
        """At most one concurrent execution per fingerprint. Returns (result, shared)."""
        key = call.fingerprint
        pending = self._in_flight.get(key)
        if pending is not None:
            return await asyncio.shield(pending), True

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await self._run_tool(call)
            future.set_result(result)
            return result, False
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            future.exception()  # waiters re-raise; silence the unretrieved warning
            raise
        finally:
            self._in_flight.pop(key, None)

    def _hook_context(self, call: ToolInvocation, result: Optional[ToolResult] = None) -> HookContext:
        return HookContext(
            tool_name=call.name,
            arguments=call.arguments,
            cwd=self.backend.working_directory,
            file_path=_first_path(call.arguments),
            result=result,
        )

    async def execute_one(self, call: ToolInvocation) -> ToolCallOutcome:
        """Run one already-admitted call through hooks, cache and invalidation."""
        name = normalize_tool_name(call.name)

        if self.hooks is not None and self.hooks.has_hooks("PreToolUse"):
            hook = await self.hooks.run("PreToolUse", self._hook_context(call))
            if not hook.proceed:
                result = ToolResult(success=False, output="", error=f"Blocked by PreToolUse hook: {hook.error}")
                return ToolCallOutcome(call, result)

        cacheable = should_cache_tool(name, call.arguments)
        if cacheable:
            cached = self.cache.get(name, call.arguments)
            if cached is not None:
                self.telemetry.record_tool_execution(name, 0, True, cache_hit=True)
                logger.debug(f"Cache hit for {name}")
                return ToolCallOutcome(call, cached, cache_hit=True)

        start = time.monotonic()
        prefetched = self.prefetcher.take(name, call.arguments) if cacheable and self.prefetcher else None
        if prefetched is not None:
            result, shared = await prefetched, False
        elif cacheable:
            result, shared = await self._run_deduplicated(call)
        else:
            result, shared = await self._run_tool(call), False
        duration_ms = (time.monotonic() - start) * 1000

        if not shared:
            self.telemetry.record_tool_execution(name, duration_ms, result.success)
            if cacheable and result.success:
                ttl = self.web_cache_ttl if name in WEB_TOOLS else None
                self.cache.set(name, call.arguments, result, ttl=ttl)
            removed = invalidate_on_write(self.cache, name, call.arguments)
            if name == "bash":
                removed += invalidate_on_bash(self.cache, str(call.arguments.get("command", "")))
            if removed:
                logger.debug(f"{name} invalidated {removed} cache entries")
            if self.prefetcher is not None and result.success:
                self.prefetcher.predict(name, call.arguments)

        if self.hooks is not None and self.hooks.has_hooks("PostToolUse"):
            await self.hooks.run("PostToolUse", self._hook_context(call, result))

        if not result.success:
            logger.info(f"Tool {name} failed: {result.error}")
        return ToolCallOutcome(call, result, deduplicated=shared, duration_ms=duration_ms)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def _append(self, transcript: Optional[List[Dict[str, Any]]], outcome: ToolCallOutcome,
                      on_event: Optional[EventCallback]) -> None:
        async with self._transcript_lock:
            if transcript is not None:
                transcript.append(tool_message(outcome.call, outcome.result))
        result = outcome.result
        await self._emit(on_event, AgentEvent(
            type="tool_result" if outcome.allowed else "tool_rejected",
            content=result.output if result.success else (result.error or ""),
            data={
                "tool_name": outcome.call.name,
                "tool_use_id": outcome.call.call_id,
                "success": result.success,
                "cache_hit": outcome.cache_hit,
            },
        ))

    async def execute_calls(self, calls: List[ToolInvocation],
                            transcript: Optional[List[Dict[str, Any]]] = None,
                            on_event: Optional[EventCallback] = None) -> List[ToolCallOutcome]:
        """Admit, schedule and run a batch of calls. Output order matches ``calls``."""
        outcomes: List[Optional[ToolCallOutcome]] = [None] * len(calls)
        admitted: List[int] = []

        for i, call in enumerate(calls):
            decision = await self.permissions.decide(normalize_tool_name(call.name), call.arguments)
            if decision.allowed:
                admitted.append(i)
                continue
            result = ToolResult(success=False, output="", error=f"Permission denied: {decision.reason}")
            outcomes[i] = ToolCallOutcome(call, result, allowed=False, decision=decision)
            await self._append(transcript, outcomes[i], on_event)

        groups = classify_tool_calls([calls[i] for i in admitted])
        parallel = [admitted[j] for j in groups.parallel]
        sequential = [admitted[j] for j in groups.sequential]
        interactive = [admitted[j] for j in groups.interactive]

        async def _run(index: int) -> ToolCallOutcome:
            outcome = await self.execute_one(calls[index])
            outcomes[index] = outcome
            await self._append(transcript, outcome, on_event)
            return outcome

        if parallel:
            start = time.monotonic()
            results = await run_with_concurrency([lambda i=i: _run(i) for i in parallel], self.max_concurrency)
            for index, value in zip(parallel, results):
                if isinstance(value, Exception):
                    logger.error(f"Parallel tool {calls[index].name} raised: {value}")
                    outcomes[index] = ToolCallOutcome(calls[index], ToolResult(False, "", f"Tool error: {value}"))
                    await self._append(transcript, outcomes[index], on_event)
            elapsed_ms = (time.monotonic() - start) * 1000
            sequential_ms = sum(o.duration_ms for o in (outcomes[i] for i in parallel) if o is not None)
            if len(parallel) > 1:
                self.telemetry.record_parallel_execution(len(parallel), elapsed_ms, sequential_ms)

        for index in sequential + interactive:
            await _run(index)

        return [o for o in outcomes if o is not None]
