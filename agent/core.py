"""
AgentRuntime: the per-process service object that drives one agent session.

Flow per turn:
1. Route: classify the turn and pick a model tier
2. Call the model with the transcript and tool definitions
3. Admit, schedule and run the proposed tool calls (ToolExecutor)
4. Append results; compress the transcript when it exceeds the budget
5. Loop until the model stops proposing tools or the iteration cap is hit
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend import Backend, LocalBackend
from bedrock_service import BedrockError, CompletionResult
from config import PermissionsConfig, RoutingConfig, app_config, permissions_config, routing_config
from permission_store import DEFAULT_RULES_PATH, PermissionRuleStore
from tools._common import ToolInvocation
from tools.dispatch import ExecutionContext, ToolRegistry

from .cache import ToolCache
from .events import AgentEvent
from .execution import ToolCallOutcome, ToolExecutor
from .history import CompressionOptions, compress, create_context_summarizer, estimate_tokens
from .hooks import HookRunner
from .intent import classify_task, select_model
from .permissions import ConfirmFn, PermissionEngine, PermissionManager
from .prefetch import Prefetcher
from .telemetry import Telemetry

logger = logging.getLogger(__name__)

EventCallback = Callable[[AgentEvent], Awaitable[None]]

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding agent. Use the available tools to inspect and change the "
    "project, and explain what you did when the task is complete."
)


@dataclass
class TurnResult:
    content: str = ""
    model_id: str = ""
    iterations: int = 0
    outcomes: List[ToolCallOutcome] = field(default_factory=list)
    error: Optional[str] = None
    stopped_early: bool = False


class AgentRuntime:
    """Owns the cache, permission state, telemetry, executor and transcript for one session."""

    def __init__(
        self,
        registry: ToolRegistry,
        client: Any = None,
        confirm: Optional[ConfirmFn] = None,
        *,
        backend: Optional[Backend] = None,
        permissions: Optional[PermissionsConfig] = None,
        routing: Optional[RoutingConfig] = None,
        rule_store: Optional[PermissionRuleStore] = None,
        hooks: Optional[HookRunner] = None,
        system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT,
        max_iterations: Optional[int] = None,
        compression: Optional[CompressionOptions] = None,
        summarizer: Optional[Callable[[str], Any]] = None,
        prefetch: Optional[bool] = None,
    ):
        self.registry = registry
        self.client = client
        self.backend = backend or LocalBackend(app_config.working_directory)
        self.routing = routing or routing_config
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations or app_config.max_tool_iterations
        self.compression = compression or CompressionOptions(
            target_tokens=app_config.context_target_tokens,
            keep_first_n=app_config.context_keep_first,
            keep_last_n=app_config.context_keep_last,
            chunk_size=app_config.context_chunk_size,
        )

        if rule_store is None:
            rule_store = PermissionRuleStore(app_config.permission_rules_path or DEFAULT_RULES_PATH)
        self.permission_manager = PermissionManager(rule_store)
        self.permissions = PermissionEngine(permissions or permissions_config, self.permission_manager, confirm)

        self.cache = ToolCache(self.backend)
        self.telemetry = Telemetry()
        self.hooks = hooks
        enable_prefetch = app_config.prefetch_enabled if prefetch is None else prefetch
        self.prefetcher: Optional[Prefetcher] = None
        if enable_prefetch:
            self.prefetcher = Prefetcher(
                registry,
                self.cache,
                context=ExecutionContext(
                    working_directory=self.backend.working_directory, backend=self.backend, call_id="prefetch",
                ),
                timeout=app_config.tool_timeout or None,
            )
        self.executor = ToolExecutor(
            registry,
            self.permissions,
            cache=self.cache,
            telemetry=self.telemetry,
            hooks=hooks,
            backend=self.backend,
            prefetcher=self.prefetcher,
        )
        self.summarizer = summarizer or self._default_summarizer()
        self.transcript: List[Dict[str, Any]] = []
        self._pending_tools: List[ToolInvocation] = []
        self._init_transcript()

    def _init_transcript(self) -> None:
        self.transcript = [{"role": "system", "content": self.system_prompt}] if self.system_prompt else []
        self._pending_tools = []

    def _default_summarizer(self):
        """Summaries come from the fast tier when the client can do plain completions."""
        simple_call = getattr(self.client, "simple_call", None)
        if simple_call is None:
            return None
        return create_context_summarizer(lambda prompt: asyncio.to_thread(simple_call, prompt))

    async def _emit(self, on_event: Optional[EventCallback], event: AgentEvent) -> None:
        if on_event is not None:
            await on_event(event)

    # ------------------------------------------------------------------
    # Model
    # ------------------------------------------------------------------

    async def _complete(self, model_id: str) -> CompletionResult:
        complete = self.client.complete
        tools = self.registry.tool_definitions()
        if inspect.iscoroutinefunction(complete):
            return await complete(self.transcript, tools, model_id)
        return await asyncio.to_thread(complete, self.transcript, tools, model_id)

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    async def maybe_compress(self, on_event: Optional[EventCallback] = None) -> bool:
        """Compress the transcript if it is over budget. Returns True if it changed."""
        before = estimate_tokens(self.transcript)
        if before <= self.compression.target_tokens:
            return False
        compressed = await compress(self.transcript, self.summarizer, self.compression)
        if compressed is self.transcript:
            return False
        self.transcript = compressed
        after = estimate_tokens(compressed)
        logger.info(f"Transcript compressed: ~{before} -> ~{after} tokens")
        await self._emit(on_event, AgentEvent(
            type="compressed", content=f"Context compressed (~{before} -> ~{after} tokens)",
            data={"before": before, "after": after},
        ))
        return True

    async def compact(self) -> int:
        """Summarize the middle of the transcript now, regardless of budget. Returns tokens saved."""
        options = CompressionOptions(
            target_tokens=0,
            keep_first_n=self.compression.keep_first_n,
            keep_last_n=self.compression.keep_last_n,
            chunk_size=self.compression.chunk_size,
        )
        before = estimate_tokens(self.transcript)
        self.transcript = await compress(self.transcript, self.summarizer, options)
        return before - estimate_tokens(self.transcript)

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def run_turn(self, user_message: str, on_event: Optional[EventCallback] = None) -> TurnResult:
        if self.client is None:
            raise ValueError("AgentRuntime.run_turn requires a model client")

        self.transcript.append({"role": "user", "content": user_message})
        turn = TurnResult()

        for iteration in range(1, self.max_iterations + 1):
            turn.iterations = iteration
            await self.maybe_compress(on_event)

            classification = classify_task(user_message, self.transcript, self._pending_tools)
            model_id = select_model(classification, self.routing)
            turn.model_id = model_id
            await self._emit(on_event, AgentEvent(
                type="model_selected", content=model_id,
                data={"tier": classification.tier, "reason": classification.reason,
                      "confidence": classification.confidence},
            ))

            try:
                completion = await self._complete(model_id)
            except BedrockError as e:
                logger.error(f"Model call failed: {e}")
                turn.error = str(e)
                await self._emit(on_event, AgentEvent(type="error", content=str(e)))
                return turn
            except Exception as e:
                logger.exception(f"Unexpected model client error with {model_id}")
                turn.error = f"Model call failed: {e}"
                await self._emit(on_event, AgentEvent(type="error", content=turn.error))
                return turn

            usage = completion.usage or {}
            self.telemetry.record_model_usage(model_id, usage.get("input_tokens", 0), usage.get("output_tokens", 0))

            assistant: Dict[str, Any] = {"role": "assistant", "content": completion.content}
            if completion.tool_calls:
                assistant["tool_calls"] = [
                    {"id": c.call_id, "name": c.name, "arguments": c.arguments} for c in completion.tool_calls
                ]
            self.transcript.append(assistant)
            if completion.content:
                turn.content = completion.content
                await self._emit(on_event, AgentEvent(type="text", content=completion.content))

            if not completion.tool_calls:
                self._pending_tools = []
                await self._emit(on_event, AgentEvent(type="done", content=turn.content))
                return turn

            self._pending_tools = list(completion.tool_calls)
            outcomes = await self.executor.execute_calls(completion.tool_calls, self.transcript, on_event)
            turn.outcomes.extend(outcomes)

        logger.warning(f"Stopped after {self.max_iterations} iterations")
        turn.stopped_early = True
        await self._emit(on_event, AgentEvent(type="max_iterations", content=str(self.max_iterations)))
        return turn

    def reset(self) -> None:
        """Start a fresh session: prefetches, cache, session decisions, telemetry and transcript."""
        if self.prefetcher is not None:
            self.prefetcher.clear()
        self.cache.clear()
        self.cache.reset_stats()
        self.permission_manager.clear_session_decisions()
        self.telemetry.reset()
        self._init_transcript()
        logger.info("Agent runtime reset")
