"""
Agent package - execution core of the coding agent.

This package contains the core functionality split into logical modules:
- events: AgentEvent and PermissionDecision data types
- errors: Exception hierarchy
- concurrency: Mutex, Semaphore, ReadWriteLock and bounded task runners
- cache: Tool result cache and invalidation policy
- permissions: Permission policy engine and rule manager
- history: Context compression
- intent: Task classification and model tier routing
- hooks: PreToolUse / PostToolUse shell hooks
- telemetry: Tool timing, cache and model cost accounting
- prefetch: Background cache warming for likely follow-up reads
- execution: Tool call execution pipeline
- core: AgentRuntime service object
"""

# Core classes and data types
from .core import AgentRuntime, TurnResult
from .events import AgentEvent, PermissionDecision
from .errors import (
    AgentCoreError,
    PermissionDenied,
    ToolExecutionFailed,
    CompressionSummarizerFailed,
    HookTimeout,
)

# Subsystems
from .cache import ToolCache, should_cache_tool, invalidate_on_write, invalidate_on_bash
from .concurrency import (
    Mutex,
    Semaphore,
    ReadWriteLock,
    SettledResult,
    TaskQueue,
    run_with_concurrency,
    run_settled_with_concurrency,
    map_with_concurrency,
    chunk,
)
from .permissions import (
    PermissionEngine,
    PermissionManager,
    PermissionRule,
    parse_permission_pattern,
    check_permission_pattern,
    check_permission,
    create_permission_filter,
)
from .history import (
    CompressionOptions,
    CompressionResult,
    compress,
    compress_with_metrics,
    progressive_compress,
    identify_critical_messages,
    calculate_message_importance,
    estimate_tokens,
    create_context_summarizer,
)
from .intent import TaskClassification, classify_task, select_model, get_cheaper_alternative
from .hooks import HookRunner, parse_hooks_config
from .telemetry import Telemetry
from .prefetch import Prefetcher, PrefetchTarget
from .execution import ToolExecutor, ToolCallOutcome, classify_tool_calls

__all__ = [
    # Runtime
    "AgentRuntime",
    "TurnResult",

    # Data types
    "AgentEvent",
    "PermissionDecision",

    # Errors
    "AgentCoreError",
    "PermissionDenied",
    "ToolExecutionFailed",
    "CompressionSummarizerFailed",
    "HookTimeout",

    # Cache
    "ToolCache",
    "should_cache_tool",
    "invalidate_on_write",
    "invalidate_on_bash",

    # Concurrency
    "Mutex",
    "Semaphore",
    "ReadWriteLock",
    "SettledResult",
    "TaskQueue",
    "run_with_concurrency",
    "run_settled_with_concurrency",
    "map_with_concurrency",
    "chunk",

    # Permissions
    "PermissionEngine",
    "PermissionManager",
    "PermissionRule",
    "parse_permission_pattern",
    "check_permission_pattern",
    "check_permission",
    "create_permission_filter",

    # Compression
    "CompressionOptions",
    "CompressionResult",
    "compress",
    "compress_with_metrics",
    "progressive_compress",
    "identify_critical_messages",
    "calculate_message_importance",
    "estimate_tokens",
    "create_context_summarizer",

    # Routing
    "TaskClassification",
    "classify_task",
    "select_model",
    "get_cheaper_alternative",

    # Execution
    "HookRunner",
    "parse_hooks_config",
    "Telemetry",
    "Prefetcher",
    "PrefetchTarget",
    "ToolExecutor",
    "ToolCallOutcome",
    "classify_tool_calls",
]
