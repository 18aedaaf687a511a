"""
Tool-side types for the agent core: invocations, results, name sets and the
registry the runtime dispatches through. Individual tool implementations are
registered by the host application.
"""

from tools._common import (  # noqa: F401
    ToolResult,
    ToolError,
    ToolIdentifier,
    ToolInvocation,
    canonicalize_args,
    fingerprint,
)
from tools.schemas import (  # noqa: F401
    SAFE_TOOLS,
    READONLY_BLOCKED_TOOLS,
    WRITE_TOOLS,
    SAFE_PARALLEL_TOOLS,
    INTERACTIVE_TOOLS,
    CACHEABLE_TOOLS,
    WEB_TOOLS,
    LISTING_TOOLS,
    PATH_KEYS,
    TOOL_NAME_NORMALIZE,
    normalize_tool_name,
)
from tools.dispatch import (  # noqa: F401
    ExecutionContext,
    RegisteredTool,
    ToolRegistry,
    execute_tool,
    needs_approval,
)
