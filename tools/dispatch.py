"""Tool registration, execution dispatch and approval logic."""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from backend import Backend
from tools._common import ToolError, ToolIdentifier, ToolResult
from tools.schemas import (
    INTERACTIVE_TOOLS, SAFE_PARALLEL_TOOLS, SAFE_TOOLS, WRITE_TOOLS, normalize_tool_name,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """Passed to tools that declare a ``context`` parameter."""
    working_directory: str = "."
    backend: Optional[Backend] = None
    call_id: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RegisteredTool:
    identifier: ToolIdentifier
    func: Callable[..., Any]
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    category: Optional[str] = None
    requires_permission: Optional[bool] = None
    timeout: Optional[float] = None
    wants_context: bool = False

    @property
    def name(self) -> str:
        return self.identifier.name

    def definition(self) -> Dict[str, Any]:
        """Anthropic tool schema"""
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


def needs_approval(tool_name: str, tool_input: Optional[Dict[str, Any]] = None) -> bool:
    """Default approval rule: everything outside the safe set goes through the permission engine."""
    return normalize_tool_name(tool_name) not in SAFE_TOOLS


def default_category(tool_name: str) -> str:
    if tool_name in SAFE_PARALLEL_TOOLS:
        return "read"
    if tool_name in WRITE_TOOLS:
        return "write"
    if tool_name in INTERACTIVE_TOOLS:
        return "interactive"
    if tool_name == "bash":
        return "shell"
    return "other"


def _coerce_result(value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        return value
    if value is None:
        return ToolResult(success=True, output="")
    if isinstance(value, str):
        return ToolResult(success=True, output=value)
    return ToolResult(success=True, output=json.dumps(value, default=str))


class ToolRegistry:
    """Maps model-facing tool names to callables.

    Sync callables run in a worker thread; coroutine functions are awaited.
    A per-tool (or registry-wide) timeout resolves to a failed result.
    """

    def __init__(self, default_timeout: Optional[float] = None):
        self.default_timeout = default_timeout
        self._tools: Dict[str, RegisteredTool] = {}

    def register(self, name: str, func: Callable[..., Any], description: str = "",
                 input_schema: Optional[Dict[str, Any]] = None, *,
                 category: Optional[str] = None, requires_permission: Optional[bool] = None,
                 timeout: Optional[float] = None) -> RegisteredTool:
        return self._add(ToolIdentifier(tool_name=name), func, description, input_schema,
                         category, requires_permission, timeout)

    def register_external(self, identifier: ToolIdentifier, func: Callable[..., Any], description: str = "",
                          input_schema: Optional[Dict[str, Any]] = None, *,
                          timeout: Optional[float] = None) -> RegisteredTool:
        """Register an adapter tool; it is always permission-gated."""
        return self._add(identifier, func, description, input_schema, "external", True, timeout)

    def _add(self, identifier, func, description, input_schema, category, requires_permission, timeout):
        try:
            wants_context = "context" in inspect.signature(func).parameters
        except (TypeError, ValueError):
            wants_context = False
        tool = RegisteredTool(
            identifier=identifier,
            func=func,
            description=description,
            input_schema=input_schema or {"type": "object", "properties": {}},
            category=category,
            requires_permission=requires_permission,
            timeout=timeout,
            wants_context=wants_context,
        )
        if tool.name in self._tools:
            logger.warning(f"Tool {tool.name} re-registered, replacing previous definition")
        self._tools[tool.name] = tool
        return tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[RegisteredTool]:
        return self._tools.get(name) or self._tools.get(normalize_tool_name(name))

    def identify(self, name: str) -> Optional[ToolIdentifier]:
        tool = self.get(name)
        return tool.identifier if tool else None

    def names(self) -> List[str]:
        return list(self._tools)

    def tool_definitions(self) -> List[Dict[str, Any]]:
        return [t.definition() for t in self._tools.values()]

    def requires_permission(self, name: str) -> bool:
        tool = self.get(name)
        if tool is not None and tool.requires_permission is not None:
            return tool.requires_permission
        return needs_approval(name)

    def category(self, name: str) -> str:
        tool = self.get(name)
        if tool is not None and tool.category:
            return tool.category
        return default_category(normalize_tool_name(name))

    async def execute(self, name: str, arguments: Dict[str, Any],
                      context: Optional[ExecutionContext] = None,
                      default_timeout: Optional[float] = None) -> ToolResult:
        """Run a tool. Timeout precedence: the tool's own, the registry's, then ``default_timeout``."""
        tool = self.get(name)
        if tool is None:
            return ToolResult(success=False, output="", error=f"Unknown tool: {name}")

        kwargs = dict(arguments or {})
        if tool.wants_context:
            kwargs["context"] = context or ExecutionContext()
        timeout = tool.timeout if tool.timeout is not None else self.default_timeout
        if timeout is None:
            timeout = default_timeout

        try:
            if inspect.iscoroutinefunction(tool.func):
                pending = tool.func(**kwargs)
            else:
                pending = asyncio.to_thread(tool.func, **kwargs)
            value = await asyncio.wait_for(pending, timeout=timeout) if timeout else await pending
            return _coerce_result(value)
        except asyncio.TimeoutError:
            logger.warning(f"Tool {tool.name} timed out after {timeout}s")
            return ToolResult(success=False, output="", error=f"Tool {tool.name} timed out after {timeout}s")
        except ToolError as e:
            return ToolResult(success=False, output=e.output, error=e.error)
        except TypeError as e:
            return ToolResult(success=False, output="", error=f"Invalid arguments for {tool.name}: {e}")
        except Exception as e:
            logger.exception(f"Tool execution error: {tool.name}")
            return ToolResult(success=False, output="", error=f"Tool error: {e}")


async def execute_tool(registry: ToolRegistry, name: str, inputs: Dict[str, Any],
                       context: Optional[ExecutionContext] = None) -> ToolResult:
    """Execute a tool by name with the given inputs."""
    return await registry.execute(name, inputs, context)
