"""
Exception types for the agent core.

Only permission denials and tool failures ever reach the user; the rest are
raised and recovered internally (summarizer fallback, hook timeouts).
"""

from typing import Optional

from tools._common import ToolError


class AgentCoreError(Exception):
    """Base class for agent core errors"""
    pass


class PermissionDenied(AgentCoreError):
    """A tool invocation was refused by the permission engine."""

    def __init__(self, tool_name: str, reason: str = ""):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Permission denied for {tool_name}: {reason or 'denied'}")


class ToolExecutionFailed(AgentCoreError, ToolError):
    """Raised by a tool implementation to report a failed (non-cached) result."""

    def __init__(self, tool_name: str, error: str, output: str = ""):
        self.tool_name = tool_name
        ToolError.__init__(self, error, output)
        self.args = (f"{tool_name} failed: {error}",)


class CompressionSummarizerFailed(AgentCoreError):
    """The model-backed summarizer could not produce a summary."""
    pass


class HookTimeout(AgentCoreError):
    """A hook command exceeded its timeout and was killed."""

    def __init__(self, command: str, timeout: float, stderr: Optional[str] = None):
        self.command = command
        self.timeout = timeout
        self.stderr = stderr or ""
        super().__init__(f"Hook timed out after {timeout}s: {command}")
