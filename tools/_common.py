"""Shared types for the tools package."""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ToolError(Exception):
    """Raised by a tool implementation to report failure; becomes a failed ToolResult."""

    def __init__(self, error: str, output: str = ""):
        self.error = error
        self.output = output
        super().__init__(error)


@dataclass(frozen=True)
class ToolIdentifier:
    """Structured identity of a tool.

    Adapter tools (e.g. from an MCP server) keep their origin and server as
    data; the model-facing name is derived once and never parsed back.
    """
    tool_name: str
    origin: str = "builtin"
    server_name: Optional[str] = None

    @property
    def name(self) -> str:
        if self.origin == "builtin" or not self.server_name:
            return self.tool_name
        return f"{self.origin}_{self.server_name}:{self.tool_name}"


def canonicalize_args(arguments: Any) -> str:
    """Deterministic JSON form of tool arguments (keys sorted at every level)."""
    return json.dumps(arguments if arguments is not None else {}, sort_keys=True,
                      separators=(",", ":"), default=str, ensure_ascii=False)


def fingerprint(name: str, arguments: Any) -> str:
    """Cache/permission key for a tool invocation: ``name:sha256(args)``."""
    digest = hashlib.sha256(canonicalize_args(arguments).encode("utf-8")).hexdigest()
    return f"{name}:{digest}"


@dataclass
class ToolInvocation:
    """A tool call proposed by the model."""
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    call_id: str = ""

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.name, self.arguments)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ToolInvocation":
        """Accept {name, arguments|input, id} dicts as produced by model clients.

        String arguments are decoded as JSON; a decode failure raises ValueError.
        """
        args = raw.get("arguments", raw.get("input", {}))
        if isinstance(args, str):
            args = json.loads(args) if args.strip() else {}
        if not isinstance(args, dict):
            raise ValueError(f"Tool arguments must be an object, got {type(args).__name__}")
        return cls(name=raw.get("name", ""), arguments=args, call_id=raw.get("id", "") or "")
