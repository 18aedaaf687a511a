"""Tests for tool identity, invocation fingerprints and the tool registry."""

import asyncio
import time

import pytest

from agent.errors import ToolExecutionFailed
from tools import (
    ExecutionContext,
    ToolError,
    ToolIdentifier,
    ToolInvocation,
    ToolRegistry,
    ToolResult,
    execute_tool,
    fingerprint,
    needs_approval,
)


def test_fingerprint_ignores_key_order():
    a = fingerprint("grep", {"pattern": "x", "opts": {"b": 1, "a": 2}})
    b = fingerprint("grep", {"opts": {"a": 2, "b": 1}, "pattern": "x"})
    assert a == b
    assert a.startswith("grep:")
    assert a != fingerprint("glob", {"pattern": "x", "opts": {"b": 1, "a": 2}})


def test_fingerprint_none_equals_empty():
    assert fingerprint("read", None) == fingerprint("read", {})


def test_tool_identifier_names():
    assert ToolIdentifier("read").name == "read"
    assert ToolIdentifier("query", origin="mcp", server_name="db").name == "mcp_db:query"
    assert ToolIdentifier("query", origin="mcp").name == "query"


def test_invocation_from_dict():
    call = ToolInvocation.from_dict({"id": "c1", "name": "read", "arguments": '{"file_path": "a"}'})
    assert (call.call_id, call.name, call.arguments) == ("c1", "read", {"file_path": "a"})
    assert ToolInvocation.from_dict({"name": "glob", "input": {"pattern": "*"}}).arguments == {"pattern": "*"}
    assert ToolInvocation.from_dict({"name": "ls", "arguments": "  "}).arguments == {}
    with pytest.raises(ValueError):
        ToolInvocation.from_dict({"name": "read", "arguments": "{broken"})
    with pytest.raises(ValueError):
        ToolInvocation.from_dict({"name": "read", "arguments": [1, 2]})


def test_needs_approval():
    assert not needs_approval("read")
    assert not needs_approval("Read")
    assert needs_approval("bash")
    assert needs_approval("write")


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.mark.asyncio
async def test_sync_tool_runs(registry):
    registry.register("echo", lambda text: text.upper(), "Echo text")
    result = await registry.execute("echo", {"text": "hi"})
    assert result == ToolResult(success=True, output="HI")


@pytest.mark.asyncio
async def test_async_tool_and_structured_output(registry):
    async def info(path):
        return {"path": path, "size": 3}

    registry.register("file_info", info)
    result = await execute_tool(registry, "file_info", {"path": "a"})
    assert result.success
    assert result.output == '{"path": "a", "size": 3}'


@pytest.mark.asyncio
async def test_none_return_is_empty_success(registry):
    registry.register("noop", lambda: None)
    assert await registry.execute("noop", {}) == ToolResult(success=True, output="")


@pytest.mark.asyncio
async def test_unknown_tool(registry):
    result = await registry.execute("missing", {})
    assert not result.success and result.error == "Unknown tool: missing"


@pytest.mark.asyncio
async def test_normalized_name_lookup(registry):
    registry.register("read", lambda file_path: f"contents of {file_path}")
    assert (await registry.execute("read_file", {"file_path": "a"})).output == "contents of a"


@pytest.mark.asyncio
async def test_tool_error_becomes_failed_result(registry):
    def fail():
        raise ToolError("disk full", output="partial")

    registry.register("fail", fail)
    result = await registry.execute("fail", {})
    assert (result.success, result.output, result.error) == (False, "partial", "disk full")


@pytest.mark.asyncio
async def test_tool_execution_failed_is_a_tool_error(registry):
    def fail():
        raise ToolExecutionFailed("fail", "no such file")

    registry.register("fail", fail)
    result = await registry.execute("fail", {})
    assert not result.success and result.error == "no such file"


@pytest.mark.asyncio
async def test_bad_arguments(registry):
    registry.register("echo", lambda text: text)
    result = await registry.execute("echo", {"wrong": 1})
    assert not result.success
    assert result.error.startswith("Invalid arguments for echo")


@pytest.mark.asyncio
async def test_unexpected_exception(registry):
    def boom():
        raise KeyError("x")

    registry.register("boom", boom)
    result = await registry.execute("boom", {})
    assert not result.success and result.error.startswith("Tool error:")


@pytest.mark.asyncio
async def test_async_timeout(registry):
    async def slow():
        await asyncio.sleep(5)

    registry.register("slow", slow, timeout=0.05)
    result = await registry.execute("slow", {})
    assert not result.success and "timed out" in result.error


@pytest.mark.asyncio
async def test_registry_default_timeout_applies_to_sync_tools():
    registry = ToolRegistry(default_timeout=0.05)
    registry.register("slow", lambda: time.sleep(0.5))
    result = await registry.execute("slow", {})
    assert not result.success and "timed out" in result.error


@pytest.mark.asyncio
async def test_caller_timeout_is_a_fallback():
    async def slow():
        await asyncio.sleep(5)

    registry = ToolRegistry()
    registry.register("slow", slow)
    registry.register("patient", slow, timeout=0.2)
    result = await registry.execute("slow", {}, default_timeout=0.05)
    assert not result.success and "after 0.05s" in result.error
    result = await registry.execute("patient", {}, default_timeout=0.05)
    assert "after 0.2s" in result.error
    assert registry.default_timeout is None


@pytest.mark.asyncio
async def test_context_injection(registry):
    seen = []

    def where(context):
        seen.append(context)
        return context.working_directory

    registry.register("where", where)
    result = await registry.execute("where", {}, ExecutionContext(working_directory="/repo", call_id="c1"))
    assert result.output == "/repo"
    assert seen[0].call_id == "c1"
    assert (await registry.execute("where", {})).output == "."


def test_permission_and_category_defaults(registry):
    registry.register("read", lambda: "")
    registry.register("bash", lambda: "")
    registry.register("custom", lambda: "", category="read", requires_permission=False)
    assert not registry.requires_permission("read")
    assert registry.requires_permission("bash")
    assert not registry.requires_permission("custom")
    assert registry.category("read") == "read"
    assert registry.category("bash") == "shell"
    assert registry.category("custom") == "read"
    assert registry.category("write") == "write"
    assert registry.category("question") == "interactive"


def test_external_tools_are_gated(registry):
    ident = ToolIdentifier("query", origin="mcp", server_name="db")
    registry.register_external(ident, lambda sql: sql, "Run SQL")
    assert registry.names() == ["mcp_db:query"]
    assert registry.identify("mcp_db:query") is ident
    assert registry.requires_permission("mcp_db:query")
    assert registry.category("mcp_db:query") == "external"
    assert registry.tool_definitions()[0]["name"] == "mcp_db:query"


def test_unregister(registry):
    registry.register("x", lambda: "")
    assert registry.unregister("x")
    assert not registry.unregister("x")
    assert registry.get("x") is None
