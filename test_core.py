"""Tests for the agent runtime turn loop."""

import pytest
from botocore.exceptions import EndpointConnectionError

from agent import AgentRuntime, CompressionOptions
from bedrock_service import BedrockError, BedrockService, CompletionResult
from backend import LocalBackend
from config import MODEL_TIERS, PermissionsConfig, RoutingConfig
from permission_store import PermissionRuleStore
from tools import ToolInvocation, ToolRegistry


class ScriptedClient:
    """Returns queued completions; records what the runtime sent."""

    def __init__(self, *completions):
        self.completions = list(completions)
        self.requests = []
        self.summaries = []

    async def complete(self, messages, tools, model_id):
        self.requests.append((list(messages), tools, model_id))
        item = self.completions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def simple_call(self, prompt):
        self.summaries.append(prompt)
        return "earlier work summarized"


def make_runtime(tmp_path, client, mode="trust", **kwargs):
    registry = ToolRegistry()
    registry.register("read", lambda file_path: (tmp_path / file_path).read_text(), "Read a file",
                      {"type": "object", "properties": {"file_path": {"type": "string"}}})
    registry.register("bash", lambda command: f"ran {command}", "Run a command")
    return AgentRuntime(
        registry,
        client,
        backend=LocalBackend(str(tmp_path)),
        permissions=PermissionsConfig(default_mode=mode, always_allow=set(), always_deny=set(), trusted_mode=False),
        routing=RoutingConfig(model_selection="auto", manual_model=None, preferred_tier=None),
        rule_store=PermissionRuleStore(str(tmp_path / "rules.json")),
        **kwargs,
    )


@pytest.fixture
def notes(tmp_path):
    (tmp_path / "notes.txt").write_text("remember the milk")
    return tmp_path


@pytest.mark.asyncio
async def test_turn_without_tools(tmp_path):
    client = ScriptedClient(CompletionResult(content="Hello!", usage={"input_tokens": 10, "output_tokens": 2}))
    runtime = make_runtime(tmp_path, client)
    events = []

    async def on_event(event):
        events.append(event.type)

    turn = await runtime.run_turn("hello", on_event)
    assert turn.content == "Hello!"
    assert turn.iterations == 1
    assert [m["role"] for m in runtime.transcript] == ["system", "user", "assistant"]
    assert events == ["model_selected", "text", "done"]
    assert runtime.telemetry.total_cost > 0
    assert client.requests[0][1][0]["name"] == "read"


@pytest.mark.asyncio
async def test_tool_loop_appends_results_and_routes(notes):
    client = ScriptedClient(
        CompletionResult(tool_calls=[ToolInvocation("read", {"file_path": "notes.txt"}, "t1")]),
        CompletionResult(content="It says remember the milk."),
    )
    runtime = make_runtime(notes, client)
    turn = await runtime.run_turn("hello")
    assert turn.iterations == 2
    assert turn.outcomes[0].result.output == "remember the milk"

    assistant, tool = runtime.transcript[2], runtime.transcript[3]
    assert assistant["tool_calls"] == [{"id": "t1", "name": "read", "arguments": {"file_path": "notes.txt"}}]
    assert tool["role"] == "tool" and tool["tool_call_id"] == "t1"

    # the follow-up call is routed with the read-only pending tools in view
    assert client.requests[0][2] == MODEL_TIERS["balanced"].model_id
    assert client.requests[1][2] == MODEL_TIERS["fast"].model_id


@pytest.mark.asyncio
async def test_denied_tool_is_reported_to_the_model(tmp_path):
    client = ScriptedClient(
        CompletionResult(tool_calls=[ToolInvocation("bash", {"command": "make"}, "t1")]),
        CompletionResult(content="ok, I won't."),
    )
    runtime = make_runtime(tmp_path, client, mode="readonly")
    turn = await runtime.run_turn("build it")
    assert not turn.outcomes[0].allowed
    tool_msg = runtime.transcript[3]
    assert tool_msg["is_error"] and tool_msg["content"].startswith("Permission denied:")


@pytest.mark.asyncio
async def test_model_error_ends_turn(tmp_path):
    client = ScriptedClient(BedrockError("throttled"))
    runtime = make_runtime(tmp_path, client)
    events = []

    async def on_event(event):
        events.append(event)

    turn = await runtime.run_turn("hello", on_event)
    assert turn.error == "throttled"
    assert events[-1].type == "error"


class UnreachableRuntime:
    """bedrock-runtime client whose endpoint cannot be reached."""

    def invoke_model(self, **kwargs):
        raise EndpointConnectionError(endpoint_url="https://bedrock-runtime.invalid")


@pytest.mark.asyncio
async def test_network_failure_ends_turn(tmp_path):
    runtime = make_runtime(tmp_path, BedrockService(client=UnreachableRuntime()))
    events = []

    async def on_event(event):
        events.append(event)

    turn = await runtime.run_turn("hello", on_event)
    assert "Could not reach Bedrock" in turn.error
    assert events[-1].type == "error"
    assert runtime.transcript[-1] == {"role": "user", "content": "hello"}


@pytest.mark.asyncio
async def test_unexpected_client_exception_ends_turn(tmp_path):
    runtime = make_runtime(tmp_path, ScriptedClient(RuntimeError("socket closed")))
    turn = await runtime.run_turn("hello")
    assert turn.error == "Model call failed: socket closed"
    assert turn.iterations == 1


@pytest.mark.asyncio
async def test_iteration_cap(tmp_path):
    looping = [CompletionResult(tool_calls=[ToolInvocation("bash", {"command": f"step {i}"}, f"t{i}")])
               for i in range(3)]
    runtime = make_runtime(tmp_path, ScriptedClient(*looping), max_iterations=3)
    turn = await runtime.run_turn("loop forever")
    assert turn.stopped_early
    assert turn.iterations == 3
    assert len(turn.outcomes) == 3


@pytest.mark.asyncio
async def test_run_turn_requires_client(tmp_path):
    runtime = make_runtime(tmp_path, None)
    with pytest.raises(ValueError):
        await runtime.run_turn("hello")


@pytest.mark.asyncio
async def test_transcript_compressed_when_over_budget(tmp_path):
    client = ScriptedClient(CompletionResult(content="done"))
    options = CompressionOptions(target_tokens=200, keep_first_n=1, keep_last_n=2, chunk_size=5)
    runtime = make_runtime(tmp_path, client, compression=options)
    for i in range(10):
        runtime.transcript.append({"role": "user" if i % 2 == 0 else "assistant", "content": "filler " * 100})

    await runtime.run_turn("next")
    assert client.summaries
    sent = client.requests[0][0]
    assert any(m["content"].startswith("[Previous Context Summary] ") for m in sent)
    assert sent[-1] == {"role": "user", "content": "next"}


@pytest.mark.asyncio
async def test_local_condensing_reports_compression_once(tmp_path):
    options = CompressionOptions(target_tokens=50, keep_first_n=1, keep_last_n=2, chunk_size=5)
    runtime = make_runtime(tmp_path, object(), compression=options)
    assert runtime.summarizer is None
    for i in range(10):
        runtime.transcript.append({"role": "user" if i % 2 == 0 else "assistant", "content": "filler " * 100})
    events = []

    async def on_event(event):
        events.append(event.type)

    assert await runtime.maybe_compress(on_event)
    assert not await runtime.maybe_compress(on_event)
    assert events == ["compressed"]
    assert not any(m["content"].startswith("[Condensed] [Condensed]") for m in runtime.transcript)


@pytest.mark.asyncio
async def test_compact_and_reset(notes):
    client = ScriptedClient(
        CompletionResult(tool_calls=[ToolInvocation("read", {"file_path": "notes.txt"}, "t1")]),
        CompletionResult(content="done"),
    )
    options = CompressionOptions(target_tokens=10**6, keep_first_n=1, keep_last_n=1, chunk_size=5)
    runtime = make_runtime(notes, client, compression=options)
    await runtime.run_turn("read my notes")
    assert runtime.cache.get_stats().entry_count == 1

    await runtime.compact()
    assert runtime.transcript[0]["role"] == "system"
    assert runtime.transcript[1]["content"] == "[Previous Context Summary] earlier work summarized"
    assert runtime.transcript[-1] == {"role": "assistant", "content": "done"}

    runtime.reset()
    assert runtime.transcript == [{"role": "system", "content": runtime.system_prompt}]
    assert runtime.cache.get_stats().entry_count == 0
    assert runtime.telemetry.total_tool_calls == 0


@pytest.mark.asyncio
async def test_runtime_prefetcher_wiring(notes):
    runtime = make_runtime(notes, ScriptedClient(), prefetch=True)
    assert runtime.executor.prefetcher is runtime.prefetcher
    assert runtime.prefetcher.context.working_directory == str(notes)

    runtime.prefetcher.record_pattern("read", {"file_path": "notes.txt"})
    runtime.reset()
    assert runtime.prefetcher.get_stats()["recent_patterns"] == 0

    assert make_runtime(notes, ScriptedClient(), prefetch=False).prefetcher is None
