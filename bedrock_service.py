"""
Bedrock model client for the agent core.

The runtime keeps its transcript as plain role/content dicts; this module
turns them into Anthropic Messages requests for bedrock-runtime and turns
the response back into text plus ToolInvocations.
"""

import boto3
import json
import logging
from typing import List, Dict, Optional, Any
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from dataclasses import dataclass, field
from config import (
    aws_config,
    MODEL_TIERS,
    get_credentials_info,
    get_max_output_tokens,
)
from tools._common import ToolInvocation


logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"

CONTINUATION_TEXT = "(continued)"

CREDENTIAL_ERROR_CODES = ("ExpiredTokenException", "InvalidSignatureException", "UnrecognizedClientException")


class BedrockError(Exception):
    """Model call failed (credentials, throttling, malformed response)"""
    pass


@dataclass
class GenerationConfig:
    """Sampling and length settings for one request"""
    max_tokens: int = 16000
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None


@dataclass
class ToolUseBlock:
    id: str = ""
    name: str = ""
    input: Dict = field(default_factory=dict)


@dataclass
class GenerationResult:
    """Parsed response body"""
    content: str = ""
    tool_uses: List[ToolUseBlock] = field(default_factory=list)
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class CompletionResult:
    """Model turn as seen by the agent runtime"""
    content: str = ""
    tool_calls: List[ToolInvocation] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)
    stop_reason: Optional[str] = None


def _session_kwargs(region: str) -> Dict[str, Any]:
    """boto3.Session arguments: a named profile wins over explicit keys."""
    kwargs: Dict[str, Any] = {"region_name": region}
    if aws_config.has_profile():
        kwargs["profile_name"] = aws_config.profile_name
    elif aws_config.has_explicit_credentials():
        kwargs.update(
            aws_access_key_id=aws_config.access_key_id,
            aws_secret_access_key=aws_config.secret_access_key,
        )
        if aws_config.has_session_token():
            kwargs["aws_session_token"] = aws_config.session_token
    return kwargs


def _map_client_error(e: ClientError) -> BedrockError:
    error = e.response.get("Error", {})
    code = error.get("Code", "Unknown")
    message = error.get("Message", str(e))
    logger.error(f"Bedrock API error: {code} - {message}")
    if code in CREDENTIAL_ERROR_CODES:
        return BedrockError("AWS credentials expired or invalid. Please refresh.")
    if code == "ThrottlingException":
        return BedrockError(f"Bedrock throttled the request: {message}")
    return BedrockError(f"Bedrock API error: {message}")


class BedrockService:
    """Synchronous bedrock-runtime client; the runtime calls it from a worker thread."""

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        client: Any = None,
    ):
        self.model_id = model_id or MODEL_TIERS["balanced"].model_id
        self.region = region or aws_config.region

        self.client = client or self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id} ({get_credentials_info()})")

    def _create_client(self) -> Any:
        try:
            return boto3.Session(**_session_kwargs(self.region)).client("bedrock-runtime")
        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.")
        except Exception as e:
            raise BedrockError(f"Could not create bedrock-runtime client: {e}")

    # ------------------------------------------------------------------
    # Request formatting
    # ------------------------------------------------------------------

    @staticmethod
    def _to_blocks(content: Any) -> List[Dict[str, Any]]:
        if isinstance(content, list):
            return [b if isinstance(b, dict) else {"type": "text", "text": str(b)} for b in content]
        text = content if isinstance(content, str) else json.dumps(content, default=str)
        return [{"type": "text", "text": text or "(no content)"}]

    def _format_messages(self, messages: List[Dict]) -> tuple:
        """Return (system_prompt, anthropic_messages).

        Tool-role messages become tool_result blocks in a user turn; assistant
        messages carrying tool_calls get tool_use blocks. Consecutive turns of
        the same role are merged since the API requires alternation. A
        tool_use or tool_result whose partner was compressed away is sent as
        plain text.
        """
        system_parts: List[str] = []
        formatted: List[Dict[str, Any]] = []
        result_ids = {m.get("tool_call_id") for m in messages if m.get("role") == "tool"}
        use_ids = {
            c.get("id") for m in messages if m.get("role") == "assistant" for c in (m.get("tool_calls") or [])
        }

        def _append(role: str, blocks: List[Dict[str, Any]]):
            if formatted and formatted[-1]["role"] == role:
                formatted[-1]["content"].extend(blocks)
            else:
                formatted.append({"role": role, "content": list(blocks)})

        for msg in messages:
            role = msg.get("role")
            content = msg.get("content", "")
            if role == "system":
                system_parts.append(content if isinstance(content, str) else json.dumps(content))
            elif role == "tool":
                text = content if isinstance(content, str) else json.dumps(content, default=str)
                if msg.get("tool_call_id") not in use_ids:
                    _append("user", [{"type": "text", "text": f"[{msg.get('name', 'tool')} result] {text}"}])
                    continue
                block = {"type": "tool_result", "tool_use_id": msg.get("tool_call_id", ""), "content": text}
                if msg.get("is_error"):
                    block["is_error"] = True
                _append("user", [block])
            elif role == "assistant":
                blocks = self._to_blocks(content) if content else []
                for call in msg.get("tool_calls") or []:
                    if call.get("id") not in result_ids:
                        blocks.append({"type": "text", "text": f"[called {call.get('name', '')}]"})
                        continue
                    blocks.append({
                        "type": "tool_use",
                        "id": call.get("id", ""),
                        "name": call.get("name", ""),
                        "input": call.get("arguments", call.get("input", {})),
                    })
                _append("assistant", blocks or self._to_blocks(""))
            else:
                _append("user", self._to_blocks(content))

        # the API requires a user turn first; a leading summary is an assistant turn
        if formatted and formatted[0]["role"] != "user":
            formatted.insert(0, {"role": "user", "content": [{"type": "text", "text": CONTINUATION_TEXT}]})

        return "\n\n".join(system_parts) or None, formatted

    def _format_request_body(
        self,
        messages: List[Dict],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
        tools: Optional[List[Dict]] = None
    ) -> Dict[str, Any]:
        transcript_system, formatted_messages = self._format_messages(messages)
        system = "\n\n".join(p for p in (system_prompt, transcript_system) if p)

        effective_max_tokens = min(config.max_tokens, get_max_output_tokens(model_id))
        body: Dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": effective_max_tokens,
            "messages": formatted_messages,
        }

        if config.temperature is not None:
            body["temperature"] = config.temperature
        elif config.top_p is not None:
            body["top_p"] = config.top_p

        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if system:
            body["system"] = system
        if tools:
            body["tools"] = tools
        return body


    @staticmethod
    def _parse_response(response_body: Dict, model_id: str) -> GenerationResult:
        """Collect text and tool_use blocks plus token usage."""
        result = GenerationResult()
        try:
            for block in response_body.get("content", []):
                kind = block.get("type")
                if kind == "text":
                    result.content += block.get("text", "")
                elif kind == "tool_use":
                    result.tool_uses.append(
                        ToolUseBlock(block.get("id", ""), block.get("name", ""), block.get("input") or {})
                    )
            usage = response_body.get("usage") or {}
        except AttributeError as e:
            logger.error(f"Malformed response from {model_id}: {e}")
            raise BedrockError(f"Failed to parse model response: {e}")

        result.input_tokens = usage.get("input_tokens", 0)
        result.output_tokens = usage.get("output_tokens", 0)
        result.stop_reason = response_body.get("stop_reason")
        return result

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def generate_response(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None
    ) -> GenerationResult:
        """One invoke_model round trip. Client, network and decode failures surface as BedrockError."""
        model = model_id or self.model_id
        body = self._format_request_body(messages, system_prompt, model, config or GenerationConfig(), tools=tools)

        logger.info(f"Invoking model: {model} ({len(body['messages'])} messages, {len(tools or [])} tools)")
        try:
            response = self.client.invoke_model(
                modelId=model,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
            response_body = json.loads(response["body"].read())
        except ClientError as e:
            raise _map_client_error(e)
        except BotoCoreError as e:
            logger.error(f"Bedrock connection error: {e}")
            raise BedrockError(f"Could not reach Bedrock: {e}")
        except ValueError as e:
            logger.error(f"Undecodable response from {model}: {e}")
            raise BedrockError(f"Failed to decode model response: {e}")

        return self._parse_response(response_body, model)

    def complete(
        self,
        messages: List[Dict],
        tools: Optional[List[Dict]] = None,
        model_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
    ) -> CompletionResult:
        """One model turn: text plus proposed tool calls and token usage."""
        result = self.generate_response(messages, system_prompt, model_id, config, tools)
        return CompletionResult(
            content=result.content,
            tool_calls=[ToolInvocation(name=t.name, arguments=t.input or {}, call_id=t.id) for t in result.tool_uses],
            usage={"input_tokens": result.input_tokens, "output_tokens": result.output_tokens},
            stop_reason=result.stop_reason,
        )

    def simple_call(self, prompt: str, system_prompt: Optional[str] = None,
                    model_id: Optional[str] = None, max_tokens: int = 512) -> str:
        """Single-prompt text completion on the fast tier, used for summaries."""
        result = self.generate_response(
            [{"role": "user", "content": prompt}],
            system_prompt=system_prompt,
            model_id=model_id or MODEL_TIERS["fast"].model_id,
            config=GenerationConfig(max_tokens=max_tokens, temperature=0.2),
        )
        return result.content

    def test_connection(self) -> tuple:
        """(ok, message) after a 10-token ping on the fast tier"""
        try:
            self.simple_call("Hi", max_tokens=10)
        except BedrockError as e:
            return False, str(e)
        return True, "Connection successful"
