"""
Context window compression for the coding agent.
Handles token estimation, importance scoring, chunked summarization with a
local fallback, and budget-driven eviction.
"""

import inspect
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from .errors import CompressionSummarizerFailed

logger = logging.getLogger(__name__)

Summarizer = Callable[[str], Union[str, Awaitable[str]]]

CRITICAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"error", r"failed", r"exception", r"important", r"critical",
        r"todo", r"fixme", r"decision", r"confirmed", r"completed",
    )
]
CODE_BLOCK_PATTERN = re.compile(r"```[\s\S]*?```")
FILE_REFERENCE_PATTERN = re.compile(r"(?:file|path|directory|folder)[:\s]+['\"`]?([/.][^'\"`\s]+)", re.IGNORECASE)

# Importance at or above this is preserved verbatim
CRITICAL_THRESHOLD = 20
CONDENSE_CHARS = 500
SUMMARY_PREFIX = "[Previous Context Summary] "
CONDENSED_PREFIX = "[Condensed] "
MIN_PROGRESSIVE_MESSAGES = 4

SUMMARIZER_PROMPT = """Summarize the following conversation context in 2-3 sentences, preserving key decisions, outcomes, and any errors encountered:

{text}

Summary:"""

SUMMARIZER_SYSTEM = """You are a context summarizer for a coding agent. Your job is to create concise summaries that preserve:
1. Key decisions made and their reasoning
2. Important code patterns or structures discovered
3. Errors encountered and their resolutions
4. File paths and project structure information
5. Pending tasks or todos

Be extremely concise. Focus on information that would help continue the conversation without repetition."""


@dataclass
class CompressionOptions:
    target_tokens: int = 80000
    keep_first_n: int = 2
    keep_last_n: int = 10
    chunk_size: int = 5


@dataclass
class CompressionResult:
    messages: List[Dict[str, Any]]
    removed_count: int
    compressed_count: int
    original_tokens: int
    new_tokens: int
    saved_tokens: int


# ------------------------------------------------------------------
# Scoring
# ------------------------------------------------------------------

def _content_text(msg: Dict[str, Any]) -> str:
    content = msg.get("content", "")
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)


def estimate_tokens(messages: List[Dict[str, Any]]) -> int:
    """~4 chars per token plus a fixed 10-token overhead per message."""
    return sum(math.ceil(len(_content_text(m)) / 4) + 10 for m in messages)


def calculate_message_importance(msg: Dict[str, Any]) -> int:
    content = _content_text(msg)
    score = 10 * sum(1 for p in CRITICAL_PATTERNS if p.search(content))
    score += 5 * len(CODE_BLOCK_PATTERN.findall(content))
    role = msg.get("role")
    if role == "system":
        score += 100
    elif role == "tool":
        score += 15
    if FILE_REFERENCE_PATTERN.search(content):
        score += 5
    return score


def _is_critical(msg: Dict[str, Any]) -> bool:
    return msg.get("role") == "system" or calculate_message_importance(msg) >= CRITICAL_THRESHOLD


def identify_critical_messages(messages: List[Dict[str, Any]]) -> List[int]:
    """Indices of system messages and messages scoring >= the critical threshold."""
    return [i for i, m in enumerate(messages) if _is_critical(m)]


# ------------------------------------------------------------------
# Summarization
# ------------------------------------------------------------------

def _chunk_text(messages: List[Dict[str, Any]]) -> str:
    return "\n\n".join(f"{m.get('role', 'unknown')}: {_content_text(m)}" for m in messages)


async def _summarize_chunk(messages: List[Dict[str, Any]], summarizer: Summarizer) -> Dict[str, Any]:
    summary = summarizer(_chunk_text(messages))
    if inspect.isawaitable(summary):
        summary = await summary
    return {"role": "assistant", "content": f"{SUMMARY_PREFIX}{summary}"}


def _condense_locally(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Non-model fallback: keep important or already-compressed messages, truncate the rest."""
    out = []
    for msg in messages:
        content = _content_text(msg)
        if content.startswith((SUMMARY_PREFIX, CONDENSED_PREFIX)):
            out.append(msg)
            continue
        if calculate_message_importance(msg) >= CRITICAL_THRESHOLD:
            out.append(msg)
            continue
        if len(content) > CONDENSE_CHARS:
            content = content[:CONDENSE_CHARS] + "...[truncated]"
        out.append({"role": msg.get("role"), "content": f"{CONDENSED_PREFIX}{content}"})
    return out


async def compress(messages: List[Dict[str, Any]], summarizer: Optional[Summarizer],
                   options: Optional[CompressionOptions] = None) -> List[Dict[str, Any]]:
    """Summarize the middle of the transcript, keeping the head and tail verbatim.

    Never raises because of the summarizer: a failing chunk is condensed
    locally with the importance heuristic instead.
    """
    opts = options or CompressionOptions()
    keep_first = max(0, opts.keep_first_n)
    keep_last = max(0, opts.keep_last_n)

    if len(messages) <= keep_first + keep_last:
        return messages
    if estimate_tokens(messages) <= opts.target_tokens:
        return messages

    end = len(messages) - keep_last
    head, middle, tail = messages[:keep_first], messages[keep_first:end], messages[end:]
    if not middle:
        return messages

    size = max(1, opts.chunk_size)
    summaries: List[Dict[str, Any]] = []
    for start in range(0, len(middle), size):
        chunk_messages = middle[start:start + size]
        if summarizer is None:
            summaries.extend(_condense_locally(chunk_messages))
            continue
        try:
            summaries.append(await _summarize_chunk(chunk_messages, summarizer))
        except Exception as e:
            logger.debug(f"Summarizer failed for chunk at {keep_first + start}, condensing locally: {e}")
            summaries.extend(_condense_locally(chunk_messages))

    result = head + summaries + tail
    if result == messages:
        return messages
    logger.info(f"Compressed context: {len(messages)} -> {len(result)} messages")
    return result


async def compress_with_metrics(messages: List[Dict[str, Any]], summarizer: Optional[Summarizer],
                                options: Optional[CompressionOptions] = None) -> CompressionResult:
    original_tokens = estimate_tokens(messages)
    compressed = await compress(messages, summarizer, options)
    new_tokens = estimate_tokens(compressed)
    return CompressionResult(
        messages=compressed,
        removed_count=len(messages) - len(compressed),
        compressed_count=len(compressed),
        original_tokens=original_tokens,
        new_tokens=new_tokens,
        saved_tokens=original_tokens - new_tokens,
    )


def progressive_compress(messages: List[Dict[str, Any]], target_tokens: int) -> List[Dict[str, Any]]:
    """Drop the least important quarter of non-critical messages until under budget.

    Stops at the budget, at four remaining messages, or when only critical
    messages are left. Relative order of survivors is preserved.
    """
    if estimate_tokens(messages) <= target_tokens:
        return messages

    critical: Set[int] = set(identify_critical_messages(messages))
    importance = [calculate_message_importance(m) for m in messages]
    alive = list(range(len(messages)))

    while len(alive) > MIN_PROGRESSIVE_MESSAGES and estimate_tokens([messages[i] for i in alive]) > target_tokens:
        candidates = sorted((i for i in alive if i not in critical), key=lambda i: importance[i])
        if not candidates:
            break
        doomed = set(candidates[:max(1, len(candidates) // 4)])
        alive = [i for i in alive if i not in doomed]

    return [messages[i] for i in alive]


def create_context_summarizer(model_call: Callable[..., Union[str, Awaitable[str]]],
                              system_prompt: Optional[str] = None,
                              max_chars: int = 3000) -> Callable[[str], Awaitable[str]]:
    """Build a summarizer from a prompt -> text model call.

    Failures raise CompressionSummarizerFailed so compress() falls back to
    local condensing instead of inserting a placeholder summary.
    """
    async def _summarize(text: str) -> str:
        prompt = SUMMARIZER_PROMPT.format(text=text[:max_chars])
        try:
            result = model_call(prompt, system_prompt) if system_prompt else model_call(prompt)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            raise CompressionSummarizerFailed(str(e)) from e
        summary = (result or "").strip()
        if not summary:
            raise CompressionSummarizerFailed("empty summary")
        return summary

    return _summarize
