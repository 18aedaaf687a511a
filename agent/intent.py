"""
Task classification and model tier routing.
Picks fast / balanced / deep from the pending tool calls and the user's
message, then resolves a concrete model ID under the routing config.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from config import MODEL_TIERS, RoutingConfig, get_tier_for_model, routing_config
from tools.schemas import SAFE_PARALLEL_TOOLS, WRITE_TOOLS

logger = logging.getLogger(__name__)

DEEP_KEYWORDS = [
    "plan", "architect", "design", "refactor", "analyze", "investigate",
    "troubleshoot", "debug", "optimize", "improve", "explain",
    "comprehensive", "thorough", "detailed", "complex",
]

FAST_KEYWORDS = [
    "read", "show", "list", "display", "print", "get", "fetch",
    "check", "what", "where", "which",
]

_SENTENCE_END = re.compile(r"[.!?]+")


@dataclass
class TaskClassification:
    tier: str  # fast | balanced | deep
    reason: str
    confidence: float


def _tool_name(tool: Any) -> str:
    if isinstance(tool, str):
        return tool
    if isinstance(tool, dict):
        return tool.get("name", "")
    return getattr(tool, "name", "")


def classify_task(user_message: str, transcript: Optional[Sequence[Dict[str, Any]]] = None,
                  pending_tools: Optional[Sequence[Any]] = None) -> TaskClassification:
    """Classify a turn. Always returns a tier; ambiguity falls back to balanced.

    pending_tools may hold names, {"name": ...} dicts or ToolInvocation objects.
    """
    names = [_tool_name(t) for t in (pending_tools or [])]

    if names:
        if all(n in SAFE_PARALLEL_TOOLS for n in names):
            return TaskClassification("fast", "All pending tools are read-only operations", 0.9)
        has_writes = any(n in WRITE_TOOLS for n in names)
        if has_writes and len(names) == 1:
            return TaskClassification("balanced", "Single write operation", 0.8)
        if has_writes:
            return TaskClassification("deep", "Multiple operations including writes", 0.7)

    text = (user_message or "").lower()
    deep = [k for k in DEEP_KEYWORDS if k in text]
    fast = [k for k in FAST_KEYWORDS if k in text]

    if len(deep) >= 2:
        return TaskClassification("deep", f"Complex task keywords: {', '.join(deep)}", 0.85)
    if len(fast) >= 2 and not deep:
        return TaskClassification("fast", f"Simple task keywords: {', '.join(fast)}", 0.8)
    if len(deep) == 1:
        return TaskClassification("deep", f"Complex task keyword: {deep[0]}", 0.6)

    sentences = len(_SENTENCE_END.findall(user_message or ""))
    if len(user_message or "") > 500 or sentences > 5:
        return TaskClassification("deep", "Complex request with multiple parts", 0.7)

    if transcript is not None and len(transcript) > 20:
        return TaskClassification("balanced", "Session has significant context", 0.6)

    return TaskClassification("balanced", "Default balanced tier", 0.5)


def select_model(classification: TaskClassification, config: Optional[RoutingConfig] = None) -> str:
    """Resolve a model ID. Explicit settings override the classified tier."""
    config = config or routing_config
    mode = config.model_selection

    if mode == "manual" and config.manual_model:
        model_id = config.manual_model
    elif config.manual_model:
        model_id = config.manual_model
    elif mode in ("cost-optimized", "speed-optimized"):
        model_id = MODEL_TIERS["fast"].model_id
    elif config.preferred_tier in MODEL_TIERS:
        model_id = MODEL_TIERS[config.preferred_tier].model_id
    else:
        model_id = MODEL_TIERS.get(classification.tier, MODEL_TIERS["balanced"]).model_id

    logger.info(f"Model selected: {model_id} (tier={classification.tier}, "
                f"confidence={classification.confidence}, reason={classification.reason})")
    return model_id


def get_cheaper_alternative(model_id: str) -> Optional[str]:
    """deep -> balanced -> fast -> None"""
    tier = get_tier_for_model(model_id)
    if tier == "deep":
        return MODEL_TIERS["balanced"].model_id
    if tier == "balanced":
        return MODEL_TIERS["fast"].model_id
    return None


def route(user_message: str, transcript: Optional[List[Dict[str, Any]]] = None,
          pending_tools: Optional[Sequence[Any]] = None,
          config: Optional[RoutingConfig] = None) -> str:
    return select_model(classify_task(user_message, transcript, pending_tools), config)
