"""
Agent event and permission decision data types.
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str  # model_selected, tool_result, tool_rejected, cache_hit, compressed, text, done, etc.
    content: str = ""
    data: Optional[Dict[str, Any]] = None


@dataclass
class PermissionDecision:
    """Permission engine decision for a tool invocation"""
    allowed: bool
    reason: str = ""
    source: str = ""  # trusted, deny_list, allow_list, safe_tool, readonly, trust, session, rule, prompt
