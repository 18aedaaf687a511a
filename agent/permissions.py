"""
Permission policy engine for tool invocations.

decide() applies the fixed precedence (trusted mode, deny list, allow list /
safe tools, read-only mode, trust mode) and only then falls back to
user-authored rules, remembered session decisions, and finally an
interactive confirmation whose default depends on a per-tool danger check.
"""

import inspect
import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from config import PermissionsConfig
from permission_store import PermissionRuleStore
from tools._common import fingerprint
from tools.schemas import READONLY_BLOCKED_TOOLS, SAFE_TOOLS

from .errors import PermissionDenied
from .events import PermissionDecision

logger = logging.getLogger(__name__)

ConfirmFn = Callable[[str, bool], Union[bool, Awaitable[bool]]]

ACTIONS = ("allow", "deny", "prompt")
SCOPES = ("once", "session", "always")

# ============================================================
# Danger predicates
# ============================================================

DANGEROUS_BASH_PATTERNS = [
    re.compile(r"rm\s+-rf"),
    re.compile(r"DROP\s+TABLE", re.IGNORECASE),
    re.compile(r"DROP\s+DATABASE", re.IGNORECASE),
    re.compile(r"DELETE\s+FROM", re.IGNORECASE),
    re.compile(r"TRUNCATE", re.IGNORECASE),
    re.compile(r"git\s+push\s+.*--force"),
    re.compile(r"git\s+push\s+.*-f\s"),
    re.compile(r">\s*/dev/sd"),
    re.compile(r"mkfs"),
    re.compile(r"dd\s+if="),
]


def _bash_is_dangerous(args: Dict[str, Any]) -> bool:
    cmd = str(args.get("command", "") or "")
    return any(p.search(cmd) for p in DANGEROUS_BASH_PATTERNS)


DANGER_PREDICATES: Dict[str, Callable[[Dict[str, Any]], bool]] = {
    "bash": _bash_is_dangerous,
    "write": lambda args: True,
    "edit": lambda args: True,
    "delete_file": lambda args: True,
    "delete_dir": lambda args: True,
    "move": lambda args: True,
}


def is_dangerous(tool_name: str, arguments: Dict[str, Any]) -> bool:
    check = DANGER_PREDICATES.get(tool_name)
    return bool(check and check(arguments or {}))


# ============================================================
# Rule patterns
# ============================================================

_PATTERN_RE = re.compile(r"^([^()\s]+)(?:\(([^()]*)\))?$")


@dataclass(frozen=True)
class Matcher:
    """Pre-parsed wildcard: any | exact | prefix | suffix | contains | glob."""
    kind: str
    value: str = ""
    regex: Optional[re.Pattern] = None

    @classmethod
    def parse(cls, pattern: str) -> "Matcher":
        if pattern == "*":
            return cls("any")
        if "*" not in pattern:
            return cls("exact", pattern)
        inner = pattern[1:-1]
        if pattern.startswith("*") and pattern.endswith("*") and "*" not in inner:
            return cls("contains", inner)
        if pattern.startswith("*") and "*" not in pattern[1:]:
            return cls("suffix", pattern[1:])
        if pattern.endswith("*") and "*" not in pattern[:-1]:
            return cls("prefix", pattern[:-1])
        regex = re.compile("^" + ".*".join(re.escape(p) for p in pattern.split("*")) + "$", re.DOTALL)
        return cls("glob", pattern, regex)

    def matches(self, value: str) -> bool:
        if self.kind == "any":
            return True
        if self.kind == "exact":
            return value == self.value
        if self.kind == "prefix":
            return value.startswith(self.value)
        if self.kind == "suffix":
            return value.endswith(self.value)
        if self.kind == "contains":
            return self.value in value
        return bool(self.regex and self.regex.match(value))


@dataclass(frozen=True)
class ArgConstraint:
    key: Optional[str]  # None = positional
    matcher: Matcher

    def matches(self, arguments: Dict[str, Any]) -> bool:
        if self.key is None:
            if "_" in arguments:
                actual = arguments["_"]
            elif arguments:
                actual = next(iter(arguments.values()))
            else:
                return False
        else:
            if self.key not in arguments:
                return False
            actual = arguments[self.key]
        if actual is None:
            return False
        text = actual if isinstance(actual, str) else json.dumps(actual, default=str)
        return self.matcher.matches(text)


@dataclass(frozen=True)
class ParsedPattern:
    tool: Matcher
    args: Tuple[ArgConstraint, ...] = ()

    def matches(self, tool_name: str, arguments: Dict[str, Any]) -> bool:
        if not self.tool.matches(tool_name):
            return False
        return all(c.matches(arguments or {}) for c in self.args)


def parse_permission_pattern(pattern: str) -> ParsedPattern:
    """Parse ``tool`` / ``tool(value, key:value, ...)``. Raises ValueError if malformed."""
    pattern = (pattern or "").strip()
    match = _PATTERN_RE.match(pattern)
    if not match:
        raise ValueError(f"Invalid permission pattern: {pattern!r}")
    tool, args_str = match.group(1), match.group(2)
    constraints: List[ArgConstraint] = []
    if args_str:
        for part in (p.strip() for p in args_str.split(",")):
            if not part:
                continue
            if ":" in part:
                key, _, value = part.partition(":")
                key, value = key.strip(), value.strip()
                if not key or not value:
                    raise ValueError(f"Invalid argument constraint {part!r} in {pattern!r}")
                constraints.append(ArgConstraint(key, Matcher.parse(value)))
            else:
                constraints.append(ArgConstraint(None, Matcher.parse(part)))
    return ParsedPattern(Matcher.parse(tool), tuple(constraints))


def check_permission_pattern(pattern: str) -> Tuple[bool, Optional[str]]:
    """Validate a pattern without creating a rule. Returns (valid, error)."""
    try:
        parse_permission_pattern(pattern)
        return True, None
    except ValueError as e:
        return False, str(e)


@dataclass(frozen=True)
class PermissionRule:
    """A user-authored rule. Immutable; removed only by id."""
    id: str
    pattern: str
    action: str
    scope: str
    created_at: str
    reason: str = ""
    parsed: ParsedPattern = field(default=None, compare=False, repr=False)  # type: ignore[assignment]

    @classmethod
    def create(cls, pattern: str, action: str, scope: str = "session", reason: str = "",
               rule_id: Optional[str] = None, created_at: Optional[str] = None) -> "PermissionRule":
        if action not in ACTIONS:
            raise ValueError(f"Unknown rule action: {action}")
        if scope not in SCOPES:
            raise ValueError(f"Unknown rule scope: {scope}")
        return cls(
            id=rule_id or uuid.uuid4().hex[:12],
            pattern=pattern,
            action=action,
            scope=scope,
            created_at=created_at or datetime.now(timezone.utc).isoformat(),
            reason=reason,
            parsed=parse_permission_pattern(pattern),
        )

    def matches(self, tool_name: str, arguments: Dict[str, Any]) -> bool:
        return self.parsed.matches(tool_name, arguments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id, "pattern": self.pattern, "action": self.action,
            "scope": self.scope, "reason": self.reason, "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "PermissionRule":
        return cls.create(
            pattern=row["pattern"], action=row["action"], scope=row.get("scope", "always"),
            reason=row.get("reason", ""), rule_id=row.get("id"), created_at=row.get("created_at"),
        )


# ============================================================
# Rule manager
# ============================================================

class PermissionManager:
    """User-authored rules plus per-session remembered decisions."""

    def __init__(self, store: Optional[PermissionRuleStore] = None):
        self.store = store
        self._lock = threading.Lock()
        self._rules: List[PermissionRule] = []
        self._session_allowed: set = set()
        self._session_denied: set = set()
        if store is not None:
            self._load_rules()

    def _load_rules(self) -> None:
        for row in self.store.load():
            try:
                self._rules.append(PermissionRule.from_dict(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid stored permission rule {row!r}: {e}")

    def _save_rules(self) -> None:
        if self.store is None:
            return
        self.store.save([r.to_dict() for r in self._rules if r.scope == "always"])

    def add_rule(self, pattern: str, action: str, scope: str = "session", reason: str = "") -> PermissionRule:
        rule = PermissionRule.create(pattern, action, scope, reason)
        with self._lock:
            self._rules.append(rule)
            if rule.scope == "always":
                self._save_rules()
        logger.info(f"Permission rule added: {rule.pattern} -> {rule.action} ({rule.scope})")
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            for i, rule in enumerate(self._rules):
                if rule.id == rule_id:
                    del self._rules[i]
                    if rule.scope == "always":
                        self._save_rules()
                    return True
        return False

    def list_rules(self) -> List[PermissionRule]:
        with self._lock:
            return list(self._rules)

    def clear_session_decisions(self) -> None:
        with self._lock:
            self._session_allowed.clear()
            self._session_denied.clear()

    def resolve(self, tool_name: str, arguments: Dict[str, Any]) -> Tuple[str, Optional[PermissionRule]]:
        """(verdict, rule) for an invocation; rule is None unless a rule decided it.

        A remembered session decision wins over rules.
        """
        key = fingerprint(tool_name, arguments)
        with self._lock:
            if key in self._session_allowed:
                return "allow", None
            if key in self._session_denied:
                return "deny", None
            rules = list(self._rules)
        for rule in rules:
            if rule.scope in ("session", "always") and rule.matches(tool_name, arguments):
                return rule.action, rule
        return "prompt", None

    def check(self, tool_name: str, arguments: Dict[str, Any]) -> str:
        """Return "allow", "deny" or "prompt" for an invocation."""
        return self.resolve(tool_name, arguments)[0]

    def record_decision(self, tool_name: str, arguments: Dict[str, Any], allowed: bool) -> None:
        key = fingerprint(tool_name, arguments)
        with self._lock:
            if allowed:
                self._session_denied.discard(key)
                self._session_allowed.add(key)
            else:
                self._session_allowed.discard(key)
                self._session_denied.add(key)


# ============================================================
# Engine
# ============================================================

def format_args_preview(arguments: Any) -> str:
    if not isinstance(arguments, dict):
        return str(arguments)
    lines = []
    for key, value in arguments.items():
        if isinstance(value, str) and len(value) > 100:
            value = value[:100] + "..."
        lines.append(f"  {key}: {json.dumps(value, default=str)}")
    return "\n".join(lines)


class PermissionEngine:
    """Admission control for tool invocations."""

    def __init__(self, config: Optional[PermissionsConfig] = None,
                 manager: Optional[PermissionManager] = None,
                 confirm: Optional[ConfirmFn] = None):
        self.config = config or PermissionsConfig()
        self.manager = manager or PermissionManager()
        self.confirm = confirm

    def _static_decision(self, tool_name: str, config: PermissionsConfig) -> Optional[PermissionDecision]:
        if config.trusted_mode:
            return PermissionDecision(True, "Trusted mode enabled", "trusted")
        if tool_name in config.always_deny:
            return PermissionDecision(False, "Tool in always-deny list", "deny_list")
        if tool_name in config.always_allow:
            return PermissionDecision(True, "Tool in always-allow list", "allow_list")
        if tool_name in SAFE_TOOLS:
            return PermissionDecision(True, "Safe tool", "safe_tool")
        if config.default_mode == "readonly" and tool_name in READONLY_BLOCKED_TOOLS:
            return PermissionDecision(False, "Read-only mode", "readonly")
        if config.default_mode == "trust":
            return PermissionDecision(True, "Trust mode", "trust")
        return None

    async def decide(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None,
                     config: Optional[PermissionsConfig] = None) -> PermissionDecision:
        arguments = arguments or {}
        decision = self._static_decision(tool_name, config or self.config)
        if decision is None:
            decision = await self._dynamic_decision(tool_name, arguments)
        logger.info(f"Permission {tool_name}: {'allow' if decision.allowed else 'deny'} ({decision.reason})")
        return decision

    async def enforce(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None,
                      config: Optional[PermissionsConfig] = None) -> PermissionDecision:
        """decide(), raising PermissionDenied on deny."""
        decision = await self.decide(tool_name, arguments, config)
        if not decision.allowed:
            raise PermissionDenied(tool_name, decision.reason)
        return decision

    async def _dynamic_decision(self, tool_name: str, arguments: Dict[str, Any]) -> PermissionDecision:
        verdict, rule = self.manager.resolve(tool_name, arguments)
        if verdict != "prompt":
            if rule is not None:
                return PermissionDecision(verdict == "allow", rule.reason or f"Rule {rule.pattern}", "rule")
            return PermissionDecision(verdict == "allow", "Remembered session decision", "session")

        dangerous = is_dangerous(tool_name, arguments)
        allowed = await self._prompt(tool_name, arguments, dangerous)
        if allowed is None:
            return PermissionDecision(False, "Prompt cancelled", "prompt")
        self.manager.record_decision(tool_name, arguments, allowed)
        return PermissionDecision(allowed, "User approved" if allowed else "User denied", "prompt")

    async def _prompt(self, tool_name: str, arguments: Dict[str, Any], dangerous: bool) -> Optional[bool]:
        """Ask the confirmation surface. None means cancelled or failed."""
        if self.confirm is None:
            logger.warning(f"No confirmation surface for {tool_name}; treating as cancelled")
            return None
        warning = "\nWARNING: This operation appears to be potentially destructive!" if dangerous else ""
        message = f"Allow the agent to use {tool_name}?{warning}\n\n{format_args_preview(arguments)}\n\nAllow?"
        try:
            answer = self.confirm(message, not dangerous)
            if inspect.isawaitable(answer):
                answer = await answer
        except Exception as e:
            logger.info(f"Permission prompt for {tool_name} cancelled: {e}")
            return None
        return bool(answer)


async def check_permission(tool_name: str, arguments: Optional[Dict[str, Any]], config: PermissionsConfig,
                           confirm: Optional[ConfirmFn] = None) -> PermissionDecision:
    """One-shot decision without a long-lived manager."""
    return await PermissionEngine(config, PermissionManager(), confirm).decide(tool_name, arguments)


def create_permission_filter(engine: PermissionEngine) -> Callable[[str, Dict[str, Any]], Awaitable[bool]]:
    async def _filter(tool_name: str, arguments: Dict[str, Any]) -> bool:
        return (await engine.decide(tool_name, arguments)).allowed
    return _filter
