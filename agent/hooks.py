"""
User-configured shell hooks around tool execution.

Config shape (same as the hooks section of a settings file):

    {"PreToolUse": [{"matcher": "write|edit", "hooks": [{"type": "command", "command": "...", "timeout": 10}]}]}

A failing PreToolUse hook blocks the tool; failures of the other events are
logged and ignored.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from backend import Backend, LocalBackend
from config import app_config
from tools._common import ToolResult

from .errors import HookTimeout

logger = logging.getLogger(__name__)

HOOK_EVENTS = ("PreToolUse", "PostToolUse", "PreCommit", "Notification")

DEFAULT_HOOK_TIMEOUT = app_config.hook_timeout
MAX_HOOK_TIMEOUT = 300.0

# Dynamic-loader and interpreter-injection variables never passed to hooks
DANGEROUS_ENV_VARS = (
    "LD_PRELOAD", "LD_LIBRARY_PATH", "LD_AUDIT", "GLIBC_TUNABLES",
    "DYLD_INSERT_LIBRARIES", "DYLD_FORCE_FLAT_NAMESPACE", "DYLD_LIBRARY_PATH",
    "DYLD_FALLBACK_LIBRARY_PATH", "DYLD_FRAMEWORK_PATH", "DYLD_FALLBACK_FRAMEWORK_PATH",
    "BASH_ENV", "ENV", "PS4", "PERL5OPT", "PERL5LIB", "PYTHONPATH", "PYTHONINSPECT",
    "NODE_OPTIONS", "NODE_PATH", "RCFILE", "IFS", "JAVA_TOOL_OPTIONS", "_JAVA_OPTIONS",
    "MAVEN_OPTS", "RUBYOPT", "RUBYLIB", "HISTFILE", "HISTCONTROL", "PYTHONSTARTUP",
    "PROMPT_COMMAND", "TERMINFO", "TERMINFO_DIRS", "GCONV_PATH", "GETCONF_DIR",
    "HOSTALIASES", "RESOLV_HOST_CONF",
)

_SUBSTITUTIONS = {
    "$TOOL_NAME": "$AGENT_TOOL_NAME",
    "$FILE_PATH": "$AGENT_FILE_PATH",
    "$CWD": "$AGENT_CWD",
    "$RESULT": "$AGENT_RESULT",
}


@dataclass
class HookConfig:
    command: str
    timeout: float = DEFAULT_HOOK_TIMEOUT
    type: str = "command"


@dataclass
class HookMatcher:
    matcher: str = "*"
    hooks: List[HookConfig] = field(default_factory=list)

    def matches(self, tool_name: str) -> bool:
        return matches_tool(tool_name, self.matcher)


@dataclass
class HookContext:
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    cwd: str = "."
    file_path: Optional[str] = None
    result: Optional[ToolResult] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class HookOutcome:
    proceed: bool = True
    error: Optional[str] = None
    ran: int = 0


def matches_tool(tool_name: str, matcher: str) -> bool:
    """``*``, ``a|b`` alternatives, ``prefix*``, ``*suffix`` or a glob."""
    if matcher == "*":
        return True
    for pattern in (p.strip() for p in matcher.split("|")):
        if not pattern:
            continue
        if pattern.endswith("*") and tool_name.startswith(pattern[:-1]):
            return True
        if pattern.startswith("*") and tool_name.endswith(pattern[1:]):
            return True
        if tool_name == pattern:
            return True
        regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
        if re.match(regex, tool_name):
            return True
    return False


def filter_env(env: Dict[str, str]) -> Dict[str, str]:
    out = {}
    for key, value in env.items():
        upper = key.upper()
        if any(upper == d or upper.startswith(f"{d}_") for d in DANGEROUS_ENV_VARS):
            continue
        out[key] = value
    return out


def _clamp_timeout(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 0 < value <= MAX_HOOK_TIMEOUT:
        return float(value)
    return DEFAULT_HOOK_TIMEOUT


def parse_hooks_config(raw: Any) -> Dict[str, List[HookMatcher]]:
    """Normalize a raw hooks mapping. Unknown events and non-command hooks are dropped."""
    if not isinstance(raw, dict):
        return {}
    parsed: Dict[str, List[HookMatcher]] = {}
    for event in HOOK_EVENTS:
        entries = raw.get(event)
        if not isinstance(entries, list):
            continue
        matchers = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            hooks = []
            for h in entry.get("hooks") or []:
                if not isinstance(h, dict) or h.get("type", "command") != "command" or not h.get("command"):
                    continue
                hooks.append(HookConfig(command=str(h["command"]), timeout=_clamp_timeout(h.get("timeout"))))
            matchers.append(HookMatcher(matcher=str(entry.get("matcher", "*")), hooks=hooks))
        parsed[event] = matchers
    return parsed


class HookRunner:
    """Runs matching hook commands through the backend."""

    def __init__(self, config: Optional[Dict[str, List[HookMatcher]]] = None,
                 backend: Optional[Backend] = None):
        self.config = config or {}
        self.backend = backend or LocalBackend(".")

    def load_config(self, raw: Any) -> None:
        self.config = parse_hooks_config(raw)
        logger.info(f"Loaded hooks for {len(self.config)} events")

    def load_from_file(self, path: str) -> bool:
        if not os.path.exists(path):
            return False
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        self.load_config(data.get("hooks", {}) if isinstance(data, dict) else {})
        return True

    def has_hooks(self, event: str) -> bool:
        return bool(self.config.get(event))

    def _build_env(self, context: HookContext) -> Dict[str, str]:
        env = {**os.environ, **context.env}
        env["AGENT_TOOL_NAME"] = context.tool_name
        env["AGENT_FILE_PATH"] = context.file_path or ""
        env["AGENT_CWD"] = context.cwd
        if context.result is not None:
            env["AGENT_RESULT"] = json.dumps(asdict(context.result), default=str)
        return filter_env(env)

    def _run_command(self, hook: HookConfig, context: HookContext) -> str:
        """Blocking. Returns stdout; raises HookTimeout or RuntimeError on failure."""
        command = hook.command
        for placeholder, var in _SUBSTITUTIONS.items():
            command = command.replace(placeholder, var)
        logger.debug(f"Running hook for {context.tool_name}: {command}")
        stdout, stderr, rc = self.backend.run_command(
            command, cwd=context.cwd, timeout=hook.timeout, env=self._build_env(context),
        )
        if rc == -1:
            raise HookTimeout(hook.command, hook.timeout, stderr)
        if rc != 0:
            raise RuntimeError(stderr.strip() or f"Hook exited with code {rc}")
        return stdout

    async def run(self, event: str, context: HookContext) -> HookOutcome:
        outcome = HookOutcome()
        for matcher in self.config.get(event, []):
            if not matcher.matches(context.tool_name):
                continue
            for hook in matcher.hooks:
                outcome.ran += 1
                try:
                    await asyncio.to_thread(self._run_command, hook, context)
                except (HookTimeout, RuntimeError, OSError) as e:
                    logger.warning(f"{event} hook failed for {context.tool_name}: {e}")
                    if event == "PreToolUse":
                        outcome.proceed = False
                        outcome.error = str(e)
                        return outcome
        return outcome
