"""Tool name sets shared by the permission engine, cache, executor and router."""

from typing import Dict, FrozenSet, Tuple

# Legacy / alternate names the model may emit
TOOL_NAME_NORMALIZE: Dict[str, str] = {
    "Read": "read",
    "read_file": "read",
    "Write": "write",
    "write_file": "write",
    "Edit": "edit",
    "edit_file": "edit",
    "Bash": "bash",
    "run_command": "bash",
    "Glob": "glob",
    "Grep": "grep",
    "list_directory": "list_dir",
    "WebFetch": "web_fetch",
    "WebSearch": "web_search",
    "TodoWrite": "todo_write",
}

# Always allowed by the permission engine (read-only or session-local).
SAFE_TOOLS: FrozenSet[str] = frozenset({
    "read", "glob", "grep", "web_fetch", "web_search",
    "file_info", "list_dir", "todo_write", "task",
})

# Denied when the permission default mode is "readonly".
READONLY_BLOCKED_TOOLS: FrozenSet[str] = frozenset({
    "write", "edit", "delete_file", "delete_dir", "move", "bash",
})

# Tools that mutate the filesystem; drive cache invalidation and routing.
WRITE_TOOLS: FrozenSet[str] = frozenset({
    "write", "write_file", "edit", "edit_file", "delete_file",
    "delete_dir", "create_dir", "move", "copy",
})

# Read-only tools that may run concurrently with each other.
SAFE_PARALLEL_TOOLS: FrozenSet[str] = frozenset({
    "read", "read_file", "read_image", "read_pdf",
    "glob", "grep", "grep_search", "file_info",
    "list_dir", "list_directory",
    "web_fetch", "webfetch", "web_search", "code_search",
    "git_status", "git_log", "git_diff",
})

# Tools that need the user and therefore run last, one at a time.
INTERACTIVE_TOOLS: FrozenSet[str] = frozenset({"question"})

CACHEABLE_TOOLS: FrozenSet[str] = SAFE_PARALLEL_TOOLS

WEB_TOOLS: FrozenSet[str] = frozenset({"web_fetch", "webfetch", "web_search", "code_search"})

# Results that depend on directory contents; stale after any write.
LISTING_TOOLS: FrozenSet[str] = frozenset({
    "glob", "grep", "grep_search", "list_dir", "list_directory", "code_search",
})

# Argument keys that reference filesystem paths.
PATH_KEYS: Tuple[str, ...] = ("file_path", "path", "dir_path", "source", "destination")


def normalize_tool_name(name: str) -> str:
    return TOOL_NAME_NORMALIZE.get(name, name)
