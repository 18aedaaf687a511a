"""Tests for the tool result cache and its invalidation policy."""

import os
import time

import pytest

from agent.cache import ToolCache, invalidate_on_bash, invalidate_on_write, should_cache_tool
from backend import Backend, LocalBackend
from tools._common import ToolResult


class FakeBackend(Backend):
    """In-memory stat oracle: path -> mtime."""

    def __init__(self, files=None):
        self.files = dict(files or {})

    @property
    def working_directory(self) -> str:
        return "/"

    def stat(self, path):
        path = self.resolve_path(path)
        if path not in self.files:
            raise FileNotFoundError(path)
        return {"mtime": self.files[path], "size": 0, "is_dir": False}

    def run_command(self, command, cwd=".", timeout=30, env=None):
        return "", "", 0


def ok(text="content"):
    return ToolResult(success=True, output=text)


@pytest.fixture
def backend():
    return FakeBackend({"/test/a.ts": 1, "/test/b.ts": 1, "/test/file.ts": 1, "/test/other.ts": 1})


@pytest.fixture
def cache(backend):
    return ToolCache(backend)


def test_set_then_get_returns_result(cache):
    cache.set("read", {"file_path": "/test/a.ts"}, ok("A"))
    assert cache.get("read", {"file_path": "/test/a.ts"}).output == "A"


def test_failed_result_never_cached(cache):
    cache.set("read", {"file_path": "/test/a.ts"}, ToolResult(success=False, output="", error="nope"))
    assert cache.get("read", {"file_path": "/test/a.ts"}) is None
    assert cache.get_stats().entry_count == 0


def test_argument_order_does_not_change_key(cache):
    cache.set("grep", {"pattern": "x", "path": "/test"}, ok("hits"))
    assert cache.get("grep", {"path": "/test", "pattern": "x"}).output == "hits"


def test_mtime_change_is_a_miss_and_evicts(cache, backend):
    cache.set("read", {"file_path": "/test/a.ts"}, ok())
    backend.files["/test/a.ts"] = 2
    assert cache.get("read", {"file_path": "/test/a.ts"}) is None
    assert cache.get_stats().entry_count == 0


def test_disappearing_file_is_a_miss(cache, backend):
    cache.set("read", {"file_path": "/test/a.ts"}, ok())
    del backend.files["/test/a.ts"]
    assert cache.get("read", {"file_path": "/test/a.ts"}) is None


def test_appearing_file_is_a_miss(cache, backend):
    cache.set("file_info", {"path": "/test/new.ts"}, ok("missing"))
    assert cache.get("file_info", {"path": "/test/new.ts"}) is not None
    backend.files["/test/new.ts"] = 5
    assert cache.get("file_info", {"path": "/test/new.ts"}) is None


def test_invalidate_file_is_isolated(cache):
    cache.set("read", {"file_path": "/test/file.ts"}, ok("F"))
    cache.set("read", {"file_path": "/test/other.ts"}, ok("O"))
    assert cache.invalidate_file("/test/file.ts") == 1
    assert cache.get("read", {"file_path": "/test/file.ts"}) is None
    assert cache.get("read", {"file_path": "/test/other.ts"}).output == "O"


def test_invalidate_directory_removes_nested(cache):
    cache.set("read", {"file_path": "/test/a.ts"}, ok())
    cache.set("read", {"file_path": "/test/b.ts"}, ok())
    cache.set("web_search", {"query": "x"}, ok())
    assert cache.invalidate_directory("/test") == 2
    assert cache.get_stats().entry_count == 1


def test_invalidate_directory_does_not_match_sibling_prefix(cache, backend):
    backend.files["/testing/x.ts"] = 1
    cache.set("read", {"file_path": "/testing/x.ts"}, ok())
    assert cache.invalidate_directory("/test") == 0


def test_stats_scenario(cache):
    cache.set("read", {"file_path": "/test/a.ts"}, ok())
    cache.set("read", {"file_path": "/test/b.ts"}, ok())
    assert cache.get("read", {"file_path": "/test/a.ts"}) is not None
    assert cache.get("read", {"file_path": "/nonexistent.ts"}) is None
    stats = cache.get_stats()
    assert (stats.entry_count, stats.hits, stats.misses) == (2, 1, 1)
    assert cache.get_hit_rate() == pytest.approx(0.5)


def test_hit_rate_without_lookups_is_zero(cache):
    assert cache.get_hit_rate() == 0.0


def test_has_and_delete_do_not_touch_counters(cache):
    cache.set("read", {"file_path": "/test/a.ts"}, ok())
    assert cache.has("read", {"file_path": "/test/a.ts"})
    assert cache.delete("read", {"file_path": "/test/a.ts"})
    assert not cache.has("read", {"file_path": "/test/a.ts"})
    stats = cache.get_stats()
    assert stats.hits == 0 and stats.misses == 0


def test_ttl_expiry(cache, monkeypatch):
    cache.set("web_fetch", {"url": "https://example.com"}, ok(), ttl=10)
    real_time = time.time()
    monkeypatch.setattr("agent.cache.time.time", lambda: real_time + 11)
    assert cache.get("web_fetch", {"url": "https://example.com"}) is None


def test_clear_and_invalidate_tool(cache):
    cache.set("read", {"file_path": "/test/a.ts"}, ok())
    cache.set("glob", {"pattern": "*.ts"}, ok())
    assert cache.invalidate_tool("glob") == 1
    cache.clear()
    assert cache.get_stats().entry_count == 0


def test_should_cache_tool():
    assert should_cache_tool("read", {"file_path": "a"})
    assert not should_cache_tool("read", {"file_path": "a", "no_cache": True})
    assert not should_cache_tool("write", {"file_path": "a"})
    assert not should_cache_tool("bash", {"command": "ls"})


def test_invalidate_on_write_drops_path_and_listings(cache):
    cache.set("read", {"file_path": "/test/a.ts"}, ok())
    cache.set("read", {"file_path": "/test/b.ts"}, ok())
    cache.set("glob", {"pattern": "**/*.ts"}, ok())
    removed = invalidate_on_write(cache, "write", {"file_path": "/test/a.ts", "content": "x"})
    assert removed == 2
    assert cache.has("read", {"file_path": "/test/b.ts"})


def test_invalidate_on_write_ignores_read_tools(cache):
    cache.set("read", {"file_path": "/test/a.ts"}, ok())
    assert invalidate_on_write(cache, "read", {"file_path": "/test/a.ts"}) == 0


def test_invalidate_on_bash_uses_quoted_paths(cache):
    cache.set("read", {"file_path": "/test/a.ts"}, ok())
    cache.set("read", {"file_path": "/test/b.ts"}, ok())
    assert invalidate_on_bash(cache, "rm '/test/a.ts'") == 1
    assert cache.has("read", {"file_path": "/test/b.ts"})
    assert invalidate_on_bash(cache, "ls '/test/b.ts'") == 0


def test_invalidate_on_bash_explicit_paths(cache):
    cache.set("read", {"file_path": "/test/b.ts"}, ok())
    assert invalidate_on_bash(cache, "make build", affected_paths=["/test"]) == 1


def test_local_backend_freshness(tmp_path):
    target = tmp_path / "f.txt"
    target.write_text("one")
    cache = ToolCache(LocalBackend(str(tmp_path)))
    cache.set("read", {"file_path": "f.txt"}, ok("one"))
    assert cache.get("read", {"file_path": "f.txt"}).output == "one"

    st = os.stat(target)
    os.utime(target, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
    assert cache.get("read", {"file_path": "f.txt"}) is None
