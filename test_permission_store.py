"""Tests for permission rule persistence."""

import json

from agent.permissions import PermissionManager
from permission_store import PermissionRuleStore


def test_load_missing_file_returns_empty(tmp_path):
    assert PermissionRuleStore(str(tmp_path / "rules.json")).load() == []


def test_load_corrupt_file_returns_empty(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text("{not json")
    assert PermissionRuleStore(str(path)).load() == []


def test_only_always_rules_are_persisted(tmp_path):
    path = tmp_path / "nested" / "rules.json"
    store = PermissionRuleStore(str(path))
    manager = PermissionManager(store)
    manager.add_rule("bash(npm *)", "allow", scope="always", reason="npm")
    manager.add_rule("write", "deny", scope="session")

    data = json.loads(path.read_text())
    assert data["version"] == 1
    assert [r["pattern"] for r in data["rules"]] == ["bash(npm *)"]
    assert not (tmp_path / "nested" / "rules.json.tmp").exists()


def test_always_rules_survive_restart(tmp_path):
    path = str(tmp_path / "rules.json")
    first = PermissionManager(PermissionRuleStore(path))
    rule = first.add_rule("bash(git *)", "allow", scope="always")

    second = PermissionManager(PermissionRuleStore(path))
    loaded = second.list_rules()
    assert [r.id for r in loaded] == [rule.id]
    assert second.check("bash", {"command": "git log"}) == "allow"


def test_removing_always_rule_rewrites_file(tmp_path):
    path = str(tmp_path / "rules.json")
    manager = PermissionManager(PermissionRuleStore(path))
    rule = manager.add_rule("bash", "deny", scope="always")
    manager.remove_rule(rule.id)
    assert PermissionRuleStore(path).load() == []


def test_invalid_stored_rows_are_skipped(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"version": 1, "rules": [
        {"pattern": "bash(", "action": "allow"},
        {"pattern": "read", "action": "allow", "scope": "always"},
        "garbage",
    ]}))
    manager = PermissionManager(PermissionRuleStore(str(path)))
    assert [r.pattern for r in manager.list_rules()] == ["read"]


def test_clear(tmp_path):
    path = tmp_path / "rules.json"
    store = PermissionRuleStore(str(path))
    store.save([])
    assert store.clear()
    assert not store.clear()
