"""
Persistence for user-authored permission rules.
Rules with scope "always" are stored as a JSON file so they survive restarts;
session and once rules are never written.
"""

import json
import logging
import os
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = os.path.join(os.path.expanduser("~"), ".bedrock-agent-core", "permission_rules.json")

RULES_VERSION = 1


class PermissionRuleStore:
    """
    Reads and writes the rules file.

    File layout:  {"version": 1, "rules": [{id, pattern, action, scope, reason, created_at}, ...]}
    """

    def __init__(self, path: str = DEFAULT_RULES_PATH):
        self.path = path

    def load(self) -> List[Dict[str, Any]]:
        """Return stored rule dicts; a missing or unreadable file yields []."""
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load permission rules from {self.path}: {e}")
            return []
        rows = data.get("rules", []) if isinstance(data, dict) else data
        return [r for r in rows if isinstance(r, dict)] if isinstance(rows, list) else []

    def save(self, rules: List[Dict[str, Any]]) -> str:
        """Atomically replace the rules file. Returns the file path."""
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"version": RULES_VERSION, "rules": rules}, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
            logger.info(f"Permission rules saved: {self.path} ({len(rules)} rules)")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return self.path

    def clear(self) -> bool:
        if os.path.exists(self.path):
            os.remove(self.path)
            return True
        return False
