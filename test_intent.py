"""Tests for task classification and model tier routing."""

import pytest

from agent.intent import TaskClassification, classify_task, get_cheaper_alternative, select_model
from config import MODEL_TIERS, RoutingConfig, estimate_cost, get_model_config, get_tier_for_model
from tools._common import ToolInvocation

FAST = MODEL_TIERS["fast"].model_id
BALANCED = MODEL_TIERS["balanced"].model_id
DEEP = MODEL_TIERS["deep"].model_id


def routing(**kwargs):
    base = dict(model_selection="auto", manual_model=None, preferred_tier=None)
    base.update(kwargs)
    return RoutingConfig(**base)


def test_read_only_pending_tools_are_fast():
    c = classify_task("whatever", [], [{"name": "read"}, {"name": "glob"}])
    assert (c.tier, c.confidence) == ("fast", 0.9)


def test_pending_tools_accept_invocations_and_names():
    assert classify_task("", None, ["grep", ToolInvocation("list_dir")]).tier == "fast"


def test_single_write_is_balanced():
    c = classify_task("", [], [{"name": "write"}])
    assert (c.tier, c.confidence) == ("balanced", 0.8)


def test_write_with_other_tools_is_deep():
    c = classify_task("", [], [{"name": "edit"}, {"name": "bash"}])
    assert (c.tier, c.confidence) == ("deep", 0.7)


def test_non_write_mixed_tools_fall_through_to_keywords():
    c = classify_task("hello there", [], [{"name": "bash"}, {"name": "read"}])
    assert (c.tier, c.confidence) == ("balanced", 0.5)


def test_two_complexity_keywords_are_deep():
    c = classify_task("Please REFACTOR and optimize the parser", [], [])
    assert (c.tier, c.confidence) == ("deep", 0.85)


def test_simplicity_keywords_are_fast():
    c = classify_task("show me the list of files", [], [])
    assert (c.tier, c.confidence) == ("fast", 0.8)


def test_single_complexity_keyword_is_deep_with_low_confidence():
    c = classify_task("debug this", [], [])
    assert (c.tier, c.confidence) == ("deep", 0.6)


def test_substring_matching_counts():
    # "planet" contains "plan"
    assert classify_task("planet", [], []).tier == "deep"


def test_long_message_is_deep():
    c = classify_task("a" * 501, [], [])
    assert (c.tier, c.confidence) == ("deep", 0.7)


def test_many_sentences_is_deep():
    c = classify_task("Go. Now. Yes. No. Ok. Fine.", [], [])
    assert (c.tier, c.confidence) == ("deep", 0.7)


def test_long_session_is_balanced():
    transcript = [{"role": "user", "content": "x"}] * 21
    c = classify_task("hello", transcript, [])
    assert (c.tier, c.confidence) == ("balanced", 0.6)


def test_default_is_balanced():
    c = classify_task("hello", [], [])
    assert (c.tier, c.confidence) == ("balanced", 0.5)


DEEP_CLASS = TaskClassification("deep", "test", 0.9)


@pytest.mark.parametrize("config,expected", [
    (routing(), DEEP),
    (routing(model_selection="manual", manual_model="my-model"), "my-model"),
    (routing(model_selection="cost-optimized", manual_model="my-model"), "my-model"),
    (routing(model_selection="cost-optimized"), FAST),
    (routing(model_selection="speed-optimized", preferred_tier="deep"), FAST),
    (routing(preferred_tier="balanced"), BALANCED),
])
def test_select_model_precedence(config, expected):
    assert select_model(DEEP_CLASS, config) == expected


def test_cheaper_alternative_steps_down():
    assert get_cheaper_alternative(DEEP) == BALANCED
    assert get_cheaper_alternative(BALANCED) == FAST
    assert get_cheaper_alternative(FAST) is None
    assert get_cheaper_alternative("unknown-model") is None


def test_tier_table_lookups():
    assert get_tier_for_model(DEEP) == "deep"
    assert get_model_config("nope") is None
    expected = MODEL_TIERS["balanced"].cost_per_1k_prompt * 2 + MODEL_TIERS["balanced"].cost_per_1k_completion
    assert estimate_cost(BALANCED, 2000, 1000) == pytest.approx(expected)
    assert estimate_cost("nope", 1000, 1000) == 0.0
