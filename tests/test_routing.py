"""
Unit tests for message normalisation and model routing.
"""

import pytest

from memo_guard.config.loader import ProviderConfig
from memo_guard.core.routing import is_high_quality, normalize_messages, select_route

PROVIDER = ProviderConfig()


def _user(content: str):
    return [{"role": "user", "content": content}]


class TestNormalizeMessages:

    def test_system_messages_merged_first(self):
        messages = normalize_messages([
            {"role": "User", "content": "hi"},
            {"role": "SYSTEM", "content": "be brief"},
            {"role": "assistant", "content": 42},
            {"role": "system", "content": "be kind"},
        ])
        assert messages == [
            {"role": "system", "content": "be brief\n\nbe kind"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "42"},
        ]

    def test_blank_system_dropped(self):
        messages = normalize_messages([{"role": "system", "content": "  "}, {"role": "user"}])
        assert messages == [{"role": "user", "content": ""}]

    def test_non_dict_entries_dropped(self):
        assert normalize_messages(["hello", None, {"role": "user", "content": "x"}]) == [
            {"role": "user", "content": "x"}
        ]

    def test_not_a_list(self):
        assert normalize_messages("hello") == []


class TestModelSelection:

    def test_short_chat_uses_cheap_model(self):
        route = select_route(_user("how are you?"), PROVIDER)
        assert route.selected_model == "qwen-flash"
        assert route.upstream_model == "qwen-flash"
        assert route.function_type == "conversation"

    @pytest.mark.parametrize("content", [
        "x" * 120,
        "my typescript build fails",
        "```print(1)```",
        "请给我一个设计方案",
        "必须支持离线并且同时保持同步",
    ])
    def test_hard_tasks_use_strong_model(self, content):
        assert is_high_quality(_user(content))
        assert select_route(_user(content), PROVIDER).selected_model == "qwen-max"

    def test_long_conversation_uses_strong_model(self):
        messages = [{"role": "user", "content": "hi"}] * 8
        assert select_route(messages, PROVIDER).selected_model == "qwen-max"

    def test_cheap_function_types(self):
        route = select_route(_user("x" * 500), PROVIDER, function_type="persona")
        assert route.selected_model == "qwen-flash"

    def test_explicit_model_wins(self):
        route = select_route(_user("hi"), PROVIDER, requested_model="qwen-plus")
        assert route.selected_model == "qwen-plus"
        assert select_route(_user("hi"), PROVIDER, requested_model="auto").selected_model == "qwen-flash"


class TestSearchRouting:

    def test_freshness_enables_search(self):
        route = select_route(_user("what is the weather today?"), PROVIDER)
        assert route.enable_search is True
        assert route.upstream_model == "qwen3-max"
        assert route.selected_model == "qwen-flash"

    def test_explicit_flag_wins(self):
        assert select_route(_user("latest news"), PROVIDER, enable_search=False).enable_search is False
        assert select_route(_user("hello"), PROVIDER, enable_search=True).enable_search is True

    def test_cheap_function_types_never_search(self):
        route = select_route(_user("latest price"), PROVIDER, function_type="analysis")
        assert route.enable_search is False

    def test_search_model_kept(self):
        route = select_route(
            _user("today"), PROVIDER, requested_model="qwen3-max-preview"
        )
        assert route.upstream_model == "qwen3-max-preview"
