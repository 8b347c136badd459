"""Tests for chat request normalization."""

import pytest

from papergrid.agent.qa_graph import ChatTurn
from papergrid.chat.validation import (
    QUESTION_TOO_LONG,
    QUESTION_TOO_SHORT,
    normalize_chat_request,
)
from papergrid.errors import ChatValidationError

KEY_A = "a" * 64
KEY_B = "0123456789abcdef" * 4


class TestQuestion:
    @pytest.mark.parametrize("body", [None, [], {}, {"question": ""}, {"question": "   "}, {"question": 42}])
    def test_missing_or_blank(self, body):
        with pytest.raises(ChatValidationError, match=QUESTION_TOO_SHORT):
            normalize_chat_request(body)

    def test_too_long(self):
        with pytest.raises(ChatValidationError, match=QUESTION_TOO_LONG):
            normalize_chat_request({"question": "x" * 1001})

    def test_trimmed_and_limit_inclusive(self):
        assert normalize_chat_request({"question": "  hi  "}).question == "hi"
        assert len(normalize_chat_request({"question": "x" * 1000}).question) == 1000


class TestHistory:
    def test_invalid_entries_dropped(self):
        qa = normalize_chat_request({
            "question": "q",
            "history": [
                {"role": "user", "content": " first "},
                {"role": "system", "content": "nope"},
                {"role": "assistant", "content": "   "},
                {"role": "assistant", "content": 3},
                "junk",
                {"role": "assistant", "content": "second"},
            ],
        })
        assert qa.history == [ChatTurn("user", "first"), ChatTurn("assistant", "second")]

    def test_keeps_last_twelve_and_truncates(self):
        history = [{"role": "user", "content": f"m{i}"} for i in range(20)]
        history[-1]["content"] = "y" * 5000
        qa = normalize_chat_request({"question": "q", "history": history})
        assert len(qa.history) == 12
        assert qa.history[0].content == "m8"
        assert len(qa.history[-1].content) == 2000

    def test_non_list(self):
        assert normalize_chat_request({"question": "q", "history": "x"}).history == []


class TestOptions:
    def test_approved_keys(self):
        qa = normalize_chat_request({
            "question": "q",
            "approvedToolKeys": [KEY_A.upper(), f" {KEY_B} ", "short", 7, "g" * 64],
        })
        assert qa.approved_tool_keys == frozenset({KEY_A, KEY_B})

    def test_approved_keys_capped(self):
        keys = [f"{i:064x}" for i in range(250)]
        qa = normalize_chat_request({"question": "q", "approvedToolKeys": keys})
        assert len(qa.approved_tool_keys) == 200
        assert keys[-1] in qa.approved_tool_keys
        assert keys[0] not in qa.approved_tool_keys

    @pytest.mark.parametrize("value,expected", [(True, True), ("true", False), (1, False), (None, False)])
    def test_include_protected_strict(self, value, expected):
        qa = normalize_chat_request({"question": "q", "includeProtected": value})
        assert qa.include_protected is expected

    def test_model(self):
        assert normalize_chat_request({"question": "q", "model": " gpt-4o "}).model == "gpt-4o"
        assert normalize_chat_request({"question": "q", "model": "  "}).model is None
        assert normalize_chat_request({"question": "q"}).model is None
