"""Tests for the balanced-bracket scanner."""

from __future__ import annotations

from travbot.core.json_scanner import extract_array_after, extract_json_array, find_balanced


class TestFindBalanced:
    def test_nested(self):
        text = 'x = [1, [2, [3]], 4]; y = [5]'
        assert find_balanced(text, text.index("[")) == "[1, [2, [3]], 4]"

    def test_brackets_inside_strings_ignored(self):
        text = '["a]b", "c\\"]", \'[\']'
        assert find_balanced(text, 0) == text

    def test_unterminated(self):
        assert find_balanced("[1, [2]", 0) is None

    def test_start_must_be_opener(self):
        assert find_balanced("abc", 1) is None
        assert find_balanced("abc", 99) is None

    def test_braces(self):
        text = '{"a": {"b": [1]}} trailing'
        assert find_balanced(text, 0, "{") == '{"a": {"b": [1]}}'


class TestArrayAfterKey:
    def test_key_colon_bracket(self):
        text = '{"slotsStates" : [{"id": 1}], "other": [2]}'
        assert extract_array_after(text, "slotsStates") == '[{"id": 1}]'

    def test_key_not_followed_by_array(self):
        text = '{"slotsStates": null, "other": [2]}'
        assert extract_array_after(text, "slotsStates") is None

    def test_bounded_window(self):
        text = '{"id": 1, "x": 0} {"id": 2, "slotsStates": [3]}'
        assert extract_array_after(text, "slotsStates", 0, text.index("}")) is None
        assert extract_array_after(text, "slotsStates", text.index("}")) == "[3]"

    def test_parsed(self):
        text = 'var s = {"farmLists": [{"id": 7, "name": "a]b"}]};'
        assert extract_json_array(text, "farmLists") == [{"id": 7, "name": "a]b"}]

    def test_invalid_json(self):
        assert extract_json_array('{"farmLists": [1, oops]}', "farmLists") is None
