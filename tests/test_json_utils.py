"""Tests for truncated JSON repair."""

import pytest

from stream_backend.utils.json_utils import parse_json_object, repair_truncated_json


class TestRepairTruncatedJson:

    def test_complete_json_is_returned_as_is(self):
        text = '{"tool": "readFile", "path": "a"}'

        assert repair_truncated_json(text) == (text, {"tool": "readFile", "path": "a"})

    @pytest.mark.parametrize("text,expected", [
        ('{"tool":"readFile","path":"sr', {"tool": "readFile", "path": "sr"}),
        ('{"tool":"readFile",', {"tool": "readFile"}),
        ('{"tool":"listFiles","pa', {"tool": "listFiles"}),
        ('{"tool":"x","items":[1,2', {"tool": "x", "items": [1, 2]}),
        ('{"a":{"b":"c', {"a": {"b": "c"}}),
    ])
    def test_truncated_objects_are_closed(self, text, expected):
        _, data = repair_truncated_json(text)

        assert data == expected

    def test_unrepairable_input(self):
        assert repair_truncated_json("not json") == ("not json", None)
        assert repair_truncated_json("") == ("", None)


class TestParseJsonObject:

    def test_only_objects_are_returned(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}
        assert parse_json_object("[1, 2]") is None
        assert parse_json_object("42") is None
        assert parse_json_object("") is None
