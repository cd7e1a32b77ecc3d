"""Unit tests for tolerant JSON parsing of model output."""

import pytest

from audit import ParseFailure, parse_json_object


class TestParseJsonObject:
    """Test parse_json_object."""

    def test_clean_json(self):
        assert parse_json_object('{"merges": []}') == {"merges": []}

    def test_markdown_fenced(self):
        raw = 'Sure, here you go:\n```json\n{"concepts": [{"label": "Auth", "elementIds": ["A"]}]}\n```'
        parsed = parse_json_object(raw)
        assert parsed["concepts"][0]["label"] == "Auth"

    def test_fenced_matches_clean(self):
        clean = '{"merges": [{"sourceConcepts": ["a", "b"], "mergedLabel": "c"}]}'
        fenced = f"Here are the merges.\n```json\n{clean}\n```\nLet me know!"
        assert parse_json_object(fenced) == parse_json_object(clean)

    def test_no_braces(self):
        with pytest.raises(ParseFailure) as exc:
            parse_json_object("I cannot help with that.")
        assert exc.value.raw_text == "I cannot help with that."

    def test_broken_inner_json(self):
        with pytest.raises(ParseFailure):
            parse_json_object('prefix {"concepts": [ } suffix')

    def test_top_level_array_rejected(self):
        with pytest.raises(ParseFailure):
            parse_json_object('[1, 2, 3]')

    def test_empty(self):
        with pytest.raises(ParseFailure):
            parse_json_object("")
