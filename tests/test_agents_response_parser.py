"""Tests for src/agents/response_parser.py."""

import pytest

from src.agents.response_parser import extract_code_blocks, extract_json_block, extract_json_payload
from src.core.exceptions import ResponseParseError


class TestCodeBlocks:
    def test_extract_all(self):
        text = "intro\n```json\n{\"a\": 1}\n```\nmiddle\n```\nplain\n```"
        assert extract_code_blocks(text) == ['{"a": 1}', "plain"]

    def test_language_filter(self):
        text = "```python\nx = 1\n```\n```json\n[]\n```"
        assert extract_code_blocks(text, "json") == ["[]"]


class TestJsonBlock:
    def test_fenced(self):
        assert extract_json_block("Result:\n```json\n{\"ok\": true}\n```") == {"ok": True}

    def test_bare(self):
        assert extract_json_block('  {"ok": false}  ') == {"ok": False}

    def test_none(self):
        assert extract_json_block("no json here") is None


class TestJsonPayload:
    def test_embedded_object(self):
        text = 'Here are the results: {"reviews": [{"assertionId": "A-1"}]} hope this helps'
        assert extract_json_payload(text) == {"reviews": [{"assertionId": "A-1"}]}

    def test_embedded_array(self):
        assert extract_json_payload("cases: [1, 2, 3] done") == [1, 2, 3]

    def test_empty(self):
        with pytest.raises(ResponseParseError, match="empty"):
            extract_json_payload("   ")

    def test_unparseable(self):
        with pytest.raises(ResponseParseError):
            extract_json_payload("{not: json}")
