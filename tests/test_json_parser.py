import pytest

from feed_relay.errors import AIParsingError
from feed_relay.llm.json_parser import parse_json_object


def test_bare_object():
    assert parse_json_object('{"a": 1}') == {"a": 1}


def test_fenced_block_with_prose():
    content = 'Here you go:\n```json\n{"similarity_score": 12, "reason": "different"}\n```\nThanks'
    assert parse_json_object(content)["similarity_score"] == 12


def test_object_after_prose_with_stray_brace():
    content = 'Note {this} is not JSON. Answer: {"summary": "x", "importance": 3} done'
    assert parse_json_object(content) == {"summary": "x", "importance": 3}


@pytest.mark.parametrize("content", ["", "   ", "no object here", "[1, 2]", '"just a string"'])
def test_unrecoverable_answers_raise(content):
    with pytest.raises(AIParsingError):
        parse_json_object(content)
