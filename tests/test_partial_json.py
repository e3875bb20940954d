import pytest

from agent_runtime.partial_json import parse_partial_json


@pytest.mark.parametrize("prefix,expected", [
    ('{"message": "hel', {"message": "hel"}),
    ('{"plan": [{"id": "1", "tit', {"plan": [{"id": "1"}]}),
    ('{"a": 1, "b": [1, 2', {"a": 1, "b": [1, 2]}),
    ('{"a": 1,', {"a": 1}),
    ('{"a": "x\\', {"a": "x"}),
    ('{"a": "say \\"hi', {"a": 'say "hi'}),
    ('{"a": tru', {}),
    ("[", []),
    ('{"message": "done", "plan": []}', {"message": "done", "plan": []}),
])
def test_prefixes(prefix, expected):
    assert parse_partial_json(prefix) == expected


@pytest.mark.parametrize("text", [None, "", "   ", "abc"])
def test_unparseable_input_returns_none(text):
    assert parse_partial_json(text) is None


def test_every_prefix_of_a_response_parses_or_returns_none():
    full = '{"message": "ok", "plan": [{"id": "1", "title": "list", "status": "pending", "waitingForId": []}]}'
    seen = []
    for end in range(1, len(full) + 1):
        value = parse_partial_json(full[:end])
        assert value is None or isinstance(value, dict)
        if value:
            seen.append(value)
    assert seen[-1]["plan"][0]["title"] == "list"
