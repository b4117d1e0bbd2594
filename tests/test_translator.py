import json

from streamkoppler.config import ModelMapping
from streamkoppler.errors import TimeoutFault
from streamkoppler.translator import (
    error_chunk,
    extract_tool_calls,
    final_chunk,
    to_upstream_request,
    to_wire_chunk,
    to_wire_response,
    tool_call_to_text,
    usage_from_upstream,
)

_MAPPING = ModelMapping(llm="ClaudeAI", llm_model="claude-sonnet-4-20250514")


def test_upstream_request_splits_system_prompt_and_history() -> None:
    payload = to_upstream_request(
        {
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "first"},
                {"role": "assistant", "content": "answer"},
                {"role": "user", "content": [{"type": "text", "text": "look"}, {"type": "image_url", "image_url": {"url": "http://img"}}]},
            ],
            "max_tokens": 100,
        },
        _MAPPING,
    )
    assert payload["llm"] == "ClaudeAI"
    assert payload["llm_model"] == "claude-sonnet-4-20250514"
    assert payload["system_msg"] == "be brief"
    assert payload["last_user_query"] == "look"
    assert payload["temperature"] == 0.7
    assert payload["image_analyze"] is True
    assert payload["stream"] is False
    assert payload["max_tokens"] == 100
    assert [entry["role"] for entry in payload["history"]] == ["user", "assistant", "user"]
    assert payload["history"][-1]["content"]["image_data"] == [{"url": "http://img", "details": "low"}]


def test_upstream_request_enables_tools_when_declared() -> None:
    payload = to_upstream_request(
        {"messages": [{"role": "user", "content": "x"}], "tools": [{"type": "function"}], "temperature": 0, "stream": True},
        _MAPPING,
    )
    assert payload["enable_tool"] is True
    assert payload["tools"]["tool_list"]["internet_search"] is True
    assert payload["temperature"] == 0
    assert payload["stream"] is True


def test_wire_chunk_marks_role_on_first_chunk_only() -> None:
    first = to_wire_chunk({"output": "Hel"}, completion_id="c1", model="m", created=5, first=True)
    later = to_wire_chunk({"output": "lo"}, completion_id="c1", model="m", created=5)
    assert first["choices"][0]["delta"] == {"content": "Hel", "role": "assistant"}
    assert later["choices"][0]["delta"] == {"content": "lo"}
    assert later["choices"][0]["finish_reason"] is None
    assert first["object"] == "chat.completion.chunk"


def test_final_and_error_chunks() -> None:
    closing = final_chunk(completion_id="c1", model="m", usage={"total_tokens": 3})
    assert closing["choices"][0]["finish_reason"] == "stop"
    assert closing["usage"] == {"total_tokens": 3}

    error = error_chunk(completion_id="c1", model="m", fault=TimeoutFault("streaming"), request_id="r1")
    assert error["choices"][0]["finish_reason"] == "error"
    assert error["error"]["message"] == "Streaming timeout"
    assert error["error"]["request_id"] == "r1"


def test_usage_accepts_flat_and_nested_counters() -> None:
    assert usage_from_upstream({"promptTokens": 2, "completionTokens": 3}) == {
        "prompt_tokens": 2,
        "completion_tokens": 3,
        "total_tokens": 5,
    }
    assert usage_from_upstream({"usage": {"promptTokens": 1}})["total_tokens"] == 1
    assert usage_from_upstream({})["total_tokens"] == 0


def test_wire_response_extracts_tool_calls() -> None:
    content = 'Sure <tool name="lookup">\n  <city>Berlin</city>\n  <days>3</days>\n</tool>'
    response = to_wire_response({"output": content, "promptTokens": 1, "completionTokens": 2}, model="m", completion_id="c9")
    assert response["id"] == "c9"
    choice = response["choices"][0]
    assert choice["finish_reason"] == "tool_calls"
    call = choice["message"]["tool_calls"][0]
    assert call["function"]["name"] == "lookup"
    assert json.loads(call["function"]["arguments"]) == {"city": "Berlin", "days": 3}
    assert response["usage"]["total_tokens"] == 3


def test_plain_wire_response_has_no_tool_calls() -> None:
    response = to_wire_response({"output": "hello"}, model="m")
    assert response["choices"][0]["finish_reason"] == "stop"
    assert "tool_calls" not in response["choices"][0]["message"]
    assert extract_tool_calls("") == []


def test_tool_call_text_escapes_values() -> None:
    text = tool_call_to_text(" search ", {"q": "a<b", "opts": {"lang": "de"}, "ids": [1, 2]})
    assert text.splitlines() == [
        '<tool name="search">',
        "  <q>a&lt;b</q>",
        "  <opts>",
        "    <lang>de</lang>",
        "  </opts>",
        "  <ids>[1, 2]</ids>",
        "</tool>",
    ]
