"""Pure translation between OpenAI chat payloads and the upstream studio schema."""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from html import escape
from typing import TYPE_CHECKING, Any

from .config import ModelMapping

if TYPE_CHECKING:
    from .errors import GatewayFault

LOG = logging.getLogger(__name__)

_TOOL_BLOCK_RE = re.compile(r'<tool name="([^"]+)">([\s\S]*?)</tool>')
_TOOL_PARAM_RE = re.compile(r"<(\w+)[^>]*>([\s\S]*?)</\1>")


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def _now() -> int:
    return int(time.time())


def _message_text(content: Any) -> str:
    """Collapse string or content-part message bodies into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [str(item.get("text") or "") for item in content if isinstance(item, dict) and item.get("type") == "text"]
        return " ".join(part for part in parts if part)
    return ""


def _history_entry(message: dict[str, Any]) -> dict[str, Any]:
    text = ""
    images: list[dict[str, Any]] = []
    content = message.get("content")
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        texts: list[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text":
                texts.append(str(item.get("text") or ""))
            elif item.get("type") == "image_url":
                image = item.get("image_url") or {}
                images.append({"url": image.get("url"), "details": image.get("detail") or "low"})
        text = "\n".join(texts)
    return {"role": message.get("role"), "content": {"text": text, "image_data": images}}


def _has_images(messages: list[dict[str, Any]]) -> bool:
    for message in messages:
        content = message.get("content")
        if isinstance(content, list) and any(isinstance(i, dict) and i.get("type") == "image_url" for i in content):
            return True
    return False


def _tool_switches(wire_request: dict[str, Any]) -> dict[str, Any]:
    """Map OpenAI tool/function declarations onto upstream tool switches."""
    has_tools = bool(wire_request.get("tools"))
    has_functions = bool(wire_request.get("functions"))
    return {
        "tool_list": {
            "image_generation": False,
            "image_editing": False,
            "search_doc": has_tools,
            "internet_search": has_tools,
            "python_code_execution_tool": has_functions,
            "csv_analysis": False,
        },
        "number_of_context": 3,
        "pdf_references": [],
        "embedding_model": ["text-embedding-3-large"],
        "image_generation_parameters": {},
    }


def to_upstream_request(
    wire_request: dict[str, Any],
    mapping: ModelMapping,
    *,
    default_temperature: float = 0.7,
) -> dict[str, Any]:
    """Translate one OpenAI chat request into the upstream payload."""
    messages = [m for m in wire_request.get("messages") or [] if isinstance(m, dict)]
    system_msg = next((m for m in messages if m.get("role") == "system"), None)
    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), None)
    temperature = wire_request.get("temperature")
    payload: dict[str, Any] = {
        "llm": mapping.llm,
        "llm_model": mapping.llm_model,
        "history": [_history_entry(m) for m in messages if m.get("role") != "system"],
        "temperature": default_temperature if temperature is None else temperature,
        "image_analyze": _has_images(messages),
        "enable_tool": bool(wire_request.get("tools") or wire_request.get("functions")),
        "system_msg": _message_text(system_msg.get("content")) if system_msg else "",
        "tools": _tool_switches(wire_request),
        "last_user_query": _message_text(last_user.get("content")) if last_user else "",
        "stream": wire_request.get("stream") is True,
    }
    if wire_request.get("max_tokens") is not None:
        payload["max_tokens"] = wire_request["max_tokens"]
    return payload


def to_wire_chunk(
    upstream_chunk: dict[str, Any],
    *,
    completion_id: str,
    model: str,
    created: int | None = None,
    first: bool = False,
) -> dict[str, Any]:
    """Translate one upstream stream line into a `chat.completion.chunk`."""
    output = upstream_chunk.get("output")
    delta: dict[str, Any] = {"content": output or ""}
    if first:
        delta["role"] = "assistant"
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created or _now(),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": "stop" if output is None else None}],
    }


def final_chunk(*, completion_id: str, model: str, usage: dict[str, int] | None = None) -> dict[str, Any]:
    """Build the closing chunk that carries `finish_reason: stop`."""
    chunk: dict[str, Any] = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": _now(),
        "model": model,
        "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
    }
    if usage:
        chunk["usage"] = usage
    return chunk


def error_chunk(
    *,
    completion_id: str,
    model: str,
    fault: "GatewayFault",
    request_id: str | None = None,
) -> dict[str, Any]:
    """Build the in-band error chunk sent after stream headers went out."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": _now(),
        "model": model,
        "choices": [{"index": 0, "delta": {}, "finish_reason": "error"}],
        **fault.to_payload(request_id),
    }


def usage_from_upstream(data: dict[str, Any]) -> dict[str, int]:
    """Read token counters from either flat or nested upstream fields."""
    nested = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    prompt = int(data.get("promptTokens") or nested.get("promptTokens") or 0)
    completion = int(data.get("completionTokens") or nested.get("completionTokens") or 0)
    return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": prompt + completion}


def to_wire_response(upstream_response: dict[str, Any], *, model: str, completion_id: str | None = None) -> dict[str, Any]:
    """Translate a complete upstream answer into a `chat.completion`."""
    content = upstream_response.get("output") or ""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    tool_calls = extract_tool_calls(content)
    finish_reason = "stop"
    if tool_calls:
        message["tool_calls"] = tool_calls
        finish_reason = "tool_calls"
    return {
        "id": completion_id or new_completion_id(),
        "object": "chat.completion",
        "created": _now(),
        "model": model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": usage_from_upstream(upstream_response),
    }


def _parse_tool_parameters(body: str) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for match in _TOOL_PARAM_RE.finditer(body):
        raw = match.group(2).strip()
        try:
            params[match.group(1)] = json.loads(raw)
        except json.JSONDecodeError:
            params[match.group(1)] = raw
    return params


def extract_tool_calls(content: str) -> list[dict[str, Any]]:
    """Parse `<tool name="...">` blocks into OpenAI tool call objects."""
    calls: list[dict[str, Any]] = []
    if not content or "<tool" not in content:
        return calls
    for match in _TOOL_BLOCK_RE.finditer(content):
        name = match.group(1)
        calls.append(
            {
                "id": f"call_{uuid.uuid4().hex}",
                "type": "function",
                "function": {
                    "name": name,
                    "arguments": json.dumps(_parse_tool_parameters(match.group(2)), ensure_ascii=False),
                },
            }
        )
    LOG.debug("tool calls extracted count=%s names=%s", len(calls), [c["function"]["name"] for c in calls])
    return calls


def tool_call_to_text(tool_name: str, parameters: dict[str, Any]) -> str:
    """Render one tool invocation in the XML form the upstream understands."""
    name = tool_name.strip()
    if not name:
        raise ValueError("tool name must not be empty")
    lines = [f'<tool name="{escape(name)}">']
    for key, value in parameters.items():
        if isinstance(value, dict):
            lines.append(f"  <{key}>")
            for sub_key, sub_value in value.items():
                lines.append(f"    <{sub_key}>{escape(str(sub_value))}</{sub_key}>")
            lines.append(f"  </{key}>")
        elif isinstance(value, list):
            lines.append(f"  <{key}>{escape(json.dumps(value, ensure_ascii=False))}</{key}>")
        else:
            lines.append(f"  <{key}>{escape(str(value))}</{key}>")
    lines.append("</tool>")
    return "\n".join(lines)
