"""Request validation and production logic for `/v1/chat/completions`."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi.responses import JSONResponse

from .asgi_bridge import LifecycleResponse, QueuedTransport
from .config import GatewayConfig
from .coordinator import RequestKind, create_coordinator
from .errors import GatewayFault, ValidationFault
from .registry import ConcurrencyRegistry
from .streaming import JSON_HEADERS, StreamingEmitter
from .translator import final_chunk, to_upstream_request, to_wire_chunk, to_wire_response, usage_from_upstream
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)

VALID_ROLES = {"system", "user", "assistant", "tool"}
MAX_TOKENS_LIMIT = 32768


@dataclass
class UsageBucket:
    """Request and token totals for one client key."""

    day: str
    month: str
    requests_today: int = 0
    requests_this_month: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    by_model: dict[str, int] = field(default_factory=dict)
    last_updated: str | None = None


class UsageTracker:
    """In-memory per-client usage counters with daily and monthly rollover."""

    def __init__(self, *, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._buckets: dict[str, UsageBucket] = {}

    def _bucket(self, key: str) -> UsageBucket:
        now = self._now()
        day, month = now.strftime("%Y-%m-%d"), now.strftime("%Y-%m")
        bucket = self._buckets.get(key)
        if bucket is None or bucket.month != month:
            bucket = UsageBucket(day=day, month=month)
            self._buckets[key] = bucket
        elif bucket.day != day:
            bucket.day = day
            bucket.requests_today = 0
        return bucket

    def record(self, key: str, model: str, usage: dict[str, int] | None) -> None:
        bucket = self._bucket(key)
        bucket.requests_today += 1
        bucket.requests_this_month += 1
        bucket.prompt_tokens += int((usage or {}).get("prompt_tokens") or 0)
        bucket.completion_tokens += int((usage or {}).get("completion_tokens") or 0)
        bucket.by_model[model] = bucket.by_model.get(model, 0) + 1
        bucket.last_updated = self._now().isoformat()

    def report(self, key: str) -> dict[str, Any]:
        """OpenAI-style usage document for one client key."""
        bucket = self._bucket(key)
        return {
            "object": "usage",
            "data": {
                "requests_today": bucket.requests_today,
                "requests_this_month": bucket.requests_this_month,
                "prompt_tokens": bucket.prompt_tokens,
                "completion_tokens": bucket.completion_tokens,
                "total_tokens": bucket.prompt_tokens + bucket.completion_tokens,
                "requests_by_model": dict(bucket.by_model),
                "last_updated": bucket.last_updated,
            },
        }


def build_error_response(fault: GatewayFault, request_id: str | None = None) -> JSONResponse:
    """Render a fault raised before any coordinator owned the response."""
    headers = dict(fault.headers)
    rid = request_id or fault.request_id
    if rid:
        headers["X-Request-ID"] = rid
    return JSONResponse(fault.to_payload(rid), status_code=fault.status_code, headers=headers)


def parse_json_body(raw: bytes, *, request_id: str | None = None) -> Any:
    """Decode a JSON request body or raise `ValidationFault`."""
    if not raw:
        raise ValidationFault("Request body is required", request_id=request_id)
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationFault(f"Invalid JSON in request body: {exc}", code="invalid_json", request_id=request_id) from exc


def validate_chat_request(payload: Any, *, request_id: str | None = None) -> dict[str, Any]:
    """Check the parts of a chat request the gateway relies on."""

    def fail(message: str, field: str) -> ValidationFault:
        return ValidationFault(message, field=field, request_id=request_id)

    if not isinstance(payload, dict):
        raise fail("Request body must be a JSON object", "body")
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise fail("messages must be a non-empty array", "messages")
    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            raise fail(f"messages[{index}] must be an object", "messages")
        if message.get("role") not in VALID_ROLES:
            raise fail(f"messages[{index}].role must be one of {sorted(VALID_ROLES)}", "messages")
        if "content" not in message:
            raise fail(f"messages[{index}].content is required", "messages")

    temperature = payload.get("temperature")
    if temperature is not None:
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)) or not 0 <= temperature <= 2:
            raise fail("temperature must be a number between 0 and 2", "temperature")

    max_tokens = payload.get("max_tokens")
    if max_tokens is not None:
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or not 1 <= max_tokens <= MAX_TOKENS_LIMIT:
            raise fail(f"max_tokens must be an integer between 1 and {MAX_TOKENS_LIMIT}", "max_tokens")

    stream = payload.get("stream")
    if stream is not None and not isinstance(stream, bool):
        raise fail("stream must be a boolean", "stream")

    model = payload.get("model")
    if model is not None and not isinstance(model, str):
        raise fail("model must be a string", "model")
    return payload


class ChatService:
    """Runtime container for the upstream client and request production."""

    def __init__(
        self,
        cfg: GatewayConfig,
        *,
        registry: ConcurrencyRegistry,
        upstream: UpstreamClient | None = None,
    ) -> None:
        """Initialize service with config-bound clients."""
        self.cfg = cfg
        self.registry = registry
        self.upstream = upstream or UpstreamClient(cfg)
        self.usage = UsageTracker()

    async def close(self) -> None:
        """Shut down the upstream client."""
        await self.upstream.close()

    async def reload(self, new_cfg: GatewayConfig) -> None:
        """Swap configuration and upstream client; in-flight requests keep the old client."""
        old_upstream = self.upstream
        self.cfg = new_cfg
        self.upstream = UpstreamClient(new_cfg, health=old_upstream.health)
        await old_upstream.close()

    def list_models(self) -> dict[str, Any]:
        """OpenAI-style model list built from the configured mappings."""
        return {"object": "list", "data": [self._model_card(name) for name in self.cfg.model_mappings]}

    def get_model(self, model_id: str) -> dict[str, Any] | None:
        if model_id not in self.cfg.model_mappings:
            return None
        return self._model_card(model_id)

    def pricing(self) -> dict[str, Any]:
        """List prices of the configured models that carry one."""
        text_models = {
            name: mapping.pricing.model_dump()
            for name, mapping in self.cfg.model_mappings.items()
            if mapping.pricing is not None
        }
        return {
            "object": "pricing",
            "data": {"text_models": text_models},
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

    def _model_card(self, name: str) -> dict[str, Any]:
        mapping = self.cfg.model_mappings[name]
        return {
            "id": name,
            "object": "model",
            "created": 0,
            "owned_by": (mapping.provider or mapping.llm).lower(),
            "upstream_model": mapping.llm_model,
        }

    def open_chat(
        self,
        payload: dict[str, Any],
        *,
        request_id: str,
        upstream_key: str,
        extra_headers: dict[str, str] | None = None,
        usage_key: str | None = None,
    ) -> LifecycleResponse:
        """Create the coordinator for one chat request and return its response."""
        model, mapping = self.cfg.resolve_model(payload.get("model"))
        if payload.get("model") and payload.get("model") != model:
            LOG.warning("unknown model requested request_id=%s model=%s fallback=%s", request_id, payload.get("model"), model)
        stream = payload.get("stream") is True
        upstream_payload = to_upstream_request(payload, mapping, default_temperature=self.cfg.default_temperature)
        transport = QueuedTransport()
        coordinator = create_coordinator(
            request_id,
            RequestKind.INCREMENTAL if stream else RequestKind.PLAIN,
            self.cfg.timeouts,
            transport,
            registry=self.registry,
            model=model,
            metadata={"upstream_model": mapping.llm_model},
        )
        emitter = StreamingEmitter(
            coordinator,
            model=model,
            extra_headers={**(extra_headers or {}), "X-Request-ID": request_id},
        )
        upstream = self.upstream
        LOG.info("chat request accepted request_id=%s model=%s stream=%s", request_id, model, stream)

        usage = self.usage

        def record_usage(counts: dict[str, int] | None) -> None:
            if usage_key is not None and counts is not None:
                usage.record(usage_key, model, counts)

        async def produce_stream(em: StreamingEmitter) -> None:
            record_usage(await _produce_stream(em, upstream, upstream_payload, upstream_key))

        async def produce_completion(em: StreamingEmitter) -> None:
            record_usage(await _produce_completion(em, upstream, upstream_payload, upstream_key))

        producer = produce_stream if stream else produce_completion

        async def run() -> None:
            await emitter.run_with_error_boundary(producer)

        return LifecycleResponse(coordinator, transport, run)


async def _produce_stream(
    emitter: StreamingEmitter,
    upstream: UpstreamClient,
    payload: dict[str, Any],
    api_key: str,
) -> dict[str, int] | None:
    """Forward upstream output as event-stream chunks; return usage when the stream finished."""
    coordinator = emitter.coordinator
    rid = coordinator.request_id
    resource = f"upstream_stream:{rid}"
    coordinator.register_resource(resource)
    stream = upstream.stream_chat(payload, api_key=api_key, cancel_event=coordinator.cancel_event, trace_id=rid)
    try:
        # Pull the first line before headers so upstream HTTP errors keep their status.
        first = await anext(stream, None)
        if not emitter.start():
            return None
        usage: dict[str, int] | None = None
        sent_role = False
        item = first
        while item is not None:
            if coordinator.cancel_event.is_set():
                return None
            if "output" in item and item["output"] is None:
                usage = usage_from_upstream(item)
                break
            if item.get("output"):
                chunk = to_wire_chunk(item, completion_id=emitter.completion_id, model=emitter.model, first=not sent_role)
                sent_role = True
                if not emitter.emit(chunk):
                    return None
                await emitter.drain()
            item = await anext(stream, None)
        if not coordinator.is_active:
            return None
        emitter.emit(final_chunk(completion_id=emitter.completion_id, model=emitter.model, usage=usage))
        emitter.emit_terminal_sentinel()
        LOG.debug("stream forwarded request_id=%s frames=%s", rid, emitter.frames_sent)
        return usage or {}
    finally:
        await stream.aclose()
        coordinator.release_resource(resource)


async def _produce_completion(
    emitter: StreamingEmitter,
    upstream: UpstreamClient,
    payload: dict[str, Any],
    api_key: str,
) -> dict[str, int] | None:
    """Fetch one complete upstream answer, write it as a JSON response and return its usage."""
    coordinator = emitter.coordinator
    rid = coordinator.request_id
    resource = f"upstream_call:{rid}"
    coordinator.register_resource(resource)
    try:
        data = await upstream.chat(payload, api_key=api_key, trace_id=rid)
    finally:
        coordinator.release_resource(resource)
    if not coordinator.is_active:
        return None
    body = to_wire_response(data, model=emitter.model, completion_id=emitter.completion_id)
    sink = coordinator.sink
    if not sink.write_headers(200, {**JSON_HEADERS, **emitter.extra_headers}):
        return None
    sink.write_chunk(json.dumps(body, ensure_ascii=False))
    coordinator.touch()
    return usage_from_upstream(data)
