"""HTTP application for the streamkoppler gateway.

This module exposes an OpenAI-compatible API in front of the upstream studio
chat API and the operational endpoints of the concurrency registry.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import re
import sys
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .auth import resolve_upstream_key
from .chat_handlers import ChatService, build_error_response, parse_json_body, validate_chat_request
from .config import GatewayConfig, config_file_path, load_config
from .config_reload import ConfigFileWatcher
from .errors import GatewayFault, ValidationFault, fault_from_exception
from .logging_utils import setup_logging, to_bounded_json
from .rate_limit import FixedWindowRateLimiter, RateLimitDecision, client_key
from .registry import ConcurrencyRegistry, HangingThresholds, init_registry
from .translator import tool_call_to_text

LOG = logging.getLogger(__name__)

SERVICE_NAME = "streamkoppler"
SERVICE_VERSION = "0.1.0"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
    return parsed.hostname, parsed.port


def _request_id(request: Request) -> str:
    """Use the caller's X-Request-ID when it is sane, otherwise assign one."""
    incoming = (request.headers.get("x-request-id") or "").strip()
    if incoming and _REQUEST_ID_RE.match(incoming):
        return incoming
    return uuid.uuid4().hex


def _client_ip(request: Request) -> str | None:
    return getattr(getattr(request, "client", None), "host", None)


def build_registry(cfg: GatewayConfig) -> ConcurrencyRegistry:
    """Configure the process registry from diagnostics settings."""
    diag = cfg.diagnostics
    return init_registry(
        grace_seconds=diag.grace_seconds,
        thresholds=HangingThresholds(
            max_age=diag.hanging_age_seconds,
            max_inactivity=diag.hanging_inactivity_seconds,
            max_timeout_events=diag.hanging_timeout_events,
            max_resources=diag.hanging_resource_count,
        ),
        slow_completion_seconds=diag.slow_completion_seconds,
        hanging_rate_alert=diag.hanging_rate_alert,
        leak_rate_alert=diag.leak_rate_alert,
    )


class RateLimits:
    """General and streaming limiters built from one config."""

    def __init__(self, cfg: GatewayConfig) -> None:
        rl = cfg.rate_limit
        self.enabled = rl.enabled
        self.general = FixedWindowRateLimiter(rl.max_requests, rl.window_seconds)
        self.streaming = FixedWindowRateLimiter(rl.stream_max_requests, rl.window_seconds)

    def check(self, key: str, *, stream: bool, request_id: str) -> RateLimitDecision | None:
        """Apply the general limit and, for streams, the streaming limit."""
        if not self.enabled:
            return None
        decision = self.general.check(key, request_id=request_id)
        if stream:
            decision = self.streaming.check(key, request_id=request_id)
        return decision


def create_app(config_path: str | None = None, *, cfg: GatewayConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    if cfg is None:
        cfg = load_config(config_path)
    setup_logging(cfg.logging)
    registry = build_registry(cfg)
    service = ChatService(cfg, registry=registry)
    limits = RateLimits(cfg)
    config_file = config_file_path(config_path)

    async def apply_reload(new_cfg: GatewayConfig) -> None:
        """Swap in a validated configuration."""
        nonlocal limits
        setup_logging(new_cfg.logging)
        await service.reload(new_cfg)
        limits = RateLimits(new_cfg)

    watcher = ConfigFileWatcher(config_file, apply_reload)
    reload_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        nonlocal reload_task
        registry.start(service.cfg.diagnostics.sweep_interval_seconds)
        if config_file.exists():
            reload_task = asyncio.create_task(watcher.run_forever())
        app.state.ready = True
        try:
            yield
        finally:
            app.state.ready = False
            if reload_task:
                reload_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reload_task
            await registry.stop()
            await service.close()

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.service = service
    app.state.registry = registry
    app.state.ready = False

    @app.exception_handler(GatewayFault)
    async def gateway_fault_handler(_request: Request, exc: GatewayFault) -> JSONResponse:
        """Render faults raised before a coordinator owned the response."""
        return build_error_response(exc)

    def authenticate(request: Request, request_id: str) -> tuple[str, str]:
        return resolve_upstream_key(service.cfg, request.headers, request.query_params, request_id=request_id)

    async def start_chat(request: Request, request_id: str, payload: dict[str, Any], keys: tuple[str, str]):
        """Shared tail of both chat endpoints after the payload is known."""
        client_api_key, upstream_key = keys
        stream = payload.get("stream") is True
        decision = limits.check(client_key(_client_ip(request), client_api_key), stream=stream, request_id=request_id)
        LOG.debug(
            "incoming chat.completions request request_id=%s client=%s payload=%s",
            request_id,
            _client_ip(request),
            to_bounded_json(payload),
        )
        return service.open_chat(
            payload,
            request_id=request_id,
            upstream_key=upstream_key,
            extra_headers=decision.headers() if decision else None,
            usage_key=client_api_key,
        )

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return liveness plus the registry health summary."""
        summary = registry.health()
        return JSONResponse(
            {
                "service": SERVICE_NAME,
                "version": SERVICE_VERSION,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "status": "ok" if summary["status"] != "critical" else "degraded",
                "concurrency": summary["status"],
            }
        )

    @app.get("/healthz/live")
    async def healthz_live() -> JSONResponse:
        return JSONResponse({"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()})

    @app.get("/healthz/ready")
    async def healthz_ready() -> JSONResponse:
        """503 until startup finished, and while the upstream or the registry is unhealthy."""
        problems: list[str] = []
        if not app.state.ready:
            problems.append("starting_or_stopping")
        if not service.upstream.health.is_healthy:
            problems.append("upstream_failing")
        if registry.health()["status"] == "critical":
            problems.append("concurrency_critical")
        body: dict[str, Any] = {
            "status": "not ready" if problems else "ready",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if problems:
            body["reasons"] = problems
            LOG.info("readiness check failed reasons=%s", problems)
        return JSONResponse(body, status_code=503 if problems else 200)

    @app.get("/healthz/upstream")
    async def healthz_upstream(request: Request) -> JSONResponse:
        """Dependency report: upstream status check with the caller's credentials."""
        request_id = _request_id(request)
        _, upstream_key = authenticate(request, request_id)
        upstream = service.upstream
        started = time.monotonic()
        dependency: dict[str, Any] = {"url": upstream.base_url}
        status_code = 200
        try:
            dependency["details"] = await upstream.status(api_key=upstream_key)
            dependency["status"] = "healthy"
        except Exception as exc:
            fault = fault_from_exception(exc, request_id=request_id)
            LOG.warning("upstream status check failed request_id=%s error=%s", request_id, exc)
            dependency["status"] = "unhealthy"
            dependency["error"] = fault.to_payload(request_id)["error"]
            status_code = 503
        dependency["response_time_ms"] = round((time.monotonic() - started) * 1000.0, 1)
        return JSONResponse(
            {
                "status": "healthy" if status_code == 200 else "degraded",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "version": SERVICE_VERSION,
                "dependencies": {"upstream": dependency},
                "connections": upstream.connection_health(),
                "config": {"auth_mode": service.cfg.auth_mode, "log_level": service.cfg.logging.level},
            },
            status_code=status_code,
        )

    @app.get("/v1/health/connections")
    async def v1_health_connections() -> JSONResponse:
        """Upstream call outcome counters; 503 after repeated consecutive failures."""
        upstream = service.upstream
        health = upstream.connection_health()
        return JSONResponse(
            {
                "status": "healthy" if health["is_healthy"] else "degraded",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "connections": health,
                "upstream": {"base_url": upstream.base_url},
            },
            status_code=200 if health["is_healthy"] else 503,
        )

    @app.post("/v1/health/reset")
    async def v1_health_reset(request: Request) -> JSONResponse:
        request_id = _request_id(request)
        authenticate(request, request_id)
        service.upstream.reset_connection_health()
        return JSONResponse(
            {
                "status": "success",
                "message": "Connection health tracking reset",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    @app.get("/v1/models")
    async def v1_models(request: Request) -> JSONResponse:
        """OpenAI-compatible model listing endpoint."""
        authenticate(request, _request_id(request))
        return JSONResponse(service.list_models())

    @app.get("/v1/models/usage")
    async def v1_models_usage(request: Request) -> JSONResponse:
        """Usage the gateway observed for the calling key."""
        client_api_key, _ = authenticate(request, _request_id(request))
        return JSONResponse(service.usage.report(client_api_key))

    @app.get("/v1/models/pricing")
    async def v1_models_pricing() -> JSONResponse:
        return JSONResponse(service.pricing())

    @app.get("/v1/models/{model_id:path}")
    async def v1_model(model_id: str, request: Request) -> JSONResponse:
        """OpenAI-compatible single model lookup."""
        request_id = _request_id(request)
        authenticate(request, request_id)
        card = service.get_model(model_id)
        if card is None:
            raise ValidationFault(
                f"The model '{model_id}' does not exist",
                code="model_not_found",
                status_code=404,
                request_id=request_id,
            )
        return JSONResponse(card)

    @app.post("/v1/chat/completions")
    async def v1_chat_completions(request: Request):
        """OpenAI-compatible chat completions endpoint."""
        request_id = _request_id(request)
        keys = authenticate(request, request_id)
        payload = validate_chat_request(parse_json_body(await request.body(), request_id=request_id), request_id=request_id)
        return await start_chat(request, request_id, payload, keys)

    @app.post("/v1/chat/completions/tools")
    async def v1_chat_tools(request: Request):
        """Run one tool invocation as a non-streaming chat turn."""
        request_id = _request_id(request)
        keys = authenticate(request, request_id)
        body = parse_json_body(await request.body(), request_id=request_id)
        if not isinstance(body, dict) or not body.get("tool_name") or not isinstance(body.get("parameters"), dict):
            raise ValidationFault("tool_name and parameters are required", request_id=request_id)
        try:
            tool_text = tool_call_to_text(str(body["tool_name"]), body["parameters"])
        except ValueError as exc:
            raise ValidationFault(str(exc), request_id=request_id) from exc
        payload = {
            "model": body.get("model") or service.cfg.default_model,
            "messages": [{"role": "user", "content": tool_text}],
            "stream": False,
            "temperature": 0.1,
            "max_tokens": 4000,
        }
        return await start_chat(request, request_id, payload, keys)

    @app.get("/concurrency/metrics")
    async def concurrency_metrics(request: Request) -> JSONResponse:
        authenticate(request, _request_id(request))
        return JSONResponse({"timestamp": datetime.now(timezone.utc).isoformat(), "metrics": registry.metrics()})

    @app.get("/concurrency/requests")
    async def concurrency_requests(request: Request, active_only: bool = False) -> JSONResponse:
        authenticate(request, _request_id(request))
        rows = registry.list_requests(active_only=active_only)
        return JSONResponse({"count": len(rows), "requests": rows, "recent_cleanups": registry.recent_cleanups()})

    @app.get("/concurrency/requests/{request_id}")
    async def concurrency_request_detail(request_id: str, request: Request) -> JSONResponse:
        own_id = _request_id(request)
        authenticate(request, own_id)
        details = registry.request_details(request_id)
        if details is None:
            raise ValidationFault(
                f"Request {request_id} is not tracked",
                code="request_not_found",
                status_code=404,
                request_id=own_id,
            )
        return JSONResponse(details)

    @app.get("/concurrency/hanging")
    async def concurrency_hanging(request: Request) -> JSONResponse:
        authenticate(request, _request_id(request))
        hanging = registry.detect_hanging()
        leaks = registry.detect_leaks()
        return JSONResponse({"hanging": hanging, "leaks": leaks})

    @app.get("/concurrency/health")
    async def concurrency_health(request: Request) -> JSONResponse:
        authenticate(request, _request_id(request))
        summary = registry.health()
        status_code = 503 if summary["status"] == "critical" else 200
        return JSONResponse(summary, status_code=status_code)

    @app.post("/concurrency/cleanup")
    async def concurrency_cleanup(request: Request, force: bool = False) -> JSONResponse:
        request_id = _request_id(request)
        authenticate(request, request_id)
        if not force:
            raise ValidationFault("Force cleanup requires force=true", request_id=request_id)
        before = registry.metrics()
        marked = registry.force_cleanup()
        LOG.warning("forced registry cleanup request_id=%s marked=%s", request_id, marked)
        return JSONResponse({"cleaned": marked, "before": before, "after": registry.metrics()})

    return app


def main() -> None:
    """CLI entry point that validates configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="streamkoppler gateway")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    import uvicorn

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        missing = []
        for err in exc.errors():
            if err.get("type") == "missing":
                location = ".".join(str(x) for x in err.get("loc", []))
                missing.append(location)
        if missing:
            fail(
                "Configuration incomplete. Missing required fields: "
                + ", ".join(sorted(set(missing)))
                + ". Provide --config <file> or set env vars "
                + "(STREAMKOPPLER_UPSTREAM_BASE_URL)."
            )
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    try:
        app = create_app(args.config, cfg=cfg)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    try:
        host, port = _service_bind_addr(cfg.service_base_url)
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
