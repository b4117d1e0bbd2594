"""Client wrapper for the upstream studio chat API."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

import httpx

from .config import GatewayConfig
from .logging_utils import redact_headers, to_bounded_json

LOG = logging.getLogger(__name__)


@dataclass
class ConnectionHealth:
    """Outcome counters for calls made to the upstream API."""

    unhealthy_after_failures: int = 3
    total_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    last_error_time: str | None = None

    def record_success(self) -> None:
        self.total_requests += 1
        self.consecutive_failures = 0

    def record_failure(self, exc: BaseException) -> None:
        self.total_requests += 1
        self.failed_requests += 1
        self.consecutive_failures += 1
        self.last_error = f"{type(exc).__name__}: {exc}"
        self.last_error_time = datetime.now(timezone.utc).isoformat()

    @property
    def success_rate(self) -> float:
        if not self.total_requests:
            return 100.0
        return round((self.total_requests - self.failed_requests) / self.total_requests * 100.0, 2)

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_failures < self.unhealthy_after_failures

    def snapshot(self) -> dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "success_rate": self.success_rate,
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_error_time": self.last_error_time,
        }

    def reset(self) -> None:
        self.total_requests = 0
        self.failed_requests = 0
        self.consecutive_failures = 0
        self.last_error = None
        self.last_error_time = None


class UpstreamClient:
    """Thin async HTTP client for upstream chat endpoints."""

    def __init__(
        self,
        cfg: GatewayConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        health: ConnectionHealth | None = None,
    ) -> None:
        """Create an upstream client from gateway configuration."""
        self.cfg = cfg
        self.health = health or ConnectionHealth()
        self._base_url = cfg.upstream_base_url.rstrip("/")
        read_timeout = float(cfg.upstream_timeout_seconds or 300.0)
        self._timeout = httpx.Timeout(connect=10.0, read=read_timeout, write=120.0, pool=10.0)
        self._transport = transport
        self._client = self._build_client()

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh upstream HTTP client instance."""
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport)

    @staticmethod
    def _headers(api_key: str | None, *, stream: bool = False) -> dict[str, str]:
        """Build authorization headers for upstream calls."""
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if stream:
            headers["Accept"] = "text/event-stream"
            headers["Cache-Control"] = "no-cache"
        return headers

    def _retries(self) -> int:
        """Return configured number of retries after first failed request."""
        return int(self.cfg.upstream_connect_retries or 0)

    def _retry_interval_seconds(self) -> float:
        """Return configured wait time between retries in seconds."""
        return max(0.0, int(self.cfg.upstream_retry_interval_ms or 0) / 1000.0)

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        """Decide whether one upstream error should trigger a retry."""
        if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code if exc.response is not None else None
            return status is not None and (status == 429 or status >= 500)
        return False

    async def _wait_before_retry(self, attempt: int, exc: Exception, *, trace: str) -> bool:
        """Sleep before the next attempt; return false when retries are exhausted."""
        retries = self._retries()
        if not self._is_retryable(exc) or not (retries < 0 or attempt <= retries):
            return False
        delay = self._retry_interval_seconds()
        LOG.warning(
            "upstream request failed trace=%s attempt=%s retries=%s retry_in=%.3fs error=%s",
            trace,
            attempt,
            retries,
            delay,
            exc,
        )
        if delay > 0:
            await asyncio.sleep(delay)
        return True

    async def chat(self, payload: dict[str, Any], *, api_key: str | None, trace_id: str | None = None) -> dict[str, Any]:
        """Run one non-streaming upstream chat call."""
        path = self.cfg.upstream_chat_path
        headers = self._headers(api_key)
        tag = trace_id or "-"
        attempt = 1
        while True:
            started = time.monotonic()
            try:
                LOG.debug(
                    "forwarding upstream request trace=%s method=POST path=%s attempt=%s headers=%s payload=%s",
                    tag,
                    path,
                    attempt,
                    redact_headers(headers),
                    to_bounded_json(payload),
                )
                response = await self._client.post(path, headers=headers, json=payload)
                response.raise_for_status()
                data = response.json()
                self.health.record_success()
                LOG.debug(
                    "upstream response trace=%s status=%s elapsed=%.3fs",
                    tag,
                    response.status_code,
                    time.monotonic() - started,
                )
                return data if isinstance(data, dict) else {"output": data}
            except Exception as exc:
                self.health.record_failure(exc)
                if not await self._wait_before_retry(attempt, exc, trace=tag):
                    raise
                attempt += 1

    async def stream_chat(
        self,
        payload: dict[str, Any],
        *,
        api_key: str | None,
        cancel_event: asyncio.Event | None = None,
        trace_id: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Yield decoded upstream stream lines until `output: null` or cancellation."""
        req_payload = dict(payload)
        req_payload["stream"] = True
        path = self.cfg.upstream_stream_path
        tag = trace_id or "-"
        started = time.monotonic()
        LOG.debug("upstream stream start trace=%s path=%s payload=%s", tag, path, to_bounded_json(req_payload))

        attempt = 1
        while True:
            stream_client = self._build_client()
            response: httpx.Response | None = None
            line_count = 0
            try:
                response = await stream_client.send(
                    stream_client.build_request("POST", path, headers=self._headers(api_key, stream=True), json=req_payload),
                    stream=True,
                )
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if cancel_event is not None and cancel_event.is_set():
                        LOG.debug("upstream stream stopped by cancel trace=%s lines=%s", tag, line_count)
                        self.health.record_success()
                        return
                    text = line.strip()
                    if text.startswith("data:"):
                        text = text[5:].strip()
                    if not text or text == "[DONE]":
                        continue
                    try:
                        data = json.loads(text)
                    except json.JSONDecodeError:
                        LOG.warning("upstream stream line not JSON trace=%s line=%s", tag, text[:200])
                        continue
                    if not isinstance(data, dict):
                        continue
                    line_count += 1
                    done = "output" in data and data["output"] is None
                    if done:
                        LOG.debug(
                            "upstream stream done trace=%s elapsed=%.3fs lines=%s",
                            tag,
                            time.monotonic() - started,
                            line_count,
                        )
                        self.health.record_success()
                    yield data
                    if done:
                        return
                self.health.record_success()
                return
            except asyncio.CancelledError:
                LOG.debug("upstream stream cancelled trace=%s lines=%s", tag, line_count)
                raise
            except Exception as exc:
                self.health.record_failure(exc)
                if line_count > 0 or not await self._wait_before_retry(attempt, exc, trace=tag):
                    raise
                attempt += 1
            finally:
                cleanup_cancelled = False
                if response is not None:
                    try:
                        await asyncio.shield(response.aclose())
                    except asyncio.CancelledError:
                        cleanup_cancelled = True
                    except Exception as exc:
                        LOG.debug("upstream response close failed trace=%s error=%s", tag, exc)
                try:
                    await asyncio.shield(stream_client.aclose())
                except asyncio.CancelledError:
                    cleanup_cancelled = True
                except Exception as exc:
                    LOG.debug("upstream client close failed trace=%s error=%s", tag, exc)
                LOG.debug("upstream stream closed trace=%s elapsed=%.3fs", tag, time.monotonic() - started)
                if cleanup_cancelled:
                    raise asyncio.CancelledError

    async def status(self, *, api_key: str | None) -> dict[str, Any]:
        """Fetch the upstream status document."""
        try:
            response = await self._client.get(self.cfg.upstream_status_path, headers=self._headers(api_key))
            response.raise_for_status()
            data = response.json()
        except Exception as exc:
            self.health.record_failure(exc)
            raise
        self.health.record_success()
        return data if isinstance(data, dict) else {"status": data}

    @property
    def base_url(self) -> str:
        return self._base_url

    def connection_health(self) -> dict[str, Any]:
        """Return call outcome counters for the health endpoints."""
        return self.health.snapshot()

    def reset_connection_health(self) -> None:
        LOG.info("upstream connection health reset base_url=%s", self._base_url)
        self.health.reset()
