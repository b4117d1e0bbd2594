import asyncio
import json

import httpx
import pytest

from streamkoppler.coordinator import RequestKind, TimeoutSettings, create_coordinator
from streamkoppler.errors import ValidationFault
from streamkoppler.registry import ConcurrencyRegistry
from streamkoppler.streaming import DONE_FRAME, StreamingEmitter, sse_comment, sse_frame


class _RecordingTransport:
    def __init__(self) -> None:
        self.heads: list[tuple[int, dict[str, str]]] = []
        self.bodies: list[bytes] = []
        self.finishes = 0
        self.aborts = 0

    def send_head(self, status, headers) -> None:
        self.heads.append((status, dict(headers)))

    def send_body(self, data: bytes) -> None:
        self.bodies.append(data)

    def finish(self, data=None) -> None:
        self.finishes += 1

    def abort(self) -> None:
        self.aborts += 1


def _emitter(transport, *, kind=RequestKind.INCREMENTAL, base=120.0, inactivity=60.0, install_timers=False):
    coordinator = create_coordinator(
        "req-1",
        kind,
        TimeoutSettings(base=base, streaming=120.0, inactivity=inactivity, max_timeout=300.0),
        transport,
        registry=ConcurrencyRegistry(),
        model="gpt-4o",
        install_timers=install_timers,
    )
    return StreamingEmitter(coordinator, completion_id="chatcmpl-test", extra_headers={"X-Request-ID": "req-1"})


def _data_frames(bodies: list[bytes]) -> list[dict]:
    return [json.loads(body[len(b"data: ") :]) for body in bodies if body.startswith(b"data: {")]


def test_sse_frame_encoding() -> None:
    assert sse_frame({"a": 1}) == b'data: {"a": 1}\n\n'
    assert sse_frame({"a": 1}, "delta") == b'event: delta\ndata: {"a": 1}\n\n'
    assert sse_comment("ping") == b": ping\n\n"


def test_stream_of_three_frames_finalizes_once_with_sentinel() -> None:
    transport = _RecordingTransport()

    async def _produce(emitter: StreamingEmitter) -> None:
        assert emitter.start()
        for index in range(3):
            assert emitter.emit({"n": index})
            await asyncio.sleep(0.02)
        emitter.emit_terminal_sentinel()

    async def _run() -> StreamingEmitter:
        emitter = _emitter(transport, install_timers=True)
        await emitter.run_with_error_boundary(_produce)
        return emitter

    emitter = asyncio.run(_run())
    assert transport.finishes == 1
    assert transport.bodies[-1] == DONE_FRAME
    assert [frame["n"] for frame in _data_frames(transport.bodies)] == [0, 1, 2]
    assert emitter.frames_sent == 3
    status, headers = transport.heads[0]
    assert status == 200
    assert headers["Content-Type"].startswith("text/event-stream")
    assert headers["X-Request-ID"] == "req-1"
    assert emitter.coordinator.context.termination_reason == "completed"


def test_emit_after_destroy_returns_false_without_write() -> None:
    transport = _RecordingTransport()

    async def _run() -> None:
        emitter = _emitter(transport)
        emitter.start()
        emitter.sink.destroy()
        assert emitter.emit({"late": True}) is False
        assert emitter.emit_terminal_sentinel() is False
        assert emitter.frames_sent == 0
        emitter.coordinator.terminate("client_disconnect")

    asyncio.run(_run())
    assert transport.bodies == []


def test_fault_before_headers_is_rendered_as_json_response() -> None:
    transport = _RecordingTransport()

    async def _produce(emitter: StreamingEmitter) -> None:
        raise ValidationFault("bad input", field="messages")

    async def _run() -> None:
        emitter = _emitter(transport, kind=RequestKind.PLAIN)
        with pytest.raises(ValidationFault):
            await emitter.run_with_error_boundary(_produce)
        assert emitter.coordinator.context.termination_reason == "error_boundary"

    asyncio.run(_run())
    status, headers = transport.heads[0]
    assert status == 400
    assert headers["Content-Type"] == "application/json"
    body = json.loads(transport.bodies[0])
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["request_id"] == "req-1"
    assert transport.finishes == 1


def test_fault_after_headers_is_sent_in_band() -> None:
    transport = _RecordingTransport()
    handled: list[str] = []

    async def _produce(emitter: StreamingEmitter) -> None:
        emitter.start()
        emitter.emit({"n": 0})
        req = httpx.Request("POST", "http://upstream/streamChat")
        raise httpx.ConnectError("upstream down", request=req)

    async def _run() -> None:
        emitter = _emitter(transport)
        with pytest.raises(httpx.ConnectError):
            await emitter.run_with_error_boundary(_produce, on_error=lambda exc, em: handled.append(type(exc).__name__))

    asyncio.run(_run())
    assert handled == ["ConnectError"]
    assert len(transport.heads) == 1
    assert transport.bodies[-1] == DONE_FRAME
    error = _data_frames(transport.bodies)[-1]
    assert error["choices"][0]["finish_reason"] == "error"
    assert error["error"]["code"] == "service_unavailable"
    assert transport.finishes == 1


def test_watchdog_delivers_timeout_in_band_and_stops_producer() -> None:
    transport = _RecordingTransport()

    async def _produce(emitter: StreamingEmitter) -> None:
        emitter.start()
        await emitter.coordinator.cancel_event.wait()
        assert emitter.emit({"late": True}) is False

    async def _run() -> StreamingEmitter:
        emitter = _emitter(transport, inactivity=0.03, install_timers=True)
        await emitter.run_with_error_boundary(_produce)
        return emitter

    emitter = asyncio.run(_run())
    coordinator = emitter.coordinator
    assert coordinator.context.termination_reason == "inactivity_timeout"
    assert coordinator.context.race_events == []
    error = _data_frames(transport.bodies)[-1]
    assert error["error"]["code"] == "timeout"
    assert error["error"]["message"] == "Request timeout due to inactivity"
    assert transport.bodies[-1] == DONE_FRAME
    assert transport.finishes == 1


def test_watchdog_before_headers_returns_timeout_status() -> None:
    transport = _RecordingTransport()

    async def _produce(emitter: StreamingEmitter) -> None:
        await emitter.coordinator.cancel_event.wait()

    async def _run() -> None:
        emitter = _emitter(transport, kind=RequestKind.PLAIN, base=0.02, install_timers=True)
        await emitter.run_with_error_boundary(_produce)

    asyncio.run(_run())
    status, _ = transport.heads[0]
    assert status == 408
    assert json.loads(transport.bodies[0])["error"]["message"] == "Request timeout"


def test_cancelled_producer_terminates_request() -> None:
    transport = _RecordingTransport()

    async def _produce(emitter: StreamingEmitter) -> None:
        emitter.start()
        await asyncio.sleep(10)

    async def _run() -> StreamingEmitter:
        emitter = _emitter(transport)
        task = asyncio.create_task(emitter.run_with_error_boundary(_produce))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await emitter.coordinator.record.handle
        return emitter

    emitter = asyncio.run(_run())
    assert emitter.coordinator.context.termination_reason == "cancelled"
    assert transport.finishes == 1
