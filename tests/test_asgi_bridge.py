import asyncio

import pytest

from streamkoppler.asgi_bridge import LifecycleResponse, QueuedTransport, TransportClosed
from streamkoppler.coordinator import RequestKind, TimeoutSettings, create_coordinator
from streamkoppler.registry import ConcurrencyRegistry
from streamkoppler.streaming import DONE_FRAME, StreamingEmitter


def _build(registry: ConcurrencyRegistry) -> tuple[QueuedTransport, StreamingEmitter]:
    transport = QueuedTransport()
    coordinator = create_coordinator(
        "req-1",
        RequestKind.INCREMENTAL,
        TimeoutSettings(base=5.0, streaming=5.0, inactivity=5.0, max_timeout=5.0),
        transport,
        registry=registry,
        model="gpt-4o",
    )
    return transport, StreamingEmitter(coordinator)


async def _never_disconnect() -> dict:
    await asyncio.Event().wait()
    return {"type": "http.disconnect"}


def test_stream_is_pumped_to_asgi_send() -> None:
    sent: list[dict] = []

    async def _send(message: dict) -> None:
        sent.append(message)

    async def _produce(emitter: StreamingEmitter) -> None:
        emitter.start()
        emitter.emit({"n": 1})
        emitter.emit_terminal_sentinel()

    async def _run() -> StreamingEmitter:
        transport, emitter = _build(ConcurrencyRegistry())
        response = LifecycleResponse(emitter.coordinator, transport, lambda: emitter.run_with_error_boundary(_produce))
        await response({"type": "http"}, _never_disconnect, _send)
        return emitter

    emitter = asyncio.run(_run())
    assert sent[0]["type"] == "http.response.start"
    assert sent[0]["status"] == 200
    assert (b"content-type", b"text/event-stream; charset=utf-8") in sent[0]["headers"]
    assert sent[1]["body"] == b'data: {"n": 1}\n\n'
    assert sent[2]["body"] == DONE_FRAME
    assert sent[-1] == {"type": "http.response.body", "body": b"", "more_body": False}
    assert emitter.coordinator.context.termination_reason == "completed"


def test_client_disconnect_terminates_and_releases_resources() -> None:
    registry = ConcurrencyRegistry(grace_seconds=0.0)
    released: list[str] = []

    async def _run() -> StreamingEmitter:
        frame_sent = asyncio.Event()
        transport, emitter = _build(registry)

        async def _send(message: dict) -> None:
            if message.get("body"):
                frame_sent.set()

        async def _receive() -> dict:
            await frame_sent.wait()
            return {"type": "http.disconnect"}

        async def _produce(em: StreamingEmitter) -> None:
            em.coordinator.register_resource("upstream_stream:req-1", lambda: released.append("upstream"))
            em.start()
            em.emit({"n": 1})
            await em.coordinator.cancel_event.wait()

        response = LifecycleResponse(emitter.coordinator, transport, lambda: emitter.run_with_error_boundary(_produce))
        await response({"type": "http"}, _receive, _send)
        return emitter

    emitter = asyncio.run(_run())
    assert emitter.coordinator.context.termination_reason == "client_disconnect"
    assert released == ["upstream"]
    registry.evict_expired()
    assert registry.detect_leaks() == []
    assert registry.recent_cleanups()[-1]["status"] == "disconnected"


def test_send_failure_destroys_response() -> None:
    calls = {"n": 0}

    async def _send(message: dict) -> None:
        calls["n"] += 1
        if message["type"] == "http.response.body":
            raise OSError("broken pipe")

    async def _produce(emitter: StreamingEmitter) -> None:
        emitter.start()
        emitter.emit({"n": 1})
        await asyncio.sleep(10)

    async def _run() -> StreamingEmitter:
        transport, emitter = _build(ConcurrencyRegistry())
        response = LifecycleResponse(emitter.coordinator, transport, lambda: emitter.run_with_error_boundary(_produce))
        await response({"type": "http"}, _never_disconnect, _send)
        assert transport.closed
        return emitter

    emitter = asyncio.run(_run())
    assert emitter.coordinator.context.termination_reason == "response_error"
    assert emitter.sink.destroyed
    assert calls["n"] == 2


def test_body_without_head_gets_implicit_status() -> None:
    sent: list[dict] = []

    async def _send(message: dict) -> None:
        sent.append(message)

    async def _run() -> None:
        transport = QueuedTransport()
        transport.send_body(b"hello")
        transport.finish(None)
        assert await transport.pump(_send) is True

    asyncio.run(_run())
    assert sent[0] == {"type": "http.response.start", "status": 200, "headers": []}
    assert sent[1]["body"] == b"hello"
    assert sent[2]["more_body"] is False


def test_abort_discards_queued_messages() -> None:
    sent: list[dict] = []

    async def _send(message: dict) -> None:
        sent.append(message)

    async def _run() -> None:
        transport = QueuedTransport()
        transport.send_head(200, {})
        transport.send_body(b"never sent")
        transport.abort()
        with pytest.raises(TransportClosed):
            transport.send_body(b"late")
        assert await transport.pump(_send) is False

    asyncio.run(_run())
    assert sent == []


def test_wait_drained_blocks_above_high_water_mark() -> None:
    sent: list[dict] = []

    async def _send(message: dict) -> None:
        sent.append(message)

    async def _run() -> None:
        transport = QueuedTransport(high_water=2)
        transport.send_head(200, {})
        transport.send_body(b"a")
        transport.send_body(b"b")
        waiter = asyncio.create_task(transport.wait_drained())
        await asyncio.sleep(0)
        assert not waiter.done()
        transport.finish()
        await transport.pump(_send)
        await asyncio.wait_for(waiter, 1.0)

    asyncio.run(_run())
    assert len(sent) == 4


def test_fault_after_headers_reaches_producer_wrapper(caplog: pytest.LogCaptureFixture) -> None:
    sent: list[dict] = []

    async def _send(message: dict) -> None:
        sent.append(message)

    async def _produce(emitter: StreamingEmitter) -> None:
        emitter.start()
        emitter.emit({"n": 1})
        raise RuntimeError("upstream parser exploded")

    async def _run() -> StreamingEmitter:
        transport, emitter = _build(ConcurrencyRegistry())
        response = LifecycleResponse(emitter.coordinator, transport, lambda: emitter.run_with_error_boundary(_produce))
        await response({"type": "http"}, _never_disconnect, _send)
        return emitter

    with caplog.at_level("WARNING", logger="streamkoppler"):
        emitter = asyncio.run(_run())

    assert emitter.coordinator.context.termination_reason == "error_boundary"
    failures = [r for r in caplog.records if r.getMessage().startswith("request production failed")]
    assert len(failures) == 1
    assert "RuntimeError" in failures[0].getMessage()
    assert "upstream parser exploded" in failures[0].getMessage()
    assert any(r.getMessage().startswith("stream producer failed") for r in caplog.records)
    bodies = [m.get("body", b"") for m in sent if m["type"] == "http.response.body"]
    assert b'"error"' in bodies[-3]
    assert bodies[-2] == DONE_FRAME
    assert sent[-1]["more_body"] is False
