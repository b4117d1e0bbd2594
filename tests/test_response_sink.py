import asyncio

from streamkoppler.response_sink import ResponseSink


class _RecordingTransport:
    def __init__(self) -> None:
        self.heads: list[tuple[int, dict[str, str]]] = []
        self.bodies: list[bytes] = []
        self.finishes: list[bytes | None] = []
        self.aborts = 0

    def send_head(self, status, headers) -> None:
        self.heads.append((status, dict(headers)))

    def send_body(self, data: bytes) -> None:
        self.bodies.append(data)

    def finish(self, data=None) -> None:
        self.finishes.append(data)

    def abort(self) -> None:
        self.aborts += 1


class _BrokenTransport(_RecordingTransport):
    def send_body(self, data: bytes) -> None:
        raise ConnectionResetError("peer gone")


def test_headers_are_written_once() -> None:
    transport = _RecordingTransport()
    sink = ResponseSink(transport, request_id="r1")

    assert sink.write_headers(200, {"Content-Type": "text/plain"}) is True
    assert sink.write_headers(500, {}) is False

    assert transport.heads == [(200, {"Content-Type": "text/plain"})]
    assert sink.headers_sent is True
    assert sink.status_code == 200
    assert sink.can_write_headers() is False


def test_end_finalizes_exactly_once() -> None:
    transport = _RecordingTransport()
    sink = ResponseSink(transport)

    assert sink.end("bye") is True
    assert sink.end() is False
    assert sink.write_chunk("late") is False

    assert transport.finishes == [b"bye"]
    assert transport.bodies == []
    assert sink.can_write() is False


def test_end_after_headers_drops_trailing_payload() -> None:
    transport = _RecordingTransport()
    sink = ResponseSink(transport)
    sink.write_headers(200)
    sink.write_chunk(b"abc")

    assert sink.end("ignored") is True
    assert transport.bodies == [b"abc"]
    assert transport.finishes == [None]


def test_write_after_destroy_returns_false_without_writing() -> None:
    transport = _RecordingTransport()
    sink = ResponseSink(transport)
    sink.write_headers(200)
    sink.destroy()

    assert sink.write_chunk("data: x\n\n") is False
    assert sink.end() is False
    assert sink.write_headers(200) is False
    assert transport.bodies == []
    assert transport.finishes == []
    assert transport.aborts == 1


def test_destroy_is_idempotent() -> None:
    transport = _RecordingTransport()
    sink = ResponseSink(transport)
    sink.destroy()
    sink.destroy()

    assert transport.aborts == 1
    assert sink.destroyed is True
    assert sink.ended is True


def test_transport_failure_is_reported_as_false() -> None:
    sink = ResponseSink(_BrokenTransport())
    sink.write_headers(200)

    assert sink.write_chunk("x") is False


def test_empty_chunk_is_accepted_without_write() -> None:
    transport = _RecordingTransport()
    sink = ResponseSink(transport)

    assert sink.write_chunk(b"") is True
    assert transport.bodies == []


def test_drain_waits_on_transport_when_supported() -> None:
    class _Draining(_RecordingTransport):
        def __init__(self) -> None:
            super().__init__()
            self.drains = 0

        async def wait_drained(self) -> None:
            self.drains += 1

    transport = _Draining()
    sink = ResponseSink(transport)

    asyncio.run(sink.drain())
    sink.end()
    asyncio.run(sink.drain())

    assert transport.drains == 1


def test_snapshot_reports_latches() -> None:
    sink = ResponseSink(_RecordingTransport())
    sink.write_headers(201)

    assert sink.snapshot() == {
        "headers_sent": True,
        "ended": False,
        "destroyed": False,
        "status_code": 201,
        "can_write": True,
    }
