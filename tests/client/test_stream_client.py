"""Stream client tests against scripted SSE responses.

Responses are produced with the server-side `EventEmitter` so the client is
exercised against the real wire format.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from client.stream_client import CompletionSummary, StreamCallbacks, StreamClient
from services.streaming.emitter import EventEmitter, ListSink


ENDPOINT = "http://testserver/api/v1/assess-stream"


class Recorder:
    """Collects callback invocations in arrival order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def _record(self, name: str) -> Callable[..., None]:
        return lambda *args: self.calls.append((name, args))

    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_status=self._record("status"),
            on_chunk=self._record("chunk"),
            on_section=self._record("section"),
            on_score=self._record("score"),
            on_error=self._record("error"),
            on_complete=self._record("complete"),
        )

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


async def _session_frames() -> str:
    sink = ListSink()
    emitter = EventEmitter(sink)
    await emitter.status("connecting", "Connecting...", 0.05)
    await emitter.status("analyzing", "Analyzing claim...", 0.1)
    await emitter.chunk("text", '{"realityScore": 7, ')
    await emitter.score(7.0, None, provisional=True)
    await emitter.keepalive()
    await emitter.chunk("text", '"headline": "Ça dépend ✓"}')
    await emitter.section("headline", "Ça dépend ✓", final=False)
    await emitter.chunk("text", "", complete=True)
    await emitter.score(7.0, 0.3, provisional=False)
    await emitter.status("complete", "Analysis complete", 1.0)
    await emitter.complete(success=True, total_tokens=42, duration=1.5, search_count=1)
    return sink.text


def _random_splits(data: bytes, seed: int) -> list[bytes]:
    rng = random.Random(seed)
    parts = []
    pos = 0
    while pos < len(data):
        size = rng.randint(1, 9)
        parts.append(data[pos : pos + size])
        pos += size
    return parts


def _client(
    parts: list[bytes] | Callable[[], AsyncIterator[bytes]],
    recorder: Recorder,
    *,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
    clock: Callable[[], float] | None = None,
) -> StreamClient:
    async def body() -> AsyncIterator[bytes]:
        for part in parts:
            yield part

    def handler(request: httpx.Request) -> httpx.Response:
        content = parts() if callable(parts) else body()
        return httpx.Response(status_code, headers=headers, content=content)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    return StreamClient(
        ENDPOINT, recorder.callbacks(), http_client=http_client, **kwargs
    )


@pytest.mark.asyncio
async def test_callbacks_follow_server_order_for_any_split() -> None:
    payload = (await _session_frames()).encode()

    reference = Recorder()
    await _client([payload], reference).start({"query": "claim"})

    for seed in range(5):
        recorder = Recorder()
        client = _client(_random_splits(payload, seed), recorder)
        await client.start({"query": "claim"})

        assert recorder.calls[:-1] == reference.calls[:-1]
        assert recorder.names()[-1] == "complete"
        assert client.state.accumulated_text == (
            '{"realityScore": 7, "headline": "Ça dépend ✓"}'
        )

    assert reference.names() == [
        "status",
        "status",
        "chunk",
        "score",
        "chunk",
        "section",
        "chunk",
        "score",
        "status",
        "complete",
    ]


@pytest.mark.asyncio
async def test_completion_summary_carries_client_state() -> None:
    payload = (await _session_frames()).encode()
    recorder = Recorder()
    client = _client([payload], recorder, clock=iter([100.0, 102.0]).__next__)

    await client.start({"query": "claim", "language": "fr"})

    summary = recorder.calls[-1][1][0]
    assert isinstance(summary, CompletionSummary)
    assert summary.success is True
    assert summary.duration == 2.0
    assert summary.server_duration == 1.5
    assert summary.total_tokens == 42
    assert summary.search_count == 1
    assert summary.sections == {"headline": "Ça dépend ✓"}
    assert summary.scores == {"reality": 7.0, "integrity": 0.3}
    assert summary.raw_text.endswith('"Ça dépend ✓"}')
    assert client.is_active is False
    assert client.state.last_event_id == 10


@pytest.mark.asyncio
async def test_score_without_a_field_keeps_previous_value() -> None:
    frames = (
        'id: 1\nevent: score\ndata: {"realityScore":4.0,"provisional":true}\n\n'
        'id: 2\nevent: score\ndata: {"realityScore":null,"integrityScore":0.1,'
        '"provisional":true}\n\n'
    )
    recorder = Recorder()
    client = _client([frames.encode()], recorder)

    await client.start({"query": "claim"})

    assert client.state.scores == {"reality": 4.0, "integrity": 0.1}
    assert recorder.calls[1] == ("score", (None, 0.1, True))


@pytest.mark.asyncio
async def test_malformed_record_is_dropped_and_reading_continues(caplog) -> None:
    frames = (
        'id: 1\nevent: chunk\ndata: {"type":"text","partial":"a","complete":false}\n\n'
        "id: 2\nevent: chunk\ndata: {not json\n\n"
        'id: 3\nevent: chunk\ndata: {"type":"text","partial":"b","complete":false}\n\n'
        'id: 4\nevent: complete\ndata: {"success":false}\n\n'
    )
    recorder = Recorder()
    client = _client([frames.encode()], recorder)

    with caplog.at_level(logging.WARNING, logger="client.stream_client"):
        await client.start({"query": "claim"})

    assert recorder.names() == ["chunk", "chunk", "complete"]
    assert client.state.accumulated_text == "ab"
    assert "malformed data" in caplog.text


@pytest.mark.asyncio
async def test_event_id_gap_is_logged_not_fatal(caplog) -> None:
    frames = (
        'id: 1\nevent: status\ndata: {"phase":"connecting","message":"","progress":0.05}\n\n'
        'id: 3\nevent: complete\ndata: {"success":true}\n\n'
    )
    recorder = Recorder()
    client = _client([frames.encode()], recorder)

    with caplog.at_level(logging.WARNING, logger="client.stream_client"):
        await client.start({"query": "claim"})

    assert recorder.names() == ["status", "complete"]
    assert "event id gap" in caplog.text


@pytest.mark.asyncio
async def test_events_after_terminal_event_are_ignored() -> None:
    frames = (
        'id: 1\nevent: error\ndata: {"code":"API_ERROR","message":"Failed"}\n\n'
        'id: 2\nevent: complete\ndata: {"success":true}\n\n'
        'id: 3\nevent: chunk\ndata: {"type":"text","partial":"late","complete":false}\n\n'
    )
    recorder = Recorder()
    client = _client([frames.encode()], recorder)

    await client.start({"query": "claim"})

    assert recorder.calls == [("error", ("API_ERROR", "Failed", None))]
    assert client.state.accumulated_text == ""


@pytest.mark.asyncio
async def test_http_error_reports_status_and_retry_after() -> None:
    recorder = Recorder()
    client = _client(
        [b'{"success": false}'],
        recorder,
        status_code=429,
        headers={"Retry-After": "30"},
    )

    await client.start({"query": "claim"})

    assert recorder.names() == ["error"]
    code, message, retry_after = recorder.calls[0][1]
    assert code == "HTTP_429"
    assert "429" in message
    assert retry_after == 30


@pytest.mark.asyncio
async def test_network_failure_reports_stream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    recorder = Recorder()
    client = StreamClient(
        ENDPOINT,
        recorder.callbacks(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    await client.start({"query": "claim"})

    assert recorder.calls == [("error", ("STREAM_ERROR", "connection refused", None))]
    assert client.is_active is False


@pytest.mark.asyncio
async def test_async_callbacks_do_not_block_reading() -> None:
    payload = (await _session_frames()).encode()
    seen: list[str] = []

    async def on_chunk(type_: str, partial: str, complete: bool) -> None:
        await asyncio.sleep(0)
        seen.append(partial)

    client = StreamClient(
        ENDPOINT,
        StreamCallbacks(on_chunk=on_chunk),
        http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, content=payload)
            )
        ),
    )

    await client.start({"query": "claim"})
    for _ in range(5):
        await asyncio.sleep(0)

    assert sorted(seen) == sorted(['{"realityScore": 7, ', '"headline": "Ça dépend ✓"}', ""])


@pytest.mark.asyncio
async def test_stop_after_two_chunks_silences_callbacks() -> None:
    release = asyncio.Event()
    head = (
        'id: 1\nevent: chunk\ndata: {"type":"text","partial":"a","complete":false}\n\n'
        'id: 2\nevent: chunk\ndata: {"type":"text","partial":"b","complete":false}\n\n'
    ).encode()
    tail = (
        'id: 3\nevent: chunk\ndata: {"type":"text","partial":"c","complete":false}\n\n'
        'id: 4\nevent: complete\ndata: {"success":true}\n\n'
    ).encode()

    async def body() -> AsyncIterator[bytes]:
        yield head
        await release.wait()
        yield tail

    recorder = Recorder()
    client = _client(body, recorder)
    started = asyncio.create_task(client.start({"query": "claim"}))

    async def two_chunks() -> None:
        while recorder.names().count("chunk") < 2:
            await asyncio.sleep(0)

    await asyncio.wait_for(two_chunks(), timeout=1)
    client.stop()
    await asyncio.wait_for(started, timeout=1)

    count = len(recorder.calls)
    release.set()
    await asyncio.sleep(0.05)

    assert len(recorder.calls) == count == 2
    assert client.is_active is False
    # Stopping again is a no-op.
    client.stop()


@pytest.mark.asyncio
async def test_missing_terminal_event_is_logged(caplog) -> None:
    frames = 'id: 1\nevent: chunk\ndata: {"type":"text","partial":"a","complete":false}\n\n'
    recorder = Recorder()
    client = _client([frames.encode()], recorder)

    with caplog.at_level(logging.WARNING, logger="client.stream_client"):
        await client.start({"query": "claim"})

    assert recorder.names() == ["chunk"]
    assert "without a complete or error event" in caplog.text
