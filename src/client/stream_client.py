"""Python consumer for the assessment SSE stream.

Usage:
    client = StreamClient(
        "http://localhost:8000/api/v1/assess-stream",
        StreamCallbacks(
            on_chunk=lambda type_, partial, complete: print(partial, end=""),
            on_complete=lambda summary: print(summary.scores),
        ),
    )
    await client.start({"query": "Is the moon landing real?", "language": "en"})

`start()` returns once the stream has ended, failed, or been stopped. `stop()`
can be called from any other task; after it returns no callback fires.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(120.0, connect=10.0)

CallbackResult = Awaitable[None] | None


@dataclass(frozen=True, slots=True)
class SSERecord:
    event: str = "message"
    data: str = ""
    id: str | None = None


def parse_record(text: str) -> SSERecord | None:
    """Parse one SSE record; None for comment-only or data-less records."""
    event = "message"
    event_id: str | None = None
    data_lines: list[str] = []
    for line in text.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)
        elif name == "id":
            event_id = value
    if not data_lines:
        return None
    return SSERecord(event=event, data="\n".join(data_lines), id=event_id)


class SSEDecoder:
    """Incremental SSE framing over raw bytes.

    Multi-byte UTF-8 sequences and record separators may be split across
    reads; the incomplete tail is kept until the next `feed()`.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[SSERecord]:
        self._buffer += self._decoder.decode(data)
        # A trailing "\r" stays until the next read shows whether "\n" follows.
        self._buffer = self._buffer.replace("\r\n", "\n")
        *complete, self._buffer = self._buffer.split("\n\n")
        return [r for r in map(parse_record, complete) if r is not None]

    def flush(self) -> list[SSERecord]:
        """Parse whatever is left once the stream has ended."""
        text = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        return [
            r
            for r in map(parse_record, text.split("\n\n"))
            if r is not None
        ]


@dataclass(slots=True)
class StreamCallbacks:
    """Typed event callbacks. Coroutine functions run fire-and-continue."""

    on_status: Callable[[str, str, float], CallbackResult] | None = None
    on_chunk: Callable[[str, str, bool], CallbackResult] | None = None
    on_section: Callable[[str, Any, bool], CallbackResult] | None = None
    on_score: Callable[[float | None, float | None, bool], CallbackResult] | None = None
    on_error: Callable[[str, str, int | None], CallbackResult] | None = None
    on_complete: Callable[[CompletionSummary], CallbackResult] | None = None


@dataclass(slots=True)
class ClientStreamState:
    accumulated_text: str = ""
    sections: dict[str, Any] = field(default_factory=dict)
    scores: dict[str, float | None] = field(
        default_factory=lambda: {"reality": None, "integrity": None}
    )
    is_active: bool = False
    started_at: float | None = None
    last_event_id: int | None = None


@dataclass(frozen=True, slots=True)
class CompletionSummary:
    success: bool
    duration: float
    server_duration: float | None
    total_tokens: int | None
    sections: dict[str, Any]
    scores: dict[str, float | None]
    raw_text: str
    result: dict[str, Any] | None = None
    search_count: int = 0


class StreamClient:
    """Consumes `POST /assess-stream` and mirrors the stream into local state."""

    def __init__(
        self,
        endpoint: str,
        callbacks: StreamCallbacks | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.endpoint = endpoint
        self.callbacks = callbacks or StreamCallbacks()
        self._http_client = http_client
        self._timeout = timeout
        self._clock = clock
        self._state = ClientStreamState()
        self._task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Future[Any]] = set()
        self._stopped = False
        self._terminal_seen = False
        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            "status": self._on_status,
            "chunk": self._on_chunk,
            "section": self._on_section,
            "score": self._on_score,
            "error": self._on_error,
            "complete": self._on_complete,
        }

    @property
    def state(self) -> ClientStreamState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    async def start(self, params: Mapping[str, Any]) -> None:
        """Run one stream to its end. A second call while active is ignored."""
        if self._state.is_active:
            logger.warning("Stream already active; start() ignored")
            return

        self._state = ClientStreamState(is_active=True, started_at=self._clock())
        self._stopped = False
        self._terminal_seen = False
        self._task = asyncio.create_task(self._run(dict(params)))
        try:
            await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not self._stopped or (current is not None and current.cancelling()):
                self.stop()
                raise
            logger.debug("Stream stopped by caller")
        finally:
            self._state.is_active = False
            self._task = None

    def stop(self) -> None:
        """Cancel the in-flight request; idempotent."""
        self._stopped = True
        self._state.is_active = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        for pending in list(self._pending):
            pending.cancel()
        self._pending.clear()

    async def _run(self, params: dict[str, Any]) -> None:
        owns_client = self._http_client is None
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        try:
            async with client.stream(
                "POST",
                self.endpoint,
                json=params,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if not response.is_success:
                    self._report_http_error(response)
                    return
                decoder = SSEDecoder()
                async for data in response.aiter_bytes():
                    for record in decoder.feed(data):
                        self._dispatch(record)
                for record in decoder.flush():
                    self._dispatch(record)
            if not self._terminal_seen and not self._stopped:
                logger.warning("Stream ended without a complete or error event")
        except httpx.HTTPError as e:
            if not self._stopped:
                logger.warning("Stream request failed: %s", e.__class__.__name__)
                self._report_error("STREAM_ERROR", str(e) or e.__class__.__name__)
        finally:
            if owns_client:
                await client.aclose()

    def _report_http_error(self, response: httpx.Response) -> None:
        retry_after: int | None = None
        header = response.headers.get("Retry-After")
        if header and header.isdigit():
            retry_after = int(header)
        self._report_error(
            f"HTTP_{response.status_code}",
            f"HTTP {response.status_code}: {response.reason_phrase}",
            retry_after,
        )

    def _report_error(
        self, code: str, message: str, retry_after: int | None = None
    ) -> None:
        if self._terminal_seen:
            return
        self._terminal_seen = True
        self._state.is_active = False
        self._invoke(self.callbacks.on_error, code, message, retry_after)

    def _invoke(self, callback: Callable[..., CallbackResult] | None, *args: Any) -> None:
        if callback is None or self._stopped:
            return
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Stream callback %s raised", getattr(callback, "__name__", callback))
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._callback_done)

    def _callback_done(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Async stream callback failed", exc_info=future.exception())

    def _track_event_id(self, raw_id: str | None) -> None:
        if raw_id is None:
            return
        try:
            event_id = int(raw_id)
        except ValueError:
            logger.warning("Ignoring non-numeric SSE event id %r", raw_id)
            return
        last = self._state.last_event_id
        if last is not None and event_id != last + 1:
            logger.warning("SSE event id gap: expected %d, got %d", last + 1, event_id)
        self._state.last_event_id = event_id

    def _dispatch(self, record: SSERecord) -> None:
        if self._stopped:
            return
        self._track_event_id(record.id)
        if self._terminal_seen:
            logger.warning("Ignoring event after terminal event: %s", record.event)
            return
        try:
            payload = json.loads(record.data)
        except json.JSONDecodeError:
            logger.warning("Dropping SSE record with malformed data (event=%s)", record.event)
            return
        if not isinstance(payload, dict):
            logger.warning("Dropping SSE record with non-object data (event=%s)", record.event)
            return
        handler = self._handlers.get(record.event)
        if handler is None:
            logger.debug("Ignoring unknown SSE event type %s", record.event)
            return
        handler(payload)

    def _on_status(self, payload: dict[str, Any]) -> None:
        self._invoke(
            self.callbacks.on_status,
            payload.get("phase", ""),
            payload.get("message", ""),
            payload.get("progress", 0.0),
        )

    def _on_chunk(self, payload: dict[str, Any]) -> None:
        partial = payload.get("partial") or ""
        self._state.accumulated_text += partial
        self._invoke(
            self.callbacks.on_chunk,
            payload.get("type", "text"),
            partial,
            bool(payload.get("complete", False)),
        )

    def _on_section(self, payload: dict[str, Any]) -> None:
        name = payload.get("name")
        if not isinstance(name, str):
            logger.warning("Dropping section event without a name")
            return
        content = payload.get("content")
        self._state.sections[name] = content
        self._invoke(
            self.callbacks.on_section, name, content, bool(payload.get("final", False))
        )

    def _on_score(self, payload: dict[str, Any]) -> None:
        reality = payload.get("realityScore")
        integrity = payload.get("integrityScore")
        # A field missing from this event keeps its previous value.
        if reality is not None:
            self._state.scores["reality"] = reality
        if integrity is not None:
            self._state.scores["integrity"] = integrity
        self._invoke(
            self.callbacks.on_score,
            reality,
            integrity,
            bool(payload.get("provisional", False)),
        )

    def _on_error(self, payload: dict[str, Any]) -> None:
        self._report_error(
            str(payload.get("code", "UNKNOWN")),
            str(payload.get("message", "")),
            payload.get("retryAfter"),
        )

    def _on_complete(self, payload: dict[str, Any]) -> None:
        self._terminal_seen = True
        self._state.is_active = False
        started_at = self._state.started_at or self._clock()
        summary = CompletionSummary(
            success=bool(payload.get("success", False)),
            duration=self._clock() - started_at,
            server_duration=payload.get("duration"),
            total_tokens=payload.get("totalTokens"),
            sections=dict(self._state.sections),
            scores=dict(self._state.scores),
            raw_text=self._state.accumulated_text,
            result=payload.get("result"),
            search_count=payload.get("searchCount") or 0,
        )
        self._invoke(self.callbacks.on_complete, summary)
