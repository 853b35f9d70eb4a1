"""SSE event emission for one stream session.

`EventEmitter` owns the session's event sequence: ids start at 1 and grow by
one per emitted event. Keepalive comments carry no id and do not advance the
sequence. Frames go to an `EventSinkProtocol`; once the sink reports a closed
transport, every further event raises `TransportClosedError`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from schemas.streaming import (
    KEEPALIVE_FRAME,
    ChunkPayload,
    CompletePayload,
    ErrorPayload,
    EventKind,
    ScorePayload,
    SectionPayload,
    StatusPayload,
    StreamEvent,
    WirePayload,
)
from services.streaming.exceptions import TransportClosedError
from services.streaming.interfaces import EventSinkProtocol


logger = logging.getLogger(__name__)


class QueueSink:
    """Bounded queue between the orchestrator and the HTTP response body.

    The response body generator drains it with `drain()`. A write that cannot
    be queued within `write_timeout` seconds (a client that stopped reading)
    closes the sink.
    """

    def __init__(self, maxsize: int = 256, write_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self.write_timeout = write_timeout
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _put(self, item: str | None) -> None:
        if not self.write_timeout:
            await self._queue.put(item)
            return
        try:
            await asyncio.wait_for(self._queue.put(item), timeout=self.write_timeout)
        except TimeoutError as e:
            self._closed = True
            raise TransportClosedError("SSE write timed out") from e

    async def write(self, frame: str) -> None:
        if self._closed or self._finished:
            raise TransportClosedError()
        await self._put(frame)

    async def finish(self) -> None:
        if self._closed or self._finished:
            return
        self._finished = True
        try:
            await self._put(None)
        except TransportClosedError:
            logger.debug("SSE sink closed before end-of-stream marker was queued")

    def close(self) -> None:
        self._closed = True

    async def drain(self) -> AsyncIterator[str]:
        """Yield frames in write order until `finish()` or `close()`."""
        while not self._closed:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


class ListSink:
    """Collects frames in memory."""

    def __init__(self) -> None:
        self.frames: list[str] = []
        self.finished = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, frame: str) -> None:
        if self._closed:
            raise TransportClosedError()
        self.frames.append(frame)

    async def finish(self) -> None:
        self.finished = True

    def close(self) -> None:
        self._closed = True

    @property
    def text(self) -> str:
        return "".join(self.frames)


class EventEmitter:
    """Serializes typed events to SSE frames with a per-session sequence."""

    def __init__(self, sink: EventSinkProtocol) -> None:
        self._sink = sink
        self._sequence = 0
        self._failed = False

    @property
    def last_event_id(self) -> int:
        return self._sequence

    @property
    def closed(self) -> bool:
        return self._failed or self._sink.closed

    async def _emit(self, kind: EventKind, payload: WirePayload) -> StreamEvent:
        if self.closed:
            self._failed = True
            raise TransportClosedError()
        event = StreamEvent(id=self._sequence + 1, event=kind, data=payload.to_wire())
        frame = event.to_sse()
        self._sequence = event.id
        try:
            await self._sink.write(frame)
        except TransportClosedError:
            self._failed = True
            raise
        return event

    async def status(self, phase: str, message: str, progress: float) -> StreamEvent:
        return await self._emit(
            "status", StatusPayload(phase=phase, message=message, progress=progress)
        )

    async def chunk(
        self, type: str, partial: str, complete: bool = False
    ) -> StreamEvent:
        return await self._emit(
            "chunk", ChunkPayload(type=type, partial=partial, complete=complete)
        )

    async def section(self, name: str, content: Any, final: bool = True) -> StreamEvent:
        return await self._emit(
            "section", SectionPayload(name=name, content=content, final=final)
        )

    async def score(
        self,
        reality_score: float | None,
        integrity_score: float | None = None,
        provisional: bool = False,
    ) -> StreamEvent:
        return await self._emit(
            "score",
            ScorePayload(
                reality_score=reality_score,
                integrity_score=integrity_score,
                provisional=provisional,
            ),
        )

    async def error(
        self, code: str, message: str, retry_after: int | None = None
    ) -> StreamEvent:
        return await self._emit(
            "error", ErrorPayload(code=code, message=message, retry_after=retry_after)
        )

    async def complete(
        self,
        success: bool = True,
        total_tokens: int | None = None,
        duration: float | None = None,
        search_count: int | None = None,
        result: dict[str, Any] | None = None,
    ) -> StreamEvent:
        return await self._emit(
            "complete",
            CompletePayload(
                success=success,
                total_tokens=total_tokens,
                duration=duration,
                search_count=search_count,
                result=result,
            ),
        )

    async def keepalive(self) -> None:
        """Write a comment-only frame; no-op once the transport is closed."""
        if self.closed:
            return
        try:
            await self._sink.write(KEEPALIVE_FRAME)
        except TransportClosedError:
            self._failed = True
            raise

    async def finish(self) -> None:
        await self._sink.finish()
