"""Assessment stream orchestrator.

One `StreamOrchestrator` drives one session:

    Idle -> Connecting -> Streaming -> Finalizing -> Completed
                 \\            \\            \\
                  +-----------+-----------+--> Failed

Every session that starts ends with exactly one terminal event: `complete`
after finalization (whether or not the terminal parse succeeded) or `error`
on failure. Nothing is written after the terminal event. A closed transport
ends the session silently because the client is no longer listening.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable
from enum import Enum
from typing import Any

from pydantic import ValidationError

from core.error_handler import StructuredLogger
from schemas.assessment import AssessmentOutcome, AssessmentResult
from schemas.streaming import AssessStreamRequest
from services.streaming.accumulator import TextAccumulator
from services.streaming.emitter import EventEmitter, QueueSink
from services.streaming.exceptions import StreamingError, TransportClosedError
from services.streaming.extractor import (
    ScoreUpdate,
    SectionUpdate,
    SpeculativeFieldExtractor,
)
from services.streaming.interfaces import (
    LLMStreamSourceProtocol,
    PromptBuilderProtocol,
    SearchProgress,
    StreamUsage,
)
from services.streaming.status_messages import get_status_message


logger = logging.getLogger(__name__)
structured_logger = StructuredLogger(__name__)

# Sections sent from the terminal parse when no earlier event carried them.
FINAL_SECTION_NAMES: tuple[str, ...] = (
    "underlyingReality",
    "centralClaims",
    "evidenceAnalysis",
    "plainTruth",
)

PHASE_PROGRESS: dict[str, float] = {
    "connecting": 0.05,
    "analyzing": 0.1,
    "searching": 0.2,
    "evaluating": 0.6,
    "synthesizing": 0.9,
    "complete": 1.0,
}

INTERNAL_ERROR_MESSAGE = "Something went wrong. Please try again."

# Each web search advances progress by this much, up to SEARCH_PROGRESS_CAP.
SEARCH_PROGRESS_STEP = 0.05
SEARCH_PROGRESS_CAP = 0.5


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


_TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED})


def describe_failure(exc: BaseException) -> tuple[str, str, int | None]:
    """Map an exception to the `(code, message, retry_after)` of an error event."""
    if isinstance(exc, StreamingError):
        return (exc.error_code, exc.message, exc.retry_after)
    return ("INTERNAL_ERROR", INTERNAL_ERROR_MESSAGE, None)


def _has_content(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, list | dict):
        return bool(value)
    return False


class StreamOrchestrator:
    """Drives the model stream through extraction into SSE events."""

    def __init__(
        self,
        emitter: EventEmitter,
        prompt_builder: PromptBuilderProtocol,
        source: LLMStreamSourceProtocol,
        *,
        extractor: SpeculativeFieldExtractor | None = None,
        keepalive_interval: float = 0.0,
        chunk_emit_threshold: int = 0,
        final_section_names: Iterable[str] = FINAL_SECTION_NAMES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.emitter = emitter
        self.prompt_builder = prompt_builder
        self.source = source
        self.extractor = extractor or SpeculativeFieldExtractor()
        self.keepalive_interval = keepalive_interval
        self.final_section_names = tuple(final_section_names)
        self._text = TextAccumulator(chunk_emit_threshold)
        self._clock = clock
        self._state = SessionState.IDLE
        self._language = "en"
        self._emitted_sections: set[str] = set()
        self._evaluating_sent = False
        self._progress = 0.0
        self._search_count = 0

    @property
    def state(self) -> SessionState:
        return self._state

    def _transition(self, state: SessionState) -> None:
        if self._state in _TERMINAL_STATES:
            raise RuntimeError(f"session already {self._state.value}")
        logger.debug("Stream session %s -> %s", self._state.value, state.value)
        self._state = state

    async def _status(
        self, phase: str, message: str | None = None, progress: float | None = None
    ) -> None:
        progress = PHASE_PROGRESS[phase] if progress is None else progress
        await self.emitter.status(
            phase, message or get_status_message(phase, self._language), progress
        )
        self._progress = progress

    async def run(self, request: AssessStreamRequest) -> AssessmentOutcome | None:
        """Run the session to a terminal state.

        Returns the outcome on `Completed` and None on `Failed`. Cancellation
        is recorded as `Failed` and re-raised.
        """
        if self._state is not SessionState.IDLE:
            raise RuntimeError("a stream session can only be run once")

        self._language = request.language
        started_at = self._clock()
        keepalive_task: asyncio.Task[None] | None = None
        structured_logger.info(
            "Assessment stream started",
            assessment_type=request.assessment_type,
            language=request.language,
        )

        try:
            self._transition(SessionState.CONNECTING)
            await self._status("connecting")
            if self.keepalive_interval > 0:
                keepalive_task = asyncio.create_task(self._keepalive_loop())

            prompt = self.prompt_builder.build_prompt(request)
            async with self.source.open(prompt) as completion:
                async for delta in completion.chunks():
                    if isinstance(delta, SearchProgress):
                        await self._handle_search(delta)
                    else:
                        await self._handle_chunk(delta)
                usage = completion.usage()

            outcome = await self._finalize(started_at, usage)
            self._transition(SessionState.COMPLETED)
            structured_logger.info(
                "Assessment stream completed",
                success=outcome.success,
                total_tokens=outcome.total_tokens,
                duration=outcome.duration,
                events=self.emitter.last_event_id,
            )
            return outcome
        except TransportClosedError:
            self._transition(SessionState.FAILED)
            structured_logger.info(
                "Assessment stream closed by client",
                events=self.emitter.last_event_id,
            )
            return None
        except asyncio.CancelledError:
            self._transition(SessionState.FAILED)
            structured_logger.info(
                "Assessment stream cancelled", events=self.emitter.last_event_id
            )
            raise
        except Exception as exc:
            self._transition(SessionState.FAILED)
            await self._report_failure(exc)
            return None
        finally:
            if keepalive_task is not None:
                keepalive_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await keepalive_task
            await self.emitter.finish()

    async def _begin_streaming(self) -> None:
        if self._state is SessionState.CONNECTING:
            self._transition(SessionState.STREAMING)
            await self._status("analyzing")

    async def _handle_search(self, search: SearchProgress) -> None:
        await self._begin_streaming()
        self._search_count = search.count
        progress = min(
            PHASE_PROGRESS["searching"] + SEARCH_PROGRESS_STEP * search.count,
            SEARCH_PROGRESS_CAP,
        )
        message = f"{get_status_message('searching', self._language)} ({search.count})"
        # Searches after the first score must not move progress backwards.
        await self._status("searching", message, max(progress, self._progress))

    async def _handle_chunk(self, delta: str) -> None:
        if not delta:
            return
        await self._begin_streaming()

        for update in self.extractor.process(delta):
            if isinstance(update, ScoreUpdate):
                await self.emitter.score(
                    update.reality, update.integrity, provisional=True
                )
                if not self._evaluating_sent:
                    self._evaluating_sent = True
                    await self._status("evaluating")
            elif isinstance(update, SectionUpdate):
                await self.emitter.section(update.name, update.content, update.final)
                self._emitted_sections.add(update.name)

        batch = self._text.add(delta)
        if batch:
            await self.emitter.chunk("text", batch, complete=False)

    async def _finalize(
        self, started_at: float, usage: StreamUsage | None
    ) -> AssessmentOutcome:
        self._transition(SessionState.FINALIZING)
        await self._status("synthesizing")
        await self.emitter.chunk("text", self._text.flush(), complete=True)

        result: AssessmentResult | None = None
        document = self.extractor.finalize()
        if document is not None:
            try:
                result = AssessmentResult.from_document(document)
            except ValidationError as e:
                logger.warning(
                    "Parsed response does not match the assessment structure: %s",
                    e.error_count(),
                )
        if result is not None and document is not None:
            await self._emit_final_fields(result, document)

        duration = round(self._clock() - started_at, 3)
        total_tokens = usage.total_tokens if usage is not None else None
        await self._status("complete")
        await self.emitter.complete(
            success=result is not None,
            total_tokens=total_tokens,
            duration=duration,
            search_count=self._search_count or None,
            result=result.to_wire() if result is not None else None,
        )
        return AssessmentOutcome(
            success=result is not None,
            result=result,
            total_tokens=total_tokens,
            duration=duration,
            search_count=self._search_count,
            raw_text=self._text.text,
        )

    async def _emit_final_fields(
        self, result: AssessmentResult, document: dict[str, Any]
    ) -> None:
        """Send authoritative values without repeating earlier sections."""
        if result.reality_score is not None or result.integrity_score is not None:
            await self.emitter.score(
                result.reality_score, result.integrity_score, provisional=False
            )
        for name in self.final_section_names:
            if name in self._emitted_sections:
                continue
            value = document.get(name)
            if _has_content(value):
                await self.emitter.section(name, value, final=True)
                self._emitted_sections.add(name)

    async def _report_failure(self, exc: Exception) -> None:
        code, message, retry_after = describe_failure(exc)
        if isinstance(exc, StreamingError):
            structured_logger.warning(
                "Assessment stream failed", error_code=code, detail=exc.message
            )
        else:
            structured_logger.exception(
                "Assessment stream failed unexpectedly",
                error_code=code,
                exception_type=exc.__class__.__name__,
            )
        try:
            await self.emitter.error(code, message, retry_after)
        except TransportClosedError:
            logger.debug("Transport closed before the error event could be sent")

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await self.emitter.keepalive()
            except TransportClosedError:
                return


async def sse_response_body(
    orchestrator: StreamOrchestrator,
    request: AssessStreamRequest,
    sink: QueueSink,
) -> AsyncIterator[str]:
    """Response body for one session.

    The session task starts on first iteration. When the client disconnects
    the generator is closed, which closes the sink and cancels the session.
    """
    task = asyncio.create_task(orchestrator.run(request))
    try:
        async for frame in sink.drain():
            yield frame
        await task
    finally:
        sink.close()
        if not task.done():
            task.cancel()
