"""Streaming assessment endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from core.config import Settings, get_settings
from core.ratelimit import check_rate_limit
from schemas.streaming import SSE_HEADERS, AssessStreamRequest
from services.llm.prompts import PromptBuilder
from services.llm.routing import route_request
from services.llm.stream_source import AgentStreamSource
from services.streaming.emitter import EventEmitter, QueueSink
from services.streaming.interfaces import (
    LLMStreamSourceProtocol,
    PromptBuilderProtocol,
)
from services.streaming.orchestrator import StreamOrchestrator, sse_response_body


logger = logging.getLogger(__name__)

router = APIRouter(tags=["assess"])


def get_stream_source() -> LLMStreamSourceProtocol:
    """Claude stream source; overridden in tests."""
    return AgentStreamSource()


def get_prompt_builder() -> PromptBuilderProtocol:
    return PromptBuilder()


@router.post(
    "/assess-stream",
    response_class=StreamingResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def assess_stream(
    payload: AssessStreamRequest,
    settings: Annotated[Settings, Depends(get_settings)],
    source: Annotated[LLMStreamSourceProtocol, Depends(get_stream_source)],
    prompt_builder: Annotated[PromptBuilderProtocol, Depends(get_prompt_builder)],
) -> StreamingResponse:
    """Stream a claim assessment as Server-Sent Events.

    Events: `status`, `chunk`, `section`, `score`, then exactly one terminal
    `complete` or `error`. Input problems (such as a missing query) are
    reported as `error` events inside the stream.
    """
    track = route_request(payload)
    logger.debug("Routing assessment request to %s track", track.value)

    sink = QueueSink(
        maxsize=settings.SSE_QUEUE_SIZE,
        write_timeout=settings.SSE_WRITE_TIMEOUT_SECONDS,
    )
    orchestrator = StreamOrchestrator(
        EventEmitter(sink),
        prompt_builder,
        source,
        keepalive_interval=settings.SSE_KEEPALIVE_SECONDS,
        chunk_emit_threshold=settings.CHUNK_EMIT_THRESHOLD,
    )
    return StreamingResponse(
        sse_response_body(orchestrator, payload, sink),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
