"""Schemas for the assessment SSE stream.

Each event kind has a frozen payload model whose `to_wire()` output is the
exact JSON object written after `data:`. Field names on the wire are
camelCase to match the browser client; Python code uses snake_case.
"""

from __future__ import annotations

import json
from typing import Any, ClassVar, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


MAX_SSE_EVENT_BYTES: int = 262_144

EventKind = Literal["status", "chunk", "section", "score", "error", "complete"]

SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
}

KEEPALIVE_FRAME = ": keepalive\n\n"


class WirePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    # Wire keys dropped from the frame when their value is None.
    omit_if_none: ClassVar[frozenset[str]] = frozenset()

    def to_wire(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True)
        return {
            key: value
            for key, value in data.items()
            if value is not None or key not in self.omit_if_none
        }


class StatusPayload(WirePayload):
    phase: str
    message: str
    progress: float = Field(..., ge=0.0, le=1.0)


class ChunkPayload(WirePayload):
    type: str = "text"
    partial: str
    complete: bool = False


class SectionPayload(WirePayload):
    name: str
    content: str | list[Any] | dict[str, Any]
    final: bool


class ScorePayload(WirePayload):
    omit_if_none: ClassVar[frozenset[str]] = frozenset({"integrityScore"})

    reality_score: float | None = Field(None, alias="realityScore")
    integrity_score: float | None = Field(None, alias="integrityScore")
    provisional: bool = True


class ErrorPayload(WirePayload):
    omit_if_none: ClassVar[frozenset[str]] = frozenset({"retryAfter"})

    code: str
    message: str
    retry_after: int | None = Field(None, alias="retryAfter")


class CompletePayload(WirePayload):
    omit_if_none: ClassVar[frozenset[str]] = frozenset(
        {"totalTokens", "duration", "searchCount", "result"}
    )

    success: bool
    total_tokens: int | None = Field(None, alias="totalTokens")
    duration: float | None = None
    search_count: int | None = Field(None, ge=0, alias="searchCount")
    result: dict[str, Any] | None = None


class StreamEvent(BaseModel):
    """One emitted event. Created once, serialized once, never mutated."""

    id: int = Field(..., ge=1)
    event: EventKind
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")

    def to_sse(self) -> str:
        """Serialize event to the SSE record format with size validation."""
        payload = json.dumps(self.data, ensure_ascii=False, separators=(",", ":"))
        if len(payload.encode("utf-8")) > MAX_SSE_EVENT_BYTES:
            raise ValueError("SSE payload exceeded MAX_SSE_EVENT_BYTES")
        return f"id: {self.id}\nevent: {self.event}\ndata: {payload}\n\n"


class AssessStreamRequest(BaseModel):
    """Request payload for `POST /assess-stream`.

    `question` is accepted as an alias of `query` for older clients. Neither
    is required here: a request without any input is reported inside the
    stream as a `MISSING_QUERY` error event.
    """

    query: str | None = Field(
        default=None,
        max_length=4000,
        validation_alias=AliasChoices("query", "question"),
    )
    article_text: str = Field(
        default="",
        max_length=100_000,
        validation_alias=AliasChoices("articleText", "article_text"),
    )
    assessment_type: str = Field(
        default="full",
        validation_alias=AliasChoices("assessmentType", "assessment_type"),
    )
    language: str = Field(default="en", min_length=2, max_length=10)

    model_config = ConfigDict(extra="ignore")

    @property
    def has_input(self) -> bool:
        return bool((self.query or "").strip() or self.article_text.strip())
