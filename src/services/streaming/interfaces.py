"""Collaborator interfaces for the assessment stream.

The orchestrator depends only on these protocols so tests can drive it with
in-memory fakes and the API layer can swap the Claude source per request.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Protocol

from schemas.streaming import AssessStreamRequest


@dataclass(frozen=True, slots=True)
class StreamUsage:
    """Usage metadata reported by the model once the stream has ended."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    model_name: str | None = None

    @property
    def total_tokens(self) -> int | None:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return (self.input_tokens or 0) + (self.output_tokens or 0)


@dataclass(frozen=True, slots=True)
class SearchProgress:
    """The model started its `count`-th web search in this completion."""

    count: int


class PromptBuilderProtocol(Protocol):
    """Turns user input into the opaque prompt sent to the model."""

    def build_prompt(self, request: AssessStreamRequest) -> str:
        """Raise `MissingQueryError` when the request carries no input."""
        ...


class LLMCompletionProtocol(Protocol):
    """One open completion stream."""

    def chunks(self) -> AsyncIterator[str | SearchProgress]:
        """Yield text deltas, and search starts, until the response ends."""
        ...

    def usage(self) -> StreamUsage | None:
        """Usage metadata; meaningful only after `chunks()` is exhausted."""
        ...


class LLMStreamSourceProtocol(Protocol):
    """Opens completion streams.

    Leaving the context releases the upstream request, including when the
    session is cancelled mid-stream.
    """

    def open(self, prompt: str) -> AbstractAsyncContextManager[LLMCompletionProtocol]:
        ...


class EventSinkProtocol(Protocol):
    """Ordered transport for serialized SSE frames."""

    @property
    def closed(self) -> bool: ...

    async def write(self, frame: str) -> None:
        """Write one frame or raise `TransportClosedError`."""
        ...

    async def finish(self) -> None:
        """Signal that no more frames follow. Never raises."""
        ...

    def close(self) -> None:
        """Mark the transport dead (client disconnected)."""
        ...
