"""Claude completion streams via pydantic-ai.

`AgentStreamSource` implements `LLMStreamSourceProtocol`: `open(prompt)` is
an async context manager around `Agent.run_stream_events` whose completion
yields text deltas and web search progress. Model failures are translated to
`UpstreamCompletionError` with a stable code and a user-friendly message.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from pydantic_ai import Agent, AgentRunResultEvent, WebSearchTool
from pydantic_ai.exceptions import ModelAPIError, ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.messages import (
    BuiltinToolCallPart,
    PartDeltaEvent,
    PartStartEvent,
    TextPart,
    TextPartDelta,
)
from pydantic_ai.settings import ModelSettings

from core.config import get_settings
from services.llm.model_factory import get_assessment_model
from services.streaming.exceptions import UpstreamCompletionError
from services.streaming.interfaces import SearchProgress, StreamUsage


logger = logging.getLogger(__name__)


def _get_tokens_from_usage(usage: object) -> tuple[int | None, int | None]:
    """Extract input and output tokens from a usage object or dict."""
    names = (
        ("input_tokens", "request_tokens", "prompt_tokens"),
        ("output_tokens", "response_tokens", "completion_tokens"),
    )
    found: list[int | None] = []
    for candidates in names:
        value = None
        for name in candidates:
            if isinstance(usage, dict):
                value = usage.get(name)
            else:
                value = getattr(usage, name, None)
            if value is not None:
                break
        found.append(value)
    return (found[0], found[1])


def _get_user_friendly_error_message(exc: Exception) -> str:
    """Convert model API failures to messages safe to show users."""
    if isinstance(exc, ModelHTTPError):
        if exc.status_code == 429:
            return "You've sent too many requests. Please wait a minute before trying again."
        if exc.status_code in (503, 529):
            return (
                "The AI service is currently experiencing high demand. "
                "Please wait a moment and try again."
            )
        if exc.status_code in (401, 403):
            return "The AI service rejected the request credentials."
        return "The AI service returned an error. Please try again."

    exc_str = str(exc).lower()
    if isinstance(exc, httpx.TimeoutException) or "timed out" in exc_str:
        return (
            "The request took too long to complete. "
            "Please try a simpler question or try again later."
        )
    if isinstance(exc, ModelAPIError | httpx.HTTPError):
        return (
            "There was a network issue connecting to the AI service. "
            "Please try again."
        )
    if isinstance(exc, UnexpectedModelBehavior):
        return (
            "The AI had trouble generating a response. "
            "Please try rephrasing your question."
        )
    return "Something went wrong. Please try again."


def translate_model_error(exc: Exception) -> UpstreamCompletionError:
    """Map a pydantic-ai/httpx failure onto the stream error taxonomy."""
    message = _get_user_friendly_error_message(exc)
    if isinstance(exc, ModelHTTPError) and exc.status_code == 429:
        return UpstreamCompletionError(
            message=message,
            error_code="RATE_LIMITED",
            retry_after=get_settings().UPSTREAM_RETRY_AFTER_SECONDS,
        )
    return UpstreamCompletionError(message=message, error_code="API_ERROR")


def _read_usage(result: object) -> object | None:
    """`usage` is a method on some pydantic-ai result types and a property on others."""
    usage = getattr(result, "usage", None)
    if callable(usage):
        usage = usage()
    return usage


def _model_name(result: object) -> str | None:
    model_name = getattr(result, "model_name", None)
    if model_name is None:
        model_name = getattr(getattr(result, "response", None), "model_name", None)
    return str(model_name) if model_name else None


class AgentCompletion:
    """Adapter over the event stream of one pydantic-ai agent run.

    Text parts become text deltas and each built-in web search call becomes a
    `SearchProgress` with the running count.
    """

    def __init__(self, events: AsyncIterator[object]) -> None:
        self._events = events
        self._result: object | None = None
        self.search_count = 0

    async def chunks(self) -> AsyncIterator[str | SearchProgress]:
        async for event in self._events:
            if isinstance(event, AgentRunResultEvent):
                self._result = event.result
            elif isinstance(event, PartStartEvent):
                if isinstance(event.part, TextPart):
                    if event.part.content:
                        yield event.part.content
                elif isinstance(event.part, BuiltinToolCallPart):
                    self.search_count += 1
                    yield SearchProgress(count=self.search_count)
            elif isinstance(event, PartDeltaEvent) and isinstance(
                event.delta, TextPartDelta
            ):
                if event.delta.content_delta:
                    yield event.delta.content_delta

    def usage(self) -> StreamUsage | None:
        if self._result is None:
            return None
        usage = _read_usage(self._result)
        if usage is None:
            return None
        input_tokens, output_tokens = _get_tokens_from_usage(usage)
        return StreamUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model_name=_model_name(self._result),
        )


def build_assessment_agent() -> Agent[None, str]:
    """Claude agent with Anthropic's server-side web search enabled."""
    settings = get_settings()
    builtin_tools = []
    if settings.ASSESS_WEB_SEARCH_MAX_USES > 0:
        builtin_tools.append(WebSearchTool(max_uses=settings.ASSESS_WEB_SEARCH_MAX_USES))
    return Agent(
        get_assessment_model(),
        output_type=str,
        model_settings=ModelSettings(max_tokens=settings.ASSESS_MAX_TOKENS),
        builtin_tools=builtin_tools,
    )


class AgentStreamSource:
    """Claude stream source backed by a lazily created pydantic-ai Agent."""

    def __init__(self, agent: Agent[None, str] | None = None) -> None:
        # Lazy init avoids requiring the API key until a session needs it;
        # tests pass an agent built on FunctionModel.
        self._agent = agent

    def _get_agent(self) -> Agent[None, str]:
        if self._agent is None:
            self._agent = build_assessment_agent()
        return self._agent

    @asynccontextmanager
    async def open(self, prompt: str) -> AsyncIterator[AgentCompletion]:
        agent = self._get_agent()
        events = agent.run_stream_events(prompt)
        try:
            yield AgentCompletion(events)
        except (ModelAPIError, UnexpectedModelBehavior, httpx.HTTPError) as exc:
            logger.warning("Model stream failed: %s", exc.__class__.__name__)
            raise translate_model_error(exc) from exc
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()
