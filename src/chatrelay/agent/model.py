import logging
from typing import Any, AsyncIterator, Dict, List, Protocol

import openai
from openai import AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..events import EventBus
from ..settings import Settings
from .stream import ModelDelta, ToolCallChunk

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
)


class Model(Protocol):
    """Anything that turns an assembled prompt into a stream of deltas."""

    def stream(
        self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ModelDelta]:
        ...


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Model request failed (attempt %d): %s; retrying",
        retry_state.attempt_number,
        exc,
    )


def usage_report(usage: Any) -> Dict[str, int]:
    """Normalize a chat-completions usage object into plain counters."""
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    cache_read = getattr(prompt_details, "cached_tokens", None) or getattr(
        usage, "cache_read_input_tokens", 0
    )
    input_tokens = getattr(usage, "prompt_tokens", 0) or 0
    output_tokens = getattr(usage, "completion_tokens", 0) or 0
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "cache_creation_input_tokens": getattr(usage, "cache_creation_input_tokens", 0) or 0,
        "cache_read_input_tokens": cache_read or 0,
    }


class ChatModel:
    """Streaming client for an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        settings: Settings,
        events: EventBus | None = None,
        client: AsyncOpenAI | None = None,
        retry_wait: Any = None,
    ) -> None:
        self._settings = settings
        self._events = events
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=30)
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
        )

    async def _open_stream(self, **kwargs: Any) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            wait=self._retry_wait,
            stop=stop_after_attempt(max(1, self._settings.model_retry_attempts)),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._client.chat.completions.create(**kwargs)

    async def stream(
        self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ModelDelta]:
        """Stream one model turn.

        Opening the stream is retried on transient provider errors; once
        deltas are flowing, errors propagate.

        Args:
            messages: Assembled prompt in chat-completions wire format.
            tools: Tool schemas; when empty, no tools are offered.

        Yields:
            ModelDelta: Text and tool-call fragments as they arrive.
        """
        settings = self._settings
        logger.info("Starting LLM call (messages=%d, tools=%d)", len(messages), len(tools))

        kwargs: Dict[str, Any] = dict(
            model=settings.model,
            messages=messages,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            stream=True,
            stream_options={"include_usage": True},
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        stream = await self._open_stream(**kwargs)

        usage = None
        async for chunk in stream:
            if getattr(chunk, "usage", None) is not None:
                usage = chunk.usage
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta is None:
                continue

            tool_chunks = [
                ToolCallChunk(
                    index=tc.index if tc.index is not None else 0,
                    id=tc.id,
                    name=tc.function.name if tc.function else None,
                    arguments=tc.function.arguments if tc.function else None,
                )
                for tc in (delta.tool_calls or [])
            ]
            if delta.content or tool_chunks:
                yield ModelDelta(content=delta.content, tool_calls=tool_chunks)

        logger.info("End LLM call")
        if usage is not None:
            report = usage_report(usage)
            logger.info("Token usage: %s", report)
            if self._events is not None:
                self._events.emit("model_usage", **report)
