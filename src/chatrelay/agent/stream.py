"""Streaming primitives: model deltas, tool-call assembly and aggregation."""

import json
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Union

from ..errors import InvalidToolArgumentsError
from ..models import Content, ToolCall

logger = logging.getLogger(__name__)


@dataclass
class ToolCallChunk:
    """One streamed fragment of a tool call, keyed by its position."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class ModelDelta:
    """One incremental unit of model output."""

    content: Content | None = None
    tool_calls: List[ToolCallChunk] = field(default_factory=list)


@dataclass
class StreamEvent:
    """Event produced by the orchestrator for downstream consumers."""

    kind: Literal["text", "tool_calls"]
    content: Content = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class TextChunk:
    content: str


@dataclass
class FinalText:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class AggregatedResponse:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)


def flatten_content(content: Content | None) -> str:
    """Concatenate the text of a delta.

    Plain strings are used as-is; in a list, strings are appended and dicts
    contribute their ``text`` field when present. Anything else is ignored.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict) and item.get("text"):
            parts.append(str(item["text"]))
    return "".join(parts)


class ToolCallAssembler:
    """Merge streamed tool-call fragments into complete ToolCalls."""

    def __init__(self) -> None:
        self._partial: List[Dict[str, str]] = []

    def add(self, chunk: ToolCallChunk) -> None:
        while len(self._partial) <= chunk.index:
            self._partial.append({"id": "", "name": "", "arguments": ""})
        tc = self._partial[chunk.index]
        if chunk.id:
            tc["id"] = chunk.id
        if chunk.name:
            tc["name"] = chunk.name
        if chunk.arguments:
            tc["arguments"] += chunk.arguments

    def finalize(self) -> List[ToolCall]:
        """Return complete calls in call order. Nameless fragments are dropped."""
        calls: List[ToolCall] = []
        for position, tc in enumerate(self._partial):
            if not tc["name"]:
                continue
            raw = tc["arguments"].strip()
            try:
                arguments: Any = json.loads(raw) if raw else {}
            except json.JSONDecodeError as e:
                logger.error("Invalid tool arguments for %s: %s", tc["name"], e)
                raise InvalidToolArgumentsError(tc["name"], raw) from e
            if not isinstance(arguments, dict):
                arguments = {"input": arguments}
            calls.append(
                ToolCall(id=tc["id"] or f"call_{position}", name=tc["name"], arguments=arguments)
            )
        return calls


class StreamAggregator:
    """Reduce orchestrator events to a live feed or one buffered response.

    ``text`` grows as events are consumed; if nothing textual was produced by
    the end, the fallback placeholder is used instead of an empty string.
    """

    def __init__(self, events: AsyncIterator[StreamEvent], fallback: str) -> None:
        self._events = events
        self._fallback = fallback
        self.text = ""
        self.tool_calls: List[ToolCall] = []
        self.has_content = False

    def _consume(self, event: StreamEvent) -> str:
        if event.kind == "tool_calls":
            self.tool_calls.extend(event.tool_calls)
            return ""
        text = flatten_content(event.content)
        if text:
            self.text += text
            self.has_content = True
        return text

    async def iter_chunks(self) -> AsyncIterator[Union[TextChunk, FinalText]]:
        """Incremental mode: forward every delta, then the full text.

        Yields:
            TextChunk for each text delta (or the fallback when there were
            none), then one FinalText with the whole response and tool calls.
        """
        async with aclosing(self._events) as events:
            async for event in events:
                text = self._consume(event)
                if text:
                    yield TextChunk(text)

        if not self.has_content:
            logger.warning("No content chunks received, sending fallback response")
            self.text = self._fallback
            yield TextChunk(self._fallback)

        yield FinalText(self.text, list(self.tool_calls))

    async def collect(self) -> AggregatedResponse:
        """Buffered mode: accumulate silently and return the final text.

        Returns:
            AggregatedResponse: Full text (fallback when empty) and tool calls.
        """
        async with aclosing(self._events) as events:
            async for event in events:
                self._consume(event)

        if not self.has_content:
            logger.warning("No response content received, using fallback response")
            self.text = self._fallback
        return AggregatedResponse(self.text, list(self.tool_calls))
