"""Agent/tool state machine driving the model and external capabilities."""

import enum
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, List, Sequence

from ..errors import ToolLoopExceededError
from ..events import EventBus
from ..models import Message, ToolCall
from .caching import DEFAULT_CACHE_BUDGET, annotate_for_cache
from .model import Model
from .prompt import system_message
from .stream import StreamEvent, ToolCallAssembler, flatten_content
from .tools import ToolInvoker
from .trimming import trim_messages

logger = logging.getLogger(__name__)


class State(str, enum.Enum):
    AGENT = "agent"
    TOOL = "tool"
    DONE = "done"


def _tool_result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class Orchestrator:
    """Run one conversation turn: ask the model, call tools, repeat.

    ``run`` is an async generator of StreamEvents. Text deltas are forwarded
    as soon as the model produces them; a ``tool_calls`` event follows each
    model turn that requests tools. The loop ends when the model answers
    without tool calls, or raises ToolLoopExceededError after
    ``max_tool_iterations`` tool rounds. Model and tool errors propagate.
    """

    def __init__(
        self,
        model: Model,
        invoker: ToolInvoker,
        system_prompt: str,
        events: EventBus | None = None,
        max_context_messages: int = 15,
        cache_budget: int = DEFAULT_CACHE_BUDGET,
        max_tool_iterations: int = 25,
    ) -> None:
        self._model = model
        self._invoker = invoker
        self._system_prompt = system_prompt
        self._events = events or EventBus()
        self._max_context_messages = max_context_messages
        self._cache_budget = cache_budget
        self._max_tool_iterations = max_tool_iterations

        self.visited: List[State] = []
        self.messages: List[Message] = []
        self.new_messages: List[Message] = []
        self.final_message: Message | None = None

    def _enter(self, state: State) -> None:
        previous = self.visited[-1].value if self.visited else None
        self.visited.append(state)
        logger.debug("State transition: %s -> %s", previous, state.value)
        self._events.emit("state_transition", source=previous, target=state.value)

    def _record(self, message: Message) -> None:
        self.messages.append(message)
        self.new_messages.append(message)

    def _assemble_prompt(self) -> List[dict]:
        trimmed = trim_messages(self.messages, self._max_context_messages)
        annotated, used = annotate_for_cache(trimmed, self._cache_budget)
        # the instructional prefix carries its own annotation
        logger.info("Cache control blocks used: %d (+1 system message)", used)
        self._events.emit("cache_annotations", used=used, budget=self._cache_budget)
        prompt = [system_message(self._system_prompt)]
        prompt.extend(m.to_openai() for m in annotated)
        return prompt

    async def _agent(self) -> AsyncIterator[StreamEvent]:
        prompt = self._assemble_prompt()
        assembler = ToolCallAssembler()
        text_parts: List[str] = []

        async with aclosing(self._model.stream(prompt, self._invoker.schemas())) as deltas:
            async for delta in deltas:
                if delta.content:
                    text_parts.append(flatten_content(delta.content))
                    yield StreamEvent(kind="text", content=delta.content)
                for chunk in delta.tool_calls:
                    assembler.add(chunk)

        tool_calls = assembler.finalize()
        self._record(
            Message(role="assistant", content="".join(text_parts), tool_calls=tuple(tool_calls))
        )
        if tool_calls:
            for index, tc in enumerate(tool_calls, 1):
                logger.info("Tool call %d: name=%s args=%s id=%s", index, tc.name, tc.arguments, tc.id)
            yield StreamEvent(kind="tool_calls", tool_calls=tool_calls)

    async def _tool(self, tool_calls: Sequence[ToolCall]) -> None:
        for tc in tool_calls:
            result = await self._invoker.call(tc.name, tc.arguments)
            self._record(
                Message(role="tool", content=_tool_result_text(result), tool_call_id=tc.id)
            )

    async def run(self, messages: Sequence[Message]) -> AsyncIterator[StreamEvent]:
        """Drive the conversation from AGENT until DONE.

        Args:
            messages: Conversation so far, ending with the user's request.

        Yields:
            StreamEvent: ``text`` deltas as the model produces them and one
            ``tool_calls`` event per model turn that requested tools.

        Raises:
            ToolLoopExceededError: More than ``max_tool_iterations`` tool rounds.
        """
        self.messages = list(messages)
        self.new_messages = []
        self.visited = []
        self.final_message = None

        tool_rounds = 0
        state = State.AGENT
        while state is not State.DONE:
            self._enter(state)
            if state is State.AGENT:
                async with aclosing(self._agent()) as events:
                    async for event in events:
                        yield event
                last = self.messages[-1]
                if last.tool_calls:
                    logger.info("Routing to tools: %s", ", ".join(tc.name for tc in last.tool_calls))
                    state = State.TOOL
                else:
                    logger.info("Ending conversation")
                    state = State.DONE
            else:
                tool_rounds += 1
                if tool_rounds > self._max_tool_iterations:
                    logger.error("Tool loop exceeded %d iterations", self._max_tool_iterations)
                    raise ToolLoopExceededError(self._max_tool_iterations)
                await self._tool(self.messages[-1].tool_calls)
                logger.info("Routing back to agent from tool")
                state = State.AGENT

        self._enter(State.DONE)
        self.final_message = self.messages[-1]
