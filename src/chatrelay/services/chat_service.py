import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Sequence

from ..agent import (
    FinalText,
    Model,
    Orchestrator,
    StreamAggregator,
    TextChunk,
    ToolInvoker,
    build_system_prompt,
)
from ..events import EventBus, utc_timestamp
from ..models import Message
from ..settings import Settings
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class ChatService:
    """Glue between requests, session history and the orchestrator.

    Each request merges stored history with the incoming messages, runs one
    Orchestrator to completion and writes the final turn back. Requests on
    the same session id are serialized with the store's per-session lock.
    """

    def __init__(
        self,
        store: SessionStore,
        model: Model,
        invoker: ToolInvoker,
        settings: Settings,
        events: EventBus | None = None,
    ) -> None:
        self._store = store
        self._model = model
        self._invoker = invoker
        self._settings = settings
        self._events = events or EventBus()

    @property
    def store(self) -> SessionStore:
        return self._store

    def session_info(self, session_id: str) -> Dict[str, Any]:
        """Describe the stored history of a session.

        Args:
            session_id: Session identifier (str).

        Returns:
            dict: ``sessionId``, ``messageCount`` and ``hasHistory``.
        """
        history = self._store.get(session_id)
        return {
            "sessionId": session_id,
            "messageCount": len(history),
            "hasHistory": len(history) > 0,
        }

    def merge_history(self, session_id: str, incoming: Sequence[Message]) -> List[Message]:
        """Combine stored history with the request's messages.

        A single user message continues the stored conversation; anything
        else is taken as the full conversation sent by the client.

        Args:
            session_id: Session identifier (str).
            incoming: Messages from the request, in order.

        Returns:
            List[Message]: The conversation to run the orchestrator on.
        """
        history = self._store.get(session_id)
        if len(incoming) == 1 and incoming[0].role == "user":
            return history + [incoming[0]]
        return list(incoming)

    def _orchestrator(self) -> Orchestrator:
        settings = self._settings
        return Orchestrator(
            model=self._model,
            invoker=self._invoker,
            system_prompt=build_system_prompt(settings),
            events=self._events,
            max_context_messages=settings.max_context_messages,
            cache_budget=settings.cache_budget,
            max_tool_iterations=settings.max_tool_iterations,
        )

    def _persist(self, session_id: str, merged: Sequence[Message], response: str) -> None:
        latest_user = [m for m in merged if m.role == "user"][-1:]
        self._store.append(
            session_id, latest_user + [Message(role="assistant", content=response)]
        )

    async def stream_chat(
        self, session_id: str, messages: Sequence[Message]
    ) -> AsyncIterator[Dict[str, Any]]:
        """Run a chat turn and stream its output.

        Args:
            session_id: Session identifier (str).
            messages: Messages from the request, in order.

        Yields:
            dict: ``chunk`` events as text arrives, then one ``done`` event
            carrying the full response.
        """
        async with self._store.lock(session_id):
            merged = self.merge_history(session_id, messages)
            logger.info("Processing streaming chat for session %s (%d messages)", session_id, len(merged))

            aggregator = StreamAggregator(
                self._orchestrator().run(merged), self._settings.fallback_response
            )
            final: FinalText | None = None
            async with aclosing(aggregator.iter_chunks()) as items:
                async for item in items:
                    if isinstance(item, TextChunk):
                        yield {"type": "chunk", "content": item.content, "sessionId": session_id}
                    else:
                        final = item

            full_response = final.text if final else self._settings.fallback_response
            self._persist(session_id, merged, full_response)

        yield {"type": "done", "fullResponse": full_response, "sessionId": session_id}

    async def complete_chat(
        self, session_id: str, messages: Sequence[Message]
    ) -> Dict[str, Any]:
        """Run a chat turn and return the buffered response object.

        Args:
            session_id: Session identifier (str).
            messages: Messages from the request, in order.

        Returns:
            dict: ``success``, ``response``, ``sessionId``, ``timestamp`` and,
            when tools were called, ``toolCalls``.
        """
        async with self._store.lock(session_id):
            merged = self.merge_history(session_id, messages)
            logger.info("Processing chat for session %s (%d messages)", session_id, len(merged))

            aggregator = StreamAggregator(
                self._orchestrator().run(merged), self._settings.fallback_response
            )
            result = await aggregator.collect()
            self._persist(session_id, merged, result.text)

        response: Dict[str, Any] = {
            "success": True,
            "response": result.text,
            "sessionId": session_id,
            "timestamp": utc_timestamp(),
        }
        if result.tool_calls:
            response["toolCalls"] = [tc.to_dict() for tc in result.tool_calls]
        return response

    async def send_message(self, session_id: str, text: str) -> Dict[str, Any]:
        """Single-message mode: append one user message to the stored history.

        Args:
            session_id: Session identifier (str).
            text: The user's message (str).

        Returns:
            dict: The stripped ``response`` (fallback when empty) with the echoed
            ``received`` text and the ``sessionId``.
        """
        user_message = Message(role="user", content=text)
        async with self._store.lock(session_id):
            merged = self._store.get(session_id) + [user_message]
            aggregator = StreamAggregator(
                self._orchestrator().run(merged), self._settings.fallback_response
            )
            result = await aggregator.collect()
            response = result.text.strip() or self._settings.fallback_response
            self._store.append(
                session_id, [user_message, Message(role="assistant", content=response)]
            )

        return {
            "success": True,
            "message": "Message received and processed",
            "response": response,
            "received": text,
            "sessionId": session_id,
            "timestamp": utc_timestamp(),
        }
