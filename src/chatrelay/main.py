import asyncio
import json
import logging
import secrets
import string
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .agent import ChatModel, ToolInvoker, load_capabilities
from .events import BroadcastLogHandler, EventBus, utc_timestamp
from .models import Message
from .services.chat_service import ChatService
from .services.session_store import SessionStore
from .settings import Settings, get_settings

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
CHAT_EXAMPLE = {
    "messages": [{"role": "user", "content": "Hello!"}],
    "sessionId": "optional-session-id",
}
LOG_STREAM_KEEPALIVE_SECONDS = 15.0


def setup_server_logging(settings: Settings) -> logging.Logger:
    """Configure and return the package logger."""
    logger = logging.getLogger("chatrelay")
    if logger.handlers:
        return logger

    logger.setLevel(settings.log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    logs_dir = Path(settings.log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


def new_session_id(prefix: str = "chat", random_length: int = 9) -> str:
    """Return ``<prefix>_<epoch ms>[_<random>]``."""
    stamp = f"{prefix}_{int(time.time() * 1000)}"
    if not random_length:
        return stamp
    alphabet = string.ascii_lowercase + string.digits
    return f"{stamp}_{''.join(secrets.choice(alphabet) for _ in range(random_length))}"


settings = get_settings()
LOGGER = setup_server_logging(settings)
STARTED_AT = time.monotonic()


class ChatTurn(BaseModel):
    role: str = Field(..., description="'user', 'assistant' or 'system'")
    content: str | List[Any]


class ChatRequest(BaseModel):
    messages: List[ChatTurn] = Field(..., min_length=1, description="Ordered conversation turns")
    session_id: str | None = Field(
        default=None, validation_alias=AliasChoices("sessionId", "chatId", "session_id")
    )


class MessageRequest(BaseModel):
    message: str = Field(..., min_length=1)
    session_id: str | None = Field(
        default=None, validation_alias=AliasChoices("sessionId", "chatId", "session_id")
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load tools once, start the session sweeper, wire logs onto the event bus."""
    events = EventBus()
    log_handler = BroadcastLogHandler(events)
    log_handler.setFormatter(logging.Formatter("%(message)s"))
    LOGGER.addHandler(log_handler)

    LOGGER.info("Loading MCP tools at startup...")
    try:
        capabilities = await load_capabilities(settings)
    except Exception as e:
        LOGGER.exception("Failed to load MCP tools, continuing without tools: %s", e)
        capabilities = []
    LOGGER.info("Loaded %d tools", len(capabilities))

    store = SessionStore(
        max_history_length=settings.max_history_length,
        timeout_seconds=settings.session_timeout_seconds,
        cleanup_interval_seconds=settings.session_cleanup_interval_seconds,
    )
    await store.start()

    app.state.events = events
    app.state.chat_service = ChatService(
        store=store,
        model=ChatModel(settings, events=events),
        invoker=ToolInvoker(capabilities, events=events),
        settings=settings,
        events=events,
    )
    LOGGER.info("Server ready. Chat endpoint: /api/chat")
    LOGGER.info("OPENAI_API_KEY: %s", "set" if settings.openai_api_key else "missing")

    yield

    LOGGER.info("Shutting down...")
    await store.stop()
    LOGGER.removeHandler(log_handler)


app = FastAPI(
    title="chatrelay",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Reject malformed requests with a 400 and a usage example."""
    LOGGER.warning("Rejected malformed request to %s: %s", request.url.path, exc.errors())
    if request.url.path == "/api/messages":
        return JSONResponse(status_code=400, content={"error": "Message is required"})
    return JSONResponse(
        status_code=400,
        content={"error": "Messages array is required", "example": CHAT_EXAMPLE},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        error = "API endpoint not found" if request.url.path.startswith("/api/") else "Endpoint not found"
        return JSONResponse(status_code=404, content={"error": error, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.get("/")
async def root() -> Dict[str, Any]:
    return {"message": "chatrelay API", "status": "running", "timestamp": utc_timestamp()}


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {
        "status": "healthy",
        "uptime": time.monotonic() - STARTED_AT,
        "timestamp": utc_timestamp(),
    }


@app.get("/api/session/{session_id}")
async def session_info(session_id: str, request: Request) -> Dict[str, Any]:
    info = _chat_service(request).session_info(session_id)
    return {"success": True, **info, "timestamp": utc_timestamp()}


@app.get("/api/sessions/stats")
async def session_stats(request: Request) -> Dict[str, Any]:
    return {**_chat_service(request).store.stats(), "timestamp": utc_timestamp()}


@app.post("/api/chat")
async def chat(body: ChatRequest, request: Request, stream: bool = False):
    """Run one chat turn, buffered or as Server-Sent Events.

    Streaming is selected with ``Accept: text/event-stream`` or ``?stream=true``
    and produces ``chunk`` events followed by one ``done`` event.
    """
    service = _chat_service(request)
    session_id = body.session_id or new_session_id("chat")
    messages = [Message.from_dict(turn.model_dump()) for turn in body.messages]
    LOGGER.info("Processing chat request for session: %s (%d messages)", session_id, len(messages))

    wants_stream = stream or request.headers.get("accept") == "text/event-stream"
    if wants_stream:
        return StreamingResponse(
            _stream_chat(service, session_id, messages),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    try:
        return await service.complete_chat(session_id, messages)
    except Exception as e:
        LOGGER.exception("Chat error: %s", e)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Failed to process chat request",
                "message": str(e),
                "timestamp": utc_timestamp(),
            },
        )


async def _stream_chat(
    service: ChatService, session_id: str, messages: List[Message]
) -> AsyncIterator[str]:
    try:
        async for event in service.stream_chat(session_id, messages):
            yield _sse(event)
    except Exception as e:
        LOGGER.exception("Chat stream error: %s", e)
        yield _sse({"type": "error", "message": str(e), "sessionId": session_id})


@app.post("/api/messages")
async def messages(body: MessageRequest, request: Request):
    """Simple single-message endpoint that keeps history server-side."""
    session_id = body.session_id or new_session_id("simple", random_length=0)
    LOGGER.info("Received message for session %s", session_id)
    try:
        return await _chat_service(request).send_message(session_id, body.message)
    except Exception as e:
        LOGGER.exception("Message processing error: %s", e)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to process message", "message": str(e)},
        )


@app.get("/api/logs/stream")
async def log_stream(request: Request) -> StreamingResponse:
    """Server-Sent Events feed of every event published on the event bus."""
    events: EventBus = request.app.state.events

    async def feed() -> AsyncIterator[str]:
        with events.subscribe() as sub:
            LOGGER.info("Log stream client connected")
            yield _sse(
                {
                    "type": "log",
                    "message": "Log stream connected successfully",
                    "level": "success",
                    "timestamp": utc_timestamp(),
                }
            )
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(sub.get(), LOG_STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(event)
        LOGGER.info("Log stream client disconnected (%d events dropped)", sub.dropped)

    return StreamingResponse(feed(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.get("/api/logs/stats")
async def log_stats(request: Request) -> Dict[str, Any]:
    return {
        "connectedClients": request.app.state.events.subscriber_count,
        "droppedEvents": request.app.state.events.dropped_events,
        "uptime": time.monotonic() - STARTED_AT,
        "timestamp": utc_timestamp(),
    }


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    uvicorn.run("chatrelay.main:app", host=settings.host, port=settings.port)
