"""Orchestration core: trimming, cache annotation, tools, model and the agent loop."""

from .caching import annotate_for_cache
from .model import ChatModel, Model
from .orchestrator import Orchestrator, State
from .prompt import build_system_prompt
from .stream import (
    AggregatedResponse,
    FinalText,
    ModelDelta,
    StreamAggregator,
    StreamEvent,
    TextChunk,
    ToolCallAssembler,
    ToolCallChunk,
    flatten_content,
)
from .tools import Capability, ToolInvoker, load_capabilities
from .trimming import trim_messages

__all__ = [
    "AggregatedResponse",
    "Capability",
    "ChatModel",
    "FinalText",
    "Model",
    "ModelDelta",
    "Orchestrator",
    "State",
    "StreamAggregator",
    "StreamEvent",
    "TextChunk",
    "ToolCallAssembler",
    "ToolCallChunk",
    "ToolInvoker",
    "annotate_for_cache",
    "build_system_prompt",
    "flatten_content",
    "load_capabilities",
    "trim_messages",
]
