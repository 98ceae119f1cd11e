import json
import logging
from dataclasses import replace
from typing import Any, Dict, List, Sequence, Tuple

from ..models import Content, Message

logger = logging.getLogger(__name__)

CACHE_CONTROL: Dict[str, str] = {"type": "ephemeral"}
DEFAULT_CACHE_BUDGET = 3


def with_cache_control(content: Content) -> List[Any]:
    """Return content as text segments with cache control on the last one.

    Args:
        content: Plain text or a list of segments (dicts, strings or other values).

    Returns:
        A new list of segment dicts; an empty list becomes one empty text segment.
    """
    if isinstance(content, str):
        return [{"type": "text", "text": content, "cache_control": dict(CACHE_CONTROL)}]

    segments: List[Dict[str, Any]] = []
    for item in content:
        if isinstance(item, dict):
            segments.append(dict(item))
        elif isinstance(item, str):
            segments.append({"type": "text", "text": item})
        else:
            segments.append({"type": "text", "text": json.dumps(item, default=str)})
    if not segments:
        segments.append({"type": "text", "text": ""})
    segments[-1]["cache_control"] = dict(CACHE_CONTROL)
    return segments


def annotate_for_cache(
    messages: Sequence[Message], budget: int = DEFAULT_CACHE_BUDGET
) -> Tuple[List[Message], int]:
    """Mark the outgoing copy of ``messages`` for provider-side caching.

    The last message is always annotated first, then the second most recent
    user message. Never more than ``budget`` annotations; the input is untouched.

    Args:
        messages: Trimmed conversation about to be sent.
        budget: Maximum number of annotated messages.

    Returns:
        Tuple of (annotated copy, number of annotations used).
    """
    annotated = list(messages)
    used = 0

    def _annotate(index: int) -> None:
        nonlocal used
        if used >= budget:
            logger.debug("Cache control limit reached (%d), skipping message", budget)
            return
        message = annotated[index]
        annotated[index] = replace(message, content=with_cache_control(message.content))
        used += 1

    if annotated:
        _annotate(len(annotated) - 1)

    if used < budget:
        user_count = 0
        for i in range(len(annotated) - 1, -1, -1):
            if annotated[i].role == "user":
                user_count += 1
                if user_count == 2:
                    _annotate(i)
                    break

    logger.debug("Cache control blocks used: %d/%d", used, budget)
    return annotated, used
