from datetime import datetime
from typing import Any, Dict
from zoneinfo import ZoneInfo

from ..settings import Settings
from .caching import with_cache_control


def build_system_prompt(settings: Settings, now: datetime | None = None) -> str:
    """Return the instructional prompt stamped with the local date and time.

    Args:
        settings: Supplies ``system_prompt`` and ``prompt_timezone``.
        now: Moment to stamp; defaults to the current time in that timezone.

    Returns:
        str: The prompt text.
    """
    current = now or datetime.now(ZoneInfo(settings.prompt_timezone))
    return (
        f"{settings.system_prompt.strip()}\n\n"
        f"Current date and time: {current.strftime('%Y-%m-%dT%H:%M:%S%z')}"
    )


def system_message(text: str) -> Dict[str, Any]:
    """Wire-format system message with its own cache annotation."""
    return {"role": "system", "content": with_cache_control(text)}
