from typing import List, Sequence

from ..models import Message


def trim_messages(messages: Sequence[Message], max_messages: int) -> List[Message]:
    """Return the most recent messages that fit in ``max_messages``.

    Each message counts as one unit. A leading system message is always kept
    and counts toward the budget. The kept window always begins at a user turn
    so that no reply is sent without the request it answers; a window with no
    user turn in it is dropped entirely.

    Args:
        messages: Conversation in order, optionally starting with a system message.
        max_messages: Maximum number of messages in the result.

    Returns:
        A new list of at most ``max_messages`` messages (the system message
        alone when the budget leaves no room for anything else).
    """
    if not messages:
        return []

    head: List[Message] = []
    rest = list(messages)
    if rest[0].role == "system":
        head = [rest[0]]
        rest = rest[1:]

    budget = max(max_messages - len(head), 0)
    if budget == 0:
        return head

    start = max(len(rest) - budget, 0)
    first_user = next(
        (i for i in range(start, len(rest)) if rest[i].role == "user"), None
    )
    if first_user is None:
        return head
    return head + rest[first_user:]
