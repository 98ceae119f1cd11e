class ChatRelayError(Exception):
    """Base class for errors raised by the orchestration core."""


class CapabilityNotFoundError(ChatRelayError):
    """The model asked for a tool that is not in the capability table."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Capability not found: {name}")
        self.name = name


class ToolLoopExceededError(ChatRelayError):
    """The agent kept requesting tools past the configured iteration limit."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Tool loop exceeded {limit} iterations")
        self.limit = limit


class InvalidToolArgumentsError(ChatRelayError):
    """The model produced tool arguments that are not valid JSON."""

    def __init__(self, name: str, raw: str) -> None:
        super().__init__(f"Invalid arguments for tool {name}: {raw[:200]!r}")
        self.name = name
        self.raw = raw
