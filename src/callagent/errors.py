"""Exceptions raised by the call pipeline."""


class CallAgentError(Exception):
    """Base class for call pipeline errors."""


class ToolError(CallAgentError):
    """A declared side effect could not be executed."""


class UnknownToolError(ToolError):
    """
    The model asked for a side effect that has no registered handler.

    The declared set is closed, so this is a configuration error and ends turn
    processing for the call.
    """

    def __init__(self, name: str):
        super().__init__(f"No handler registered for tool '{name}'")
        self.name = name


class ToolArgumentsError(ToolError):
    """Streamed tool arguments could not be parsed, even after recovery."""

    def __init__(self, raw: str):
        super().__init__(f"Unparseable tool arguments: {raw[:120]!r}")
        self.raw = raw


class OutboundChannelError(CallAgentError):
    """Writing to the Twilio WebSocket failed; the session must end."""
