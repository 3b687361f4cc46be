"""
Stand-ins for OpenAI streaming chat-completion responses.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock


def text_chunk(content=None, finish_reason=None):
    """A streamed chunk carrying text."""
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                delta=SimpleNamespace(content=content, tool_calls=None),
                finish_reason=finish_reason,
            )
        ]
    )


def tool_chunk(name=None, arguments=None, finish_reason=None, index=0):
    """A streamed chunk carrying one shard of the tool call at `index`."""
    call = SimpleNamespace(index=index, function=SimpleNamespace(name=name, arguments=arguments))
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                delta=SimpleNamespace(content=None, tool_calls=[call]),
                finish_reason=finish_reason,
            )
        ]
    )


def finish_chunk(finish_reason):
    return text_chunk(None, finish_reason)


class FakeStream:
    """Async iterator over prepared chunks, optionally failing at the end."""

    def __init__(self, chunks, error=None):
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def close(self):
        self.closed = True


def fake_client(*streams):
    """A client whose chat.completions.create returns the given streams in turn."""
    create = AsyncMock(side_effect=list(streams))
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
