"""
Typed publish/subscribe channels connecting the per-call components.

Each component exposes one Channel per event kind it produces. The call
pipeline subscribes the downstream components when it is built and closes
every channel when the call ends, which drops all subscriptions.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, List, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Handler = Callable[[T], Awaitable[None]]


class Channel(Generic[T]):
    """An ordered fan-out of events to async handlers."""

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Handler] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it again."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    async def publish(self, event: T) -> None:
        """
        Deliver an event to every handler, in subscription order.

        A failing handler is logged and does not stop delivery to the others.
        Events published after close() are dropped.
        """
        if self._closed:
            return

        for handler in list(self._handlers):
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Event handler failed", channel=self.name)

    def close(self) -> None:
        self._closed = True
        self._handlers.clear()
