"""
Speech synthesis for reply fragments.

Every fragment is synthesized in its own task as soon as it is enqueued, so a
long fragment never delays the ones behind it. Results are forwarded with the
fragment's interaction and index; the playback sequencer restores order.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, Set

import structlog

from src.callagent.events import Channel
from src.callagent.models import AudioFragment, ReplyFragment
from src.callagent.tts import TTSManager

logger = structlog.get_logger(__name__)


class SpeechSynthesizerQueue:
    def __init__(
        self,
        tts: TTSManager,
        *,
        split_marker: str = "•",
        on_lost: Optional[Callable[[int, int], Awaitable[None]]] = None,
    ):
        self._tts = tts
        self._split_marker = split_marker
        self._on_lost = on_lost
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self.audio: Channel[AudioFragment] = Channel("audio")
        self.failures = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def speakable_text(self, text: str) -> str:
        return text.replace(self._split_marker, "").strip() if self._split_marker else text.strip()

    async def enqueue(self, fragment: ReplyFragment) -> None:
        if self._closed:
            return
        task = asyncio.create_task(self._synthesize(fragment))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for every synthesis started so far to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        self.audio.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _synthesize(self, fragment: ReplyFragment) -> None:
        text = self.speakable_text(fragment.text)
        if not text:
            await self._lost(fragment, reason="empty_text")
            return

        started = time.time()
        try:
            audio = await self._tts.synthesize(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "TTS synthesis failed",
                interaction=fragment.interaction,
                index=fragment.index,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._lost(fragment, reason="synthesis_failed")
            return

        if self._closed:
            return

        if not audio:
            logger.warning(
                "TTS returned no audio",
                interaction=fragment.interaction,
                index=fragment.index,
            )
            await self._lost(fragment, reason="no_audio")
            return

        logger.debug(
            "TTS fragment ready",
            interaction=fragment.interaction,
            index=fragment.index,
            ms=round((time.time() - started) * 1000, 2),
        )
        await self.audio.publish(
            AudioFragment(
                interaction=fragment.interaction,
                index=fragment.index,
                audio=audio,
                label=text,
            )
        )

    async def _lost(self, fragment: ReplyFragment, *, reason: str) -> None:
        self.failures += 1
        logger.warning(
            "Dropping reply fragment",
            interaction=fragment.interaction,
            index=fragment.index,
            reason=reason,
        )
        if fragment.index is not None and self._on_lost and not self._closed:
            await self._on_lost(fragment.interaction, fragment.index)
