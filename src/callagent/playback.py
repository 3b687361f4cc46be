"""
Outbound playback: fragment sequencing and the Twilio writer.

Syntheses finish in any order; the sequencer restores reply order per
interaction before anything reaches Twilio:

    TTS (any order) -> PlaybackSequencer (per-interaction reorder)
        -> OutboundWriter queue -> single writer task -> Twilio WebSocket

Every ordering decision is made synchronously and enqueued immediately, and a
single task drains the queue, so the order on the wire is the delivery order
and the frames of two fragments never interleave.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

import structlog

from src.callagent.audio import get_audio_duration_ms
from src.callagent.events import Channel
from src.callagent.models import AudioFragment, MarkSent
from src.callagent.twilio_protocol import StreamSession

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    """Message to send to Twilio."""

    message: str
    is_audio: bool = True  # False for control (mark/clear)


class OutboundWriter:
    """
    Serializes writes to the Twilio WebSocket.

    A failed write stops the writer and is reported through `on_error`; the
    call pipeline treats that as the end of the session.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self._send_message = send_message
        self._on_error = on_error
        self._queue: asyncio.Queue[Optional[OutboundMessage]] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.messages_sent = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._closed or self.is_running:
            return
        self._task = asyncio.create_task(self._run())

    def enqueue_nowait(self, message: str, *, is_audio: bool = True) -> None:
        if self._closed or not message:
            return
        self._queue.put_nowait(OutboundMessage(message, is_audio=is_audio))

    async def send_now(self, message: str) -> None:
        """Send a control message ahead of anything queued (used for `clear`)."""
        if self._closed or not message:
            return
        try:
            await self._send_message(message)
            self.messages_sent += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(e)

    def _fail(self, error: Exception) -> None:
        logger.error("Outbound write failed", error=str(error))
        self._closed = True
        if self._on_error:
            self._on_error(error)

    def drop_queued(self) -> int:
        """Discard everything not yet written; returns the number of messages dropped."""
        dropped = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not None:
                dropped += 1
        return dropped

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def close(self) -> int:
        """Refuse further writes and discard the backlog; the task is left to `stop()`."""
        self._closed = True
        return self.drop_queued()

    async def stop(self) -> None:
        self.close()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self) -> None:
        try:
            while not self._closed:
                item = await self._queue.get()
                if item is None or self._closed:
                    break
                try:
                    await self._send_message(item.message)
                    self.messages_sent += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._fail(e)
                    break
        except asyncio.CancelledError:
            pass


class PlaybackSequencer:
    """
    Delivers audio fragments to Twilio in reply order.

    Per interaction it tracks the next fragment index it expects (starting at
    0). Early arrivals are buffered until the gap before them closes; fragments
    with index None skip ordering and go out immediately. Each delivery is sent
    as 20ms media frames followed by a mark, and announced on `mark_sent`.

    Once a fragment of a newer interaction is delivered, every older
    interaction is retired: its state is dropped along with anything of it
    that still arrives.
    """

    def __init__(self, session: StreamSession, writer: OutboundWriter):
        self._session = session
        self._writer = writer
        self._expected: Dict[int, int] = {}
        self._buffered: Dict[int, Dict[int, AudioFragment]] = {}
        self._lost: Dict[int, Set[int]] = {}
        self._retired_below: Optional[int] = None
        self._closed = False
        self.mark_sent: Channel[MarkSent] = Channel("mark_sent")

    def expected_index(self, interaction: int) -> int:
        return self._expected.get(interaction, 0)

    def buffered_indices(self, interaction: int) -> List[int]:
        return sorted(self._buffered.get(interaction, {}))

    async def submit(self, fragment: AudioFragment) -> None:
        if self._closed:
            return

        if fragment.index is None:
            sent = self._deliver(fragment)
            await self._announce(sent)
            return

        interaction = fragment.interaction
        if self._is_retired(interaction):
            logger.debug("Dropping audio of a superseded reply", interaction=interaction, index=fragment.index)
            return

        expected = self.expected_index(interaction)
        buffered = self._buffered.setdefault(interaction, {})

        if fragment.index < expected or fragment.index in buffered:
            logger.warning(
                "Dropping duplicate audio fragment",
                interaction=interaction,
                index=fragment.index,
                expected=expected,
            )
            return

        if fragment.index > expected:
            buffered[fragment.index] = fragment
            logger.debug(
                "Audio fragment buffered",
                interaction=interaction,
                index=fragment.index,
                expected=expected,
            )
            return

        sent = [self._deliver(fragment)]
        self._expected[interaction] = expected + 1
        self._retire_before(interaction)
        sent.extend(self._drain(interaction))
        await self._announce(*sent)

    async def skip(self, interaction: int, index: int) -> None:
        """
        Record that a fragment will never arrive (its synthesis failed).

        The expectation moves past it once reached, so later fragments of the
        interaction are not held back forever.
        """
        if self._closed or self._is_retired(interaction) or index < self.expected_index(interaction):
            return
        self._lost.setdefault(interaction, set()).add(index)
        logger.warning("Audio fragment lost, skipping", interaction=interaction, index=index)
        sent = self._drain(interaction)
        if sent:
            self._retire_before(interaction)
        await self._announce(*sent)

    def clear(self) -> int:
        """Drop audio queued for Twilio but not yet written."""
        return self._writer.drop_queued()

    def close(self) -> None:
        self._closed = True
        self._buffered.clear()
        self._lost.clear()
        self.mark_sent.close()

    def _is_retired(self, interaction: int) -> bool:
        return self._retired_below is not None and interaction < self._retired_below

    def _retire_before(self, interaction: int) -> None:
        if self._retired_below is not None and interaction <= self._retired_below:
            return
        self._retired_below = interaction
        for state in (self._expected, self._buffered, self._lost):
            for old in [key for key in state if key < interaction]:
                del state[old]

    def _drain(self, interaction: int) -> List[Optional[MarkSent]]:
        sent: List[Optional[MarkSent]] = []
        buffered = self._buffered.get(interaction, {})
        lost = self._lost.get(interaction, set())
        while True:
            expected = self.expected_index(interaction)
            if expected in lost:
                lost.discard(expected)
                self._expected[interaction] = expected + 1
                continue
            fragment = buffered.pop(expected, None)
            if fragment is None:
                break
            sent.append(self._deliver(fragment))
            self._expected[interaction] = expected + 1
        return sent

    def _deliver(self, fragment: AudioFragment) -> Optional[MarkSent]:
        messages = self._session.media_frames(fragment.audio)
        if not messages:
            logger.warning(
                "No stream to deliver audio to",
                interaction=fragment.interaction,
                index=fragment.index,
            )
            return None

        label = self._session.next_mark_label()
        self._session.add_pending_mark(label)
        for message in messages:
            self._writer.enqueue_nowait(message, is_audio=True)
        self._writer.enqueue_nowait(self._session.mark(label), is_audio=False)

        logger.info(
            "TTS -> Twilio",
            interaction=fragment.interaction,
            index=fragment.index,
            mark=label,
            audio_ms=round(get_audio_duration_ms(fragment.audio)),
            text=fragment.label[:60],
        )
        return MarkSent(label=label, interaction=fragment.interaction, index=fragment.index)

    async def _announce(self, *sent: Optional[MarkSent]) -> None:
        for event in sent:
            if event is not None:
                await self.mark_sent.publish(event)
