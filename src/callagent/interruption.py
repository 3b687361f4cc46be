"""
Barge-in detection.

Twilio keeps playing whatever it has buffered until told otherwise, so when
the caller starts talking over the agent we send `clear` and forget the
pending marks. Interim transcripts shorter than the threshold are treated as
noise or backchannel and never interrupt.
"""

from __future__ import annotations

import structlog

from src.callagent.models import Activity
from src.callagent.playback import OutboundWriter, PlaybackSequencer
from src.callagent.twilio_protocol import StreamSession

logger = structlog.get_logger(__name__)


class InterruptionMonitor:
    def __init__(
        self,
        session: StreamSession,
        writer: OutboundWriter,
        sequencer: PlaybackSequencer,
        *,
        min_chars: int = 5,
    ):
        self._session = session
        self._writer = writer
        self._sequencer = sequencer
        self.min_chars = min_chars
        self.interruptions = 0

    def should_interrupt(self, text: str) -> bool:
        return bool(self._session.pending_marks) and len(text or "") > self.min_chars

    async def on_activity(self, activity: Activity) -> None:
        if not self.should_interrupt(activity.text):
            return

        # Reset before awaiting: one clear per batch of pending marks.
        dropped_marks = self._session.clear_pending_marks()
        dropped_messages = self._sequencer.clear()
        self.interruptions += 1

        logger.info(
            "Caller interrupted, clearing stream",
            text=activity.text[:50],
            dropped_marks=dropped_marks,
            dropped_messages=dropped_messages,
        )

        clear_msg = self._session.clear()
        if clear_msg:
            await self._writer.send_now(clear_msg)
