"""
Per-call session controller.

Wires the call components together for the lifetime of one Twilio Media
Stream:

    Twilio media -> TranscriptionRelay
        activity   -> InterruptionMonitor (clear on barge-in)
        transcript -> turn queue -> CompletionSegmenter
    CompletionSegmenter fragments -> SpeechSynthesizerQueue
        -> PlaybackSequencer -> OutboundWriter -> Twilio

Inbound events are handled in arrival order by the server's receive loop.
Turns are processed one at a time by a worker task so a slow completion never
blocks audio forwarding.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from src.callagent.config import get_config
from src.callagent.errors import UnknownToolError
from src.callagent.interruption import InterruptionMonitor
from src.callagent.llm import create_llm_client
from src.callagent.models import SCRIPTED_INTERACTION, FinalTranscript, MarkSent
from src.callagent.playback import OutboundWriter, PlaybackSequencer
from src.callagent.segmenter import CompletionSegmenter
from src.callagent.stt import TranscriptionRelay
from src.callagent.synthesizer import SpeechSynthesizerQueue
from src.callagent.tools import ToolRegistry
from src.callagent.tts import TTSManager
from src.callagent.twilio_protocol import (
    ConnectedEvent,
    DtmfEvent,
    MarkEvent,
    MediaEvent,
    StartEvent,
    StopEvent,
    StreamSession,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: int = 0
    failed_turns: int = 0
    fragments_played: int = 0
    marks_acknowledged: int = 0
    interruptions: int = 0
    synthesis_failures: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "turns": self.turns,
            "failed_turns": self.failed_turns,
            "fragments_played": self.fragments_played,
            "marks_acknowledged": self.marks_acknowledged,
            "interruptions": self.interruptions,
            "synthesis_failures": self.synthesis_failures,
        }


class CallPipeline:
    """
    One call's session: identity, event dispatch, component wiring, teardown.

    Components can be injected (tests); by default they are built from config.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        config: Optional[Any] = None,
        *,
        relay: Optional[TranscriptionRelay] = None,
        tts: Optional[TTSManager] = None,
        llm_client: Optional[Any] = None,
        registry: Optional[ToolRegistry] = None,
    ):
        self.config = config or get_config()
        self._session = StreamSession()
        self._writer = OutboundWriter(send_message, on_error=self._on_outbound_error)
        self._sequencer = PlaybackSequencer(self._session, self._writer)
        self._tts = tts or TTSManager(self.config)
        self._synthesizer = SpeechSynthesizerQueue(
            self._tts,
            split_marker=self.config.split_marker,
            on_lost=self._sequencer.skip,
        )
        self._relay = relay or TranscriptionRelay(self.config)
        self._segmenter = CompletionSegmenter(
            llm_client if llm_client is not None else create_llm_client(self.config),
            self.config,
            registry=registry,
        )
        self._interruption = InterruptionMonitor(
            self._session,
            self._writer,
            self._sequencer,
            min_chars=self.config.min_interruption_chars,
        )

        self._turn_queue: asyncio.Queue[str] = asyncio.Queue()
        self._turn_worker_task: Optional[asyncio.Task] = None
        self._stt_start_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._is_running = False
        self._stopped = False
        self._logged_first_media = False
        self._call_metrics = CallMetrics()

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def call_sid(self) -> str:
        return self._session.call_sid

    @property
    def stream_sid(self) -> str:
        return self._session.stream_sid

    @property
    def session(self) -> StreamSession:
        return self._session

    @property
    def segmenter(self) -> CompletionSegmenter:
        return self._segmenter

    @property
    def metrics(self) -> CallMetrics:
        return self._call_metrics

    async def start(self) -> None:
        """Subscribe the components to each other and start the workers."""
        if self._is_running or self._stopped:
            return
        logger.info("Starting call pipeline")

        self._unsubscribers = [
            self._relay.activity.subscribe(self._interruption.on_activity),
            self._relay.transcripts.subscribe(self._on_transcript),
            self._segmenter.fragments.subscribe(self._synthesizer.enqueue),
            self._synthesizer.audio.subscribe(self._sequencer.submit),
            self._sequencer.mark_sent.subscribe(self._on_mark_sent),
        ]

        self._tts.start()
        self._writer.start()
        self._is_running = True

        if self._turn_worker_task is None or self._turn_worker_task.done():
            self._turn_worker_task = asyncio.create_task(self._turn_worker())

        logger.info("Call pipeline started")

    async def stop(self) -> None:
        """Stop all components. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._is_running = False
        logger.info("Stopping call pipeline", call_sid=self.call_sid)

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        # Nothing may reach Twilio from here on.
        self._writer.close()
        self._segmenter.close()
        self._sequencer.close()

        tasks_to_cancel: List[asyncio.Task] = []
        for task in (self._turn_worker_task, self._stt_start_task):
            if task and not task.done():
                task.cancel()
                tasks_to_cancel.append(task)
        if tasks_to_cancel:
            await asyncio.gather(*tasks_to_cancel, return_exceptions=True)

        await self._synthesizer.close()
        await self._writer.stop()
        await self._relay.stop()
        await self._tts.stop()

        self._call_metrics.end_time = time.time()
        self._call_metrics.interruptions = self._interruption.interruptions
        self._call_metrics.synthesis_failures = self._synthesizer.failures
        logger.info("Call pipeline stopped", metrics=self._call_metrics.to_dict())

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message string
        """
        if self._stopped:
            return

        try:
            event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if isinstance(event, MediaEvent):
            await self._handle_media(event)

        elif isinstance(event, MarkEvent):
            if self._session.acknowledge(event.mark.name):
                self._call_metrics.marks_acknowledged += 1

        elif isinstance(event, StartEvent):
            await self._handle_start(event)

        elif isinstance(event, StopEvent):
            self._session.end()
            await self.stop()

        elif isinstance(event, DtmfEvent):
            logger.info("DTMF received", digit=event.dtmf.digit)

        elif isinstance(event, ConnectedEvent):
            logger.debug("Twilio connected", protocol=event.protocol)

    async def _handle_start(self, event: StartEvent) -> None:
        self._session.begin(event)
        self._segmenter.set_call_metadata(event.call_sid)

        self._call_metrics.call_sid = event.call_sid
        self._call_metrics.stream_sid = event.sid

        # Start STT in the background so a slow handshake doesn't delay the greeting.
        if self._stt_start_task and not self._stt_start_task.done():
            self._stt_start_task.cancel()
        self._stt_start_task = asyncio.create_task(self._start_stt_background())

        await self._segmenter.say(self.config.greeting, SCRIPTED_INTERACTION)

    async def _start_stt_background(self) -> None:
        """Start STT and log success/failure without blocking call audio output."""
        try:
            ok = await self._relay.start()
            if ok:
                logger.info("STT ready")
            else:
                logger.error("STT failed to start")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("STT start task error", error=str(e))

    async def _handle_media(self, event: MediaEvent) -> None:
        """Forward caller audio (mu-law, untouched) to transcription."""
        audio = event.media.payload
        if not self._is_running or not audio:
            return

        if not self._logged_first_media:
            self._logged_first_media = True
            logger.info(
                "Inbound media received",
                call_sid=self.call_sid,
                stream_sid=self.stream_sid,
                bytes=len(audio),
                track=event.media.track,
            )
        await self._relay.send_audio(audio)

    async def _on_transcript(self, transcript: FinalTranscript) -> None:
        if not self._is_running or not transcript.text:
            return
        await self._turn_queue.put(transcript.text)

    async def _on_mark_sent(self, event: MarkSent) -> None:
        self._call_metrics.fragments_played += 1
        logger.debug(
            "Mark pending",
            mark=event.label,
            interaction=event.interaction,
            index=event.index,
            pending=len(self._session.pending_marks),
        )

    def _next_interaction(self) -> int:
        call_state = self._session.call_state
        if call_state is None:
            interaction = self._call_metrics.turns
        else:
            interaction = call_state.next_interaction()
        self._call_metrics.turns += 1
        return interaction

    async def _turn_worker(self) -> None:
        """Background worker that processes final transcripts sequentially."""
        try:
            while self._is_running:
                text = await self._turn_queue.get()
                try:
                    interaction = self._next_interaction()
                    logger.info("STT -> LLM", interaction=interaction, text=text[:80])
                    await self._segmenter.submit_turn(text, interaction)
                except UnknownToolError as e:
                    self._call_metrics.failed_turns += 1
                    logger.error("Turn processing halted", error=str(e), tool=e.name)
                    break
                except Exception as e:
                    self._call_metrics.failed_turns += 1
                    logger.error("Turn failed", error_type=type(e).__name__, error=str(e))
                finally:
                    self._turn_queue.task_done()
        except asyncio.CancelledError:
            pass

    def _on_outbound_error(self, error: Exception) -> None:
        if self._stopped or self._stop_task is not None:
            return
        logger.error("Outbound channel failed, ending call", call_sid=self.call_sid, error=str(error))
        self._stop_task = asyncio.create_task(self.stop())


async def create_pipeline(
    send_message: Callable[[str], Awaitable[None]],
    config: Optional[Any] = None,
) -> CallPipeline:
    """
    Create and start a new call pipeline.

    Args:
        send_message: Function to send messages to Twilio WebSocket

    Returns:
        Initialized and started CallPipeline
    """
    pipeline = CallPipeline(send_message, config)
    await pipeline.start()
    return pipeline
