"""
Deepgram Speech-to-Text streaming client and the transcription relay.

Twilio's mu-law 8kHz goes to Deepgram untouched (encoding=mulaw). Results are
republished as two independent event kinds:

- Activity: every interim result with text. Cheap and early, used only to
  detect that the caller is talking over the agent.
- FinalTranscript: one per finished utterance. Final segments accumulate until
  Deepgram marks `speech_final` (endpointing) or sends `UtteranceEnd`.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.callagent.config import get_config
from src.callagent.events import Channel
from src.callagent.models import Activity, FinalTranscript

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    confidence: float = 0.0
    speech_final: bool = False
    timestamp: float = field(default_factory=time.time)
    latency_ms: float = 0.0


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    total_transcripts: int = 0
    final_transcripts: int = 0
    avg_latency_ms: float = 0.0

    def record_transcript(self, is_final: bool, latency_ms: float) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1
        if self.total_transcripts > 0:
            self.avg_latency_ms = (
                (self.avg_latency_ms * (self.total_transcripts - 1) + latency_ms)
                / self.total_transcripts
            )


def build_listen_url(config: Any) -> str:
    params = {
        "model": config.deepgram_model,
        "encoding": "mulaw",
        "sample_rate": 8000,
        "channels": 1,
        "punctuate": "true",
        "interim_results": "true",
        "endpointing": config.deepgram_endpointing_ms,
        "utterance_end_ms": config.deepgram_utterance_end_ms,
        "vad_events": "true",
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        on_transcript: Optional[Callable[[TranscriptionResult], Awaitable[None]]] = None,
        on_utterance_end: Optional[Callable[[], Awaitable[None]]] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_transcript = on_transcript
        self._on_utterance_end = on_utterance_end
        self._ws = None
        self._is_connected = False
        self._metrics = STTMetrics()
        self._last_audio_time: float = 0.0
        self._receive_task = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        try:
            headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
            logger.info("Connecting to Deepgram", model=self.config.deepgram_model)
            self._ws = await websockets.connect(
                build_listen_url(self.config),
                additional_headers=headers,
                open_timeout=10,
            )
            self._is_connected = True
            logger.info("Deepgram STT connected")

            # Start receiving messages
            self._receive_task = asyncio.create_task(self._receive_loop())
            return True

        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        was_connected = self._is_connected
        self._is_connected = False

        if self._ws and was_connected:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("Deepgram CloseStream not sent", error=str(e))

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws:
            return

        try:
            self._last_audio_time = time.time()
            self._metrics.total_audio_ms += len(audio_bytes) / 8
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                    await self._handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")

        if msg_type == "Results":
            alternatives = data.get("channel", {}).get("alternatives", [])
            if not alternatives:
                return

            transcript = alternatives[0].get("transcript", "") or ""
            latency_ms = 0.0
            if self._last_audio_time > 0:
                latency_ms = (time.time() - self._last_audio_time) * 1000

            result = TranscriptionResult(
                text=transcript,
                is_final=bool(data.get("is_final", False)),
                confidence=alternatives[0].get("confidence", 0.0),
                speech_final=bool(data.get("speech_final", False)),
                latency_ms=latency_ms,
            )
            if transcript:
                self._metrics.record_transcript(result.is_final, latency_ms)

            if self._on_transcript:
                await self._on_transcript(result)

        elif msg_type == "UtteranceEnd":
            logger.debug("Utterance end detected")
            if self._on_utterance_end:
                await self._on_utterance_end()

        elif msg_type == "SpeechStarted":
            logger.debug("STT speech started")

        elif msg_type == "Metadata":
            logger.debug("Deepgram metadata", request_id=data.get("request_id"))

        elif msg_type == "Error":
            logger.error(
                "Deepgram error",
                error=data.get("description") or data.get("message", "Unknown"),
                details=data,
            )


class TranscriptionRelay:
    """Per-call transcription: feeds Deepgram and republishes its results."""

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._stt: Optional[DeepgramSTT] = None
        self._final_parts: List[str] = []
        self.activity: Channel[Activity] = Channel("activity")
        self.transcripts: Channel[FinalTranscript] = Channel("transcript")

    @property
    def is_connected(self) -> bool:
        return self._stt is not None and self._stt.is_connected

    @property
    def metrics(self) -> Optional[STTMetrics]:
        return self._stt.metrics if self._stt else None

    async def start(self) -> bool:
        if self._stt is None:
            self._stt = DeepgramSTT(
                on_transcript=self.handle_result,
                on_utterance_end=self.handle_utterance_end,
                config=self.config,
            )
        return await self._stt.connect()

    async def stop(self) -> None:
        self.activity.close()
        self.transcripts.close()
        if self._stt:
            await self._stt.disconnect()
            self._stt = None
        self._final_parts.clear()

    async def send_audio(self, audio_bytes: bytes) -> None:
        if self._stt and self._stt.is_connected:
            await self._stt.send_audio(audio_bytes)

    async def handle_result(self, result: TranscriptionResult) -> None:
        text = result.text.strip()

        if not result.is_final:
            if text:
                await self.activity.publish(Activity(text=text))
            return

        if text:
            self._final_parts.append(text)

        if result.speech_final:
            await self._flush(reason="speech_final")

    async def handle_utterance_end(self) -> None:
        await self._flush(reason="utterance_end")

    async def _flush(self, *, reason: str) -> None:
        if not self._final_parts:
            return
        text = " ".join(self._final_parts)
        self._final_parts = []
        logger.debug("Utterance finalized", reason=reason, chars=len(text))
        await self.transcripts.publish(FinalTranscript(text=text))
