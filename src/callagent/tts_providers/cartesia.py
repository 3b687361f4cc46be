from __future__ import annotations

import base64
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Optional

import structlog
import websockets

from src.callagent.config import get_config
from src.callagent.tts_providers.base import TTSError, TTSProvider
from src.callagent.tts_types import TTSChunk

logger = structlog.get_logger(__name__)

# Cartesia can emit mu-law at 8kHz directly, Twilio's native format.
CARTESIA_SAMPLE_RATE = 8000
CARTESIA_WS_URL = "wss://api.cartesia.ai/tts/websocket"
CARTESIA_API_VERSION = "2024-06-10"


@dataclass
class CartesiaTTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    total_audio_ms: float = 0.0
    avg_first_byte_ms: float = 0.0
    avg_total_ms: float = 0.0

    def record_synthesis(
        self,
        *,
        characters: int,
        audio_ms: float,
        first_byte_ms: float,
        total_ms: float,
    ) -> None:
        self.total_requests += 1
        self.total_characters += characters
        self.total_audio_ms += audio_ms

        # Running averages
        n = self.total_requests
        self.avg_first_byte_ms = (self.avg_first_byte_ms * (n - 1) + first_byte_ms) / n
        self.avg_total_ms = (self.avg_total_ms * (n - 1) + total_ms) / n


class CartesiaTTS(TTSProvider):
    """
    Cartesia streaming TTS client using WebSocket API.

    One connection per fragment, so concurrent fragments never share a
    context. Produces Twilio-ready mu-law 8kHz audio.
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._metrics = CartesiaTTSMetrics()

    @property
    def metrics(self) -> CartesiaTTSMetrics:
        return self._metrics

    async def synthesize_streaming(self, text: str) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        start_time = time.time()
        first_byte_time: Optional[float] = None
        total_audio_bytes = 0

        url = (
            f"{CARTESIA_WS_URL}?api_key={self.config.cartesia_api_key}"
            f"&cartesia_version={CARTESIA_API_VERSION}"
        )

        async with websockets.connect(url) as ws:
            request = {
                "context_id": uuid.uuid4().hex,
                "model_id": self.config.cartesia_model,
                "transcript": text,
                "voice": {"mode": "id", "id": self.config.cartesia_voice_id},
                "output_format": {
                    "container": "raw",
                    "encoding": "pcm_mulaw",
                    "sample_rate": CARTESIA_SAMPLE_RATE,
                },
                "continue": False,
            }

            await ws.send(json.dumps(request))

            async for message in ws:
                if isinstance(message, (bytes, bytearray)):
                    audio_data = bytes(message)
                else:
                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError:
                        logger.warning("Invalid JSON from Cartesia")
                        continue

                    msg_type = data.get("type", "")
                    if msg_type == "done":
                        break
                    if msg_type == "error":
                        logger.error("Cartesia error", error=data.get("message"), details=data)
                        raise TTSError(str(data.get("message") or "Cartesia error"))
                    if msg_type != "chunk" or not data.get("data"):
                        continue
                    audio_data = base64.b64decode(data["data"])

                if first_byte_time is None:
                    first_byte_time = time.time()
                total_audio_bytes += len(audio_data)
                yield TTSChunk(audio_bytes=audio_data, is_final=False)

        end_time = time.time()
        if first_byte_time is None:
            first_byte_time = end_time

        self._metrics.record_synthesis(
            characters=len(text),
            audio_ms=total_audio_bytes / 8.0,
            first_byte_ms=(first_byte_time - start_time) * 1000,
            total_ms=(end_time - start_time) * 1000,
        )
        yield TTSChunk(audio_bytes=b"", is_final=True)
