from __future__ import annotations

from typing import Any, AsyncGenerator, Optional

import structlog

from src.callagent.config import get_config
from src.callagent.tts_providers.base import TTSProvider
from src.callagent.tts_providers.cartesia import CartesiaTTS, CartesiaTTSMetrics
from src.callagent.tts_providers.deepgram import DeepgramTTS
from src.callagent.tts_types import TTSChunk

logger = structlog.get_logger(__name__)


class TTSManager:
    """
    Per-call TTS manager with a pluggable provider system.

    - `deepgram`: Aura voices over REST, mu-law 8kHz (default)
    - `cartesia`: streaming WebSocket TTS
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._provider: Optional[TTSProvider] = None

    def start(self) -> None:
        tts = (self.config.tts_provider or "deepgram").strip().lower()

        if tts == "deepgram":
            self._provider = DeepgramTTS(self.config)
            return

        if tts == "cartesia":
            self._provider = CartesiaTTS(self.config)
            return

        raise ValueError(f"Unsupported TTS_PROVIDER: {self.config.tts_provider}")

    async def stop(self) -> None:
        if self._provider:
            await self._provider.close()
            self._provider = None

    @property
    def cartesia_metrics(self) -> Optional[CartesiaTTSMetrics]:
        if isinstance(self._provider, CartesiaTTS):
            return self._provider.metrics
        return None

    async def synthesize_streaming(self, text: str) -> AsyncGenerator[TTSChunk, None]:
        if not self._provider:
            self.start()

        async for chunk in self._provider.synthesize_streaming(text):
            yield chunk

    async def synthesize(self, text: str) -> bytes:
        """Synthesize a whole fragment and return its mu-law audio."""
        audio = bytearray()
        async for chunk in self.synthesize_streaming(text):
            if chunk.audio_bytes:
                audio += chunk.audio_bytes
        return bytes(audio)
