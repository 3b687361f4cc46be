from __future__ import annotations

import time
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog

from src.callagent.config import get_config
from src.callagent.tts_providers.base import TTSProvider
from src.callagent.tts_types import TTSChunk

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class DeepgramTTS(TTSProvider):
    """
    Deepgram Aura text-to-speech over REST.

    Asks for raw mu-law 8kHz (`container=none`) so the body can go to Twilio
    untouched, and streams the response body as it arrives.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
        return self._client

    async def synthesize_streaming(self, text: str) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        started = time.time()
        first_byte_ms: Optional[float] = None
        total_bytes = 0

        params = {
            "model": self.config.deepgram_tts_model,
            "encoding": "mulaw",
            "sample_rate": 8000,
            "container": "none",
        }
        headers = {
            "Authorization": f"Token {self.config.deepgram_api_key}",
            "Content-Type": "application/json",
        }

        async with self._get_client().stream(
            "POST",
            DEEPGRAM_SPEAK_URL,
            params=params,
            headers=headers,
            json={"text": text},
        ) as response:
            if response.status_code != 200:
                body = await response.aread()
                logger.error(
                    "Deepgram TTS request failed",
                    status_code=response.status_code,
                    response=body[:200].decode("utf-8", "replace"),
                )
                response.raise_for_status()

            async for data in response.aiter_bytes():
                if not data:
                    continue
                if first_byte_ms is None:
                    first_byte_ms = (time.time() - started) * 1000
                total_bytes += len(data)
                yield TTSChunk(audio_bytes=data)

        logger.debug(
            "Deepgram TTS complete",
            characters=len(text),
            audio_bytes=total_bytes,
            first_byte_ms=round(first_byte_ms or 0.0, 2),
            total_ms=round((time.time() - started) * 1000, 2),
        )
        yield TTSChunk(audio_bytes=b"", is_final=True)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
