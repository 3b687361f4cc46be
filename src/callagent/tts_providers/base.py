from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncGenerator

from src.callagent.tts_types import TTSChunk


class TTSError(Exception):
    """The synthesis engine rejected or failed a request."""


class TTSProvider(ABC):
    @abstractmethod
    def synthesize_streaming(self, text: str) -> AsyncGenerator[TTSChunk, None]:
        raise NotImplementedError

    async def close(self) -> None:
        return None
