"""
Audio framing utilities for Twilio Media Streams.

Both directions use mu-law 8kHz mono, so no transcoding happens here:
- Inbound Twilio payloads go to Deepgram as-is (encoding=mulaw)
- TTS providers are asked for mu-law 8kHz directly
"""

from typing import Generator

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = b"\xff"


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        # Pad the last chunk if needed
        if len(chunk) < chunk_size:
            chunk = chunk + ULAW_SILENCE * (chunk_size - len(chunk))
        yield chunk


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> float:
    """Duration of mu-law audio (1 byte per sample) in milliseconds."""
    if not audio_bytes:
        return 0.0
    return len(audio_bytes) / sample_rate * 1000
