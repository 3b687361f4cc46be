from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

# Interaction number used for scripted utterances that answer no caller turn
# (the greeting). Caller turns are numbered from 0.
SCRIPTED_INTERACTION = -1


@dataclass(frozen=True)
class ReplyFragment:
    """
    A speakable slice of one agent reply.

    `index` is the position within the interaction's reply, or None for
    utterances that bypass ordering (greeting, tool acknowledgments).
    """

    interaction: int
    index: Optional[int]
    text: str


@dataclass(frozen=True)
class AudioFragment:
    """Synthesized audio for one ReplyFragment (Twilio-ready mu-law 8kHz)."""

    interaction: int
    index: Optional[int]
    audio: bytes
    label: str


@dataclass(frozen=True)
class Activity:
    """Speech onset / interim transcript from the caller."""

    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class FinalTranscript:
    """Finalized caller utterance."""

    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class MarkSent:
    """A fragment was handed to Twilio and awaits playback confirmation."""

    label: str
    interaction: int
    index: Optional[int]
