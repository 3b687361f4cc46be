"""
Twilio Media Streams wire format.

Inbound frames are decoded straight into tagged msgspec structs (the `event`
field selects the type), with base64 media payloads decoded to bytes by
msgspec itself. Unknown event kinds and malformed frames surface as
ValueError. Outbound `media`, `mark` and `clear` frames are encoded the same
way.

`StreamSession` is the per-call record: stream and call identifiers, the
interaction counter and the set of marks awaiting playback confirmation.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

import msgspec
import structlog

from src.callagent.audio import TWILIO_FRAME_SIZE, chunk_audio

logger = structlog.get_logger(__name__)


class StreamStart(msgspec.Struct, rename="camel"):
    stream_sid: str = ""
    call_sid: str = ""
    custom_parameters: Dict[str, Any] = {}


class MediaChunk(msgspec.Struct):
    payload: bytes = b""
    track: str = "inbound"


class MarkLabel(msgspec.Struct):
    name: str = ""


class Digit(msgspec.Struct):
    digit: str = ""


class ConnectedEvent(msgspec.Struct, tag_field="event", tag="connected"):
    protocol: str = ""


class StartEvent(msgspec.Struct, tag_field="event", tag="start", rename="camel"):
    stream_sid: str = ""
    start: StreamStart = msgspec.field(default_factory=StreamStart)

    @property
    def sid(self) -> str:
        # Twilio sends streamSid at the top level and repeats it inside `start`.
        return self.stream_sid or self.start.stream_sid

    @property
    def call_sid(self) -> str:
        return self.start.call_sid


class MediaEvent(msgspec.Struct, tag_field="event", tag="media", rename="camel"):
    stream_sid: str = ""
    media: MediaChunk = msgspec.field(default_factory=MediaChunk)


class MarkEvent(msgspec.Struct, tag_field="event", tag="mark", rename="camel"):
    stream_sid: str = ""
    mark: MarkLabel = msgspec.field(default_factory=MarkLabel)


class DtmfEvent(msgspec.Struct, tag_field="event", tag="dtmf", rename="camel"):
    stream_sid: str = ""
    dtmf: Digit = msgspec.field(default_factory=Digit)


class StopEvent(msgspec.Struct, tag_field="event", tag="stop", rename="camel"):
    stream_sid: str = ""


InboundEvent = Union[ConnectedEvent, StartEvent, MediaEvent, MarkEvent, DtmfEvent, StopEvent]


class OutboundPayload(msgspec.Struct):
    payload: bytes


class OutboundMedia(msgspec.Struct, tag_field="event", tag="media", rename="camel"):
    stream_sid: str
    media: OutboundPayload


class OutboundMark(msgspec.Struct, tag_field="event", tag="mark", rename="camel"):
    stream_sid: str
    mark: MarkLabel


class OutboundClear(msgspec.Struct, tag_field="event", tag="clear", rename="camel"):
    stream_sid: str


_decoder = msgspec.json.Decoder(InboundEvent)
_encoder = msgspec.json.Encoder()


def parse_twilio_message(raw_message: Union[str, bytes]) -> InboundEvent:
    """
    Decode one inbound frame.

    Raises:
        ValueError: malformed JSON, an unknown `event`, or a field of the wrong type
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        return _decoder.decode(data)
    except msgspec.ValidationError as e:
        raise ValueError(f"Unsupported Twilio frame: {e}") from e
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e


def _encode(message: msgspec.Struct) -> str:
    return _encoder.encode(message).decode("utf-8")


def encode_media(stream_sid: str, frame: bytes) -> str:
    return _encode(OutboundMedia(stream_sid=stream_sid, media=OutboundPayload(payload=frame)))


def encode_mark(stream_sid: str, label: str) -> str:
    """Twilio echoes this back once everything queued before it has played."""
    return _encode(OutboundMark(stream_sid=stream_sid, mark=MarkLabel(name=label)))


def encode_clear(stream_sid: str) -> str:
    return _encode(OutboundClear(stream_sid=stream_sid))


@dataclass
class CallState:
    """
    Identity and playback bookkeeping for one call.

    `pending_marks` holds labels of fragments handed to Twilio whose playback
    is not confirmed yet; non-empty means the caller is hearing agent audio.
    """
    stream_sid: str = ""
    call_sid: str = ""
    interaction_count: int = 0
    mark_sequence: int = 0
    pending_marks: Set[str] = field(default_factory=set)

    def next_interaction(self) -> int:
        """Claim the interaction number for the next caller utterance."""
        interaction = self.interaction_count
        self.interaction_count += 1
        return interaction


class StreamSession:
    """The call's stream record; produces every frame sent back to Twilio."""

    def __init__(self):
        self.call_state: Optional[CallState] = None

    @property
    def stream_sid(self) -> str:
        return self.call_state.stream_sid if self.call_state else ""

    @property
    def call_sid(self) -> str:
        return self.call_state.call_sid if self.call_state else ""

    @property
    def started(self) -> bool:
        return self.call_state is not None

    @property
    def pending_marks(self) -> Set[str]:
        return self.call_state.pending_marks if self.call_state else set()

    def begin(self, event: StartEvent) -> None:
        self.call_state = CallState(stream_sid=event.sid, call_sid=event.call_sid)
        logger.info("Call started", stream_sid=event.sid, call_sid=event.call_sid)

    def end(self) -> None:
        if self.call_state:
            logger.info(
                "Call stopped",
                stream_sid=self.call_state.stream_sid,
                call_sid=self.call_state.call_sid,
                interactions=self.call_state.interaction_count,
            )

    def acknowledge(self, label: str) -> bool:
        """Playback of `label` finished; True if it was still pending."""
        if not self.call_state:
            return False
        was_pending = label in self.call_state.pending_marks
        self.call_state.pending_marks.discard(label)
        logger.debug(
            "Mark acknowledged",
            mark=label,
            was_pending=was_pending,
            pending=len(self.call_state.pending_marks),
        )
        return was_pending

    def add_pending_mark(self, label: str) -> None:
        if self.call_state:
            self.call_state.pending_marks.add(label)

    def clear_pending_marks(self) -> int:
        if not self.call_state:
            return 0
        dropped = len(self.call_state.pending_marks)
        self.call_state.pending_marks.clear()
        return dropped

    def next_mark_label(self) -> str:
        """`m{seq}-{hex}`: ordered for humans reading logs, unique on the wire."""
        if not self.call_state:
            return ""
        self.call_state.mark_sequence += 1
        return f"m{self.call_state.mark_sequence}-{uuid.uuid4().hex[:8]}"

    def media_frames(self, audio: bytes) -> List[str]:
        """One `media` frame per 20ms of mu-law audio; nothing before `start`."""
        if not self.call_state:
            return []
        sid = self.call_state.stream_sid
        return [encode_media(sid, frame) for frame in chunk_audio(audio, TWILIO_FRAME_SIZE)]

    def mark(self, label: str) -> str:
        return encode_mark(self.call_state.stream_sid, label) if self.call_state else ""

    def clear(self) -> str:
        if not self.call_state:
            return ""
        logger.info("Clearing Twilio audio buffer", stream_sid=self.call_state.stream_sid)
        return encode_clear(self.call_state.stream_sid)
