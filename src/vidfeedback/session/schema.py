"""Pydantic models for feedback sessions and their persisted JSON shape.

All times are milliseconds. ``timeOffset``/``startTime`` inside a session are
offsets from the session clock origin; ``FeedbackSession.startTime`` and
``endTime`` are wall-clock epoch milliseconds.

JSON field names are camelCase (``timeOffset``, ``blobUrl``, ...); Python
attributes are snake_case. Dump with ``by_alias=True`` for storage.
"""
import math
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from vidfeedback.codec import default_codec, is_data_url

_TOLERANCE_MS = 1e-6


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Event payloads
# ---------------------------------------------------------------------------


class VideoAction(str, Enum):
    """Video transport actions. str, Enum so JSON carries plain strings."""
    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"
    RATE_CHANGE = "playbackRate"


class VideoPayload(_Model):
    """``from``/``to`` are player positions (ms) for seek, rates for playbackRate."""
    action: VideoAction
    from_: Optional[float] = Field(default=None, alias="from")
    to: Optional[float] = None

    @model_validator(mode="after")
    def target_required(self) -> "VideoPayload":
        if self.action in (VideoAction.SEEK, VideoAction.RATE_CHANGE) and self.to is None:
            raise ValueError(f"video action '{self.action.value}' requires 'to'")
        if self.action is VideoAction.RATE_CHANGE and self.to is not None and self.to <= 0:
            raise ValueError(f"playback rate must be > 0, got {self.to}")
        return self


class Point(_Model):
    x: float
    y: float


class DrawingPath(_Model):
    points: list[Point] = Field(min_length=1)
    color: str = "#ff0000"
    width: float = Field(default=3.0, gt=0.0)
    id: Optional[str] = None
    video_time: Optional[float] = None  # player position when the stroke finished


class AnnotationPayload(_Model):
    action: Literal["draw", "clear"]
    path: Optional[DrawingPath] = None

    @model_validator(mode="after")
    def path_matches_action(self) -> "AnnotationPayload":
        if self.action == "draw" and self.path is None:
            raise ValueError("annotation 'draw' requires a path")
        return self


class MarkerPayload(_Model):
    text: str


class CategoryPayload(_Model):
    """``rating`` None means the category was reverted to unrated."""
    category: str = Field(min_length=1)
    rating: Optional[int] = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Timeline events (closed tagged variant keyed by ``type``)
# ---------------------------------------------------------------------------


class _EventBase(_Model):
    id: str
    time_offset: float = Field(ge=0.0)
    duration: Optional[float] = Field(default=None, ge=0.0)

    @property
    def end_offset(self) -> float:
        return self.time_offset + (self.duration or 0.0)


class VideoEvent(_EventBase):
    type: Literal["video"] = "video"
    payload: VideoPayload


class AnnotationEvent(_EventBase):
    type: Literal["annotation"] = "annotation"
    payload: AnnotationPayload


class MarkerEvent(_EventBase):
    type: Literal["marker"] = "marker"
    payload: MarkerPayload


class CategoryEvent(_EventBase):
    type: Literal["category"] = "category"
    payload: CategoryPayload


TimelineEvent = Annotated[
    Union[VideoEvent, AnnotationEvent, MarkerEvent, CategoryEvent],
    Field(discriminator="type"),
]

Payload = Union[VideoPayload, AnnotationPayload, MarkerPayload, CategoryPayload]

EVENT_CLASS_BY_PAYLOAD: dict[type, type] = {
    VideoPayload: VideoEvent,
    AnnotationPayload: AnnotationEvent,
    MarkerPayload: MarkerEvent,
    CategoryPayload: CategoryEvent,
}


def make_event(event_id: str, time_offset: float, payload: Payload, duration: Optional[float] = None):
    """Build the event variant that matches ``payload``'s type."""
    try:
        cls = EVENT_CLASS_BY_PAYLOAD[type(payload)]
    except KeyError:
        raise TypeError(f"unsupported event payload: {type(payload).__name__}") from None
    return cls(id=event_id, time_offset=time_offset, duration=duration, payload=payload)


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------


class AudioChunk(_Model):
    """One flushed audio buffer.

    The audio bytes live in exactly one of three places: ``data`` (in memory,
    never serialized), ``blob`` (inline data URL) or ``blob_url`` (uploaded).
    """
    start_time: float = Field(ge=0.0)
    duration: float = Field(ge=0.0)
    video_time: float = Field(default=0.0, ge=0.0)
    mime_type: str = "audio/webm"
    blob: Optional[str] = None
    blob_url: Optional[str] = None
    data: Optional[bytes] = Field(default=None, exclude=True, repr=False)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def local_bytes(self) -> Optional[bytes]:
        """Bytes available without a network round trip, if any."""
        if self.data is not None:
            return self.data
        if is_data_url(self.blob):
            return default_codec.decode(self.blob, self.mime_type)
        return None


class AudioTrack(_Model):
    chunks: list[AudioChunk] = Field(default_factory=list)
    total_duration: float = Field(default=0.0, ge=0.0)

    @model_validator(mode="after")
    def chunks_ordered_and_total_consistent(self) -> "AudioTrack":
        previous_end = None
        for i, chunk in enumerate(self.chunks):
            if previous_end is not None and chunk.start_time < previous_end - _TOLERANCE_MS:
                raise ValueError(
                    f"chunk {i} starts at {chunk.start_time}ms, before the previous chunk ends ({previous_end}ms)"
                )
            previous_end = chunk.end_time
        expected = self.chunks[-1].end_time if self.chunks else 0.0
        if not math.isclose(self.total_duration, expected, abs_tol=_TOLERANCE_MS):
            raise ValueError(f"totalDuration {self.total_duration} != last chunk end {expected}")
        return self

    @classmethod
    def from_chunks(cls, chunks: list[AudioChunk]) -> "AudioTrack":
        total = chunks[-1].end_time if chunks else 0.0
        return cls(chunks=list(chunks), total_duration=total)

    def chunk_at(self, offset_ms: float) -> Optional[int]:
        """Index of the chunk covering ``offset_ms`` (start inclusive, end exclusive)."""
        for i, chunk in enumerate(self.chunks):
            if chunk.start_time <= offset_ms < chunk.end_time:
                return i
        return None


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def content_end(events: list, audio_track: AudioTrack) -> float:
    """Latest offset covered by any event or audio chunk."""
    last_event_end = max((e.end_offset for e in events), default=0.0)
    return max(last_event_end, audio_track.total_duration)


class FeedbackSession(_Model):
    id: str
    video_id: str
    start_time: float
    end_time: Optional[float] = None
    audio_track: AudioTrack = Field(default_factory=AudioTrack)
    events: list[TimelineEvent] = Field(default_factory=list)
    categories: dict[str, Union[bool, int]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def end_covers_content(self) -> "FeedbackSession":
        if self.end_time is None:
            return self
        span = self.end_time - self.start_time
        needed = content_end(self.events, self.audio_track)
        if span < needed - _TOLERANCE_MS:
            raise ValueError(
                f"endTime - startTime ({span}ms) is shorter than the recorded content ({needed}ms)"
            )
        return self

    @property
    def is_finalized(self) -> bool:
        return self.end_time is not None

    @property
    def duration_ms(self) -> float:
        if self.end_time is not None:
            return self.end_time - self.start_time
        return content_end(self.events, self.audio_track)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=indent)
