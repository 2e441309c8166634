"""Session data model: events, audio track, categories, and JSON loading."""
from vidfeedback.session.loader import load_session, parse_session
from vidfeedback.session.ratings import CategoryRatings, collapse_ratings, expand_categories
from vidfeedback.session.schema import (
    AnnotationEvent,
    AnnotationPayload,
    AudioChunk,
    AudioTrack,
    CategoryEvent,
    CategoryPayload,
    DrawingPath,
    FeedbackSession,
    MarkerEvent,
    MarkerPayload,
    Point,
    TimelineEvent,
    VideoAction,
    VideoEvent,
    VideoPayload,
)

__all__ = [
    "AnnotationEvent",
    "AnnotationPayload",
    "AudioChunk",
    "AudioTrack",
    "CategoryEvent",
    "CategoryPayload",
    "CategoryRatings",
    "DrawingPath",
    "FeedbackSession",
    "MarkerEvent",
    "MarkerPayload",
    "Point",
    "TimelineEvent",
    "VideoAction",
    "VideoEvent",
    "VideoPayload",
    "collapse_ratings",
    "expand_categories",
    "load_session",
    "parse_session",
]
