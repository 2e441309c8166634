"""vidfeedback: synchronized capture and replay of video-feedback sessions."""
from vidfeedback.clock import ClockMode, ClockState, TimelineClock
from vidfeedback.codec import BlobCodec
from vidfeedback.config import EngineSettings
from vidfeedback.engine import FeedbackEngine
from vidfeedback.errors import (
    AlreadyActiveError,
    CaptureError,
    ClockStateError,
    MicrophonePermissionError,
    PersistenceError,
    ReplayDesyncError,
    SerializationError,
    SessionFileError,
    VidFeedbackError,
)
from vidfeedback.replay import ReplayConsumers, ReplayScheduler, ReplayStatus
from vidfeedback.session import FeedbackSession

__version__ = "0.1.0"

__all__ = [
    "AlreadyActiveError",
    "BlobCodec",
    "CaptureError",
    "ClockMode",
    "ClockState",
    "ClockStateError",
    "EngineSettings",
    "FeedbackEngine",
    "FeedbackSession",
    "MicrophonePermissionError",
    "PersistenceError",
    "ReplayConsumers",
    "ReplayDesyncError",
    "ReplayScheduler",
    "ReplayStatus",
    "SerializationError",
    "SessionFileError",
    "TimelineClock",
    "VidFeedbackError",
]
