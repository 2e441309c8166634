"""Replay side: playback-state reducer and the replay scheduler."""
from vidfeedback.replay.scheduler import (
    AudioOutput,
    CategoryView,
    DrawingSurface,
    ReplayConsumers,
    ReplayScheduler,
    ReplayStatus,
    VideoSurface,
)
from vidfeedback.replay.state import PlaybackState, VideoState

__all__ = [
    "AudioOutput",
    "CategoryView",
    "DrawingSurface",
    "PlaybackState",
    "ReplayConsumers",
    "ReplayScheduler",
    "ReplayStatus",
    "VideoState",
    "VideoSurface",
]
