"""Replay-side state reconstructed from the event log.

``PlaybackState.apply`` folds one event into the state; folding every event
with ``timeOffset <= T`` from an empty state yields the observable state "as of
T": the annotation canvas (paths drawn since the last clear), the category
ratings, and the video transport (position, playing, rate).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from vidfeedback.session.schema import DrawingPath, VideoAction


@dataclass
class VideoState:
    position_ms: float = 0.0
    playing: bool = False
    rate: float = 1.0
    anchor_offset: float = 0.0  # timeline offset at which position_ms was observed

    def position_at(self, offset_ms: float) -> float:
        if not self.playing:
            return self.position_ms
        return max(0.0, self.position_ms + (offset_ms - self.anchor_offset) * self.rate)

    def _move(self, offset_ms: float, position_ms: Optional[float]) -> None:
        self.position_ms = self.position_at(offset_ms) if position_ms is None else position_ms
        self.anchor_offset = offset_ms


@dataclass
class PlaybackState:
    paths: list[DrawingPath] = field(default_factory=list)
    categories: dict[str, Optional[int]] = field(default_factory=dict)
    video: VideoState = field(default_factory=VideoState)
    last_marker: Optional[str] = None

    def apply(self, event, offset_ms: Optional[float] = None) -> None:
        offset = event.time_offset if offset_ms is None else offset_ms
        try:
            handler = _HANDLERS[event.type]
        except KeyError:
            raise TypeError(f"unhandled event type '{event.type}'") from None
        handler(self, event.payload, offset)

    def _apply_video(self, payload, offset: float) -> None:
        video = self.video
        if payload.action is VideoAction.PLAY:
            video._move(offset, payload.from_)
            video.playing = True
        elif payload.action is VideoAction.PAUSE:
            video._move(offset, payload.from_)
            video.playing = False
        elif payload.action is VideoAction.SEEK:
            video._move(offset, payload.to)
        elif payload.action is VideoAction.RATE_CHANGE:
            video._move(offset, None)
            video.rate = payload.to
        else:
            raise TypeError(f"unhandled video action '{payload.action}'")

    def _apply_annotation(self, payload, offset: float) -> None:
        if payload.action == "clear":
            self.paths.clear()
        else:
            self.paths.append(payload.path)

    def _apply_marker(self, payload, offset: float) -> None:
        self.last_marker = payload.text

    def _apply_category(self, payload, offset: float) -> None:
        self.categories[payload.category] = payload.rating or None

    @classmethod
    def at(
        cls,
        events: Iterable,
        offset_ms: float,
        initial_categories: Optional[Mapping[str, Optional[int]]] = None,
    ) -> "PlaybackState":
        """Fold every event with ``timeOffset <= offset_ms`` in stored order.

        ``initial_categories`` are ratings already in effect at offset 0.
        """
        state = cls(categories=dict(initial_categories or {}))
        for event in events:
            if event.time_offset > offset_ms:
                break
            state.apply(event)
        return state


_HANDLERS = {
    "video": PlaybackState._apply_video,
    "annotation": PlaybackState._apply_annotation,
    "marker": PlaybackState._apply_marker,
    "category": PlaybackState._apply_category,
}
