"""Replay scheduler: re-drives UI consumers from a stored FeedbackSession.

Status machine::

    IDLE --start--> REPLAYING <--pause/resume--> PAUSED
                        |                           |
                        +------> COMPLETED <--------+ (only from REPLAYING)
    stop() from any status returns to IDLE; seek() is valid while REPLAYING or PAUSED.

A replay clock starts at 0. Each ``pump`` dispatches, in stored order, every
event whose offset is at or before ``clock.now()`` and that has not been
dispatched in this forward pass, and starts audio chunks whose ``startTime``
the clock has crossed. ``run`` is the asyncio loop that sleeps until the next
due item and pumps; tests may call ``pump`` directly with a manual time source.

Seeking never replays transport toggles. A forward seek folds the skipped
events into the playback state silently; a backward seek rebuilds the state
from index 0. Either way the consumers are then synced to the state "as of"
the target: canvas redrawn, ratings shown, video positioned, audio restarted
inside the covering chunk.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from vidfeedback.clock import ClockMode, TimeSource, TimelineClock
from vidfeedback.config import DEFAULT_MAX_RATING
from vidfeedback.errors import AlreadyActiveError, ClockStateError, ReplayDesyncError
from vidfeedback.replay.state import PlaybackState
from vidfeedback.session.ratings import CategoryRatings, carried_ratings
from vidfeedback.session.schema import AudioChunk, DrawingPath, FeedbackSession, VideoAction
from vidfeedback.signals import Signal

logger = logging.getLogger(__name__)


class VideoSurface(Protocol):
    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, position_ms: float) -> None: ...

    def set_rate(self, rate: float) -> None: ...


class DrawingSurface(Protocol):
    def draw(self, path: DrawingPath) -> None: ...

    def clear(self) -> None: ...


class CategoryView(Protocol):
    def show_ratings(self, ratings: dict[str, Optional[int]]) -> None: ...


class AudioOutput(Protocol):
    def play(self, chunk: AudioChunk, offset_ms: float) -> None: ...

    def stop(self) -> None: ...


@dataclass
class ReplayConsumers:
    """External consumers re-driven during replay; any may be omitted."""
    video: Optional[VideoSurface] = None
    drawing: Optional[DrawingSurface] = None
    categories: Optional[CategoryView] = None
    audio: Optional[AudioOutput] = None


class ReplayStatus(str, Enum):
    IDLE = "idle"
    REPLAYING = "replaying"
    PAUSED = "paused"
    COMPLETED = "completed"


_ACTIVE = {ReplayStatus.REPLAYING, ReplayStatus.PAUSED}


class ReplayScheduler:
    def __init__(
        self,
        consumers: Optional[ReplayConsumers] = None,
        time_source: TimeSource = time.monotonic_ns,
        speed: float = 1.0,
        max_sleep_ms: float = 250.0,
        max_rating: int = DEFAULT_MAX_RATING,
    ) -> None:
        self.consumers = consumers or ReplayConsumers()
        self.time_source = time_source
        self.speed = speed
        self.max_sleep_ms = max_sleep_ms
        self.max_rating = max_rating

        self.event_dispatched: Signal = Signal("replay-event")
        self.marker_reached: Signal[str] = Signal("replay-marker")
        self.audio_started: Signal[AudioChunk] = Signal("replay-audio")
        self.desynced: Signal[ReplayDesyncError] = Signal("replay-desync")
        self.status_changed: Signal[ReplayStatus] = Signal("replay-status")
        self.completed: Signal[FeedbackSession] = Signal("replay-complete")

        self.session: Optional[FeedbackSession] = None
        self.state = PlaybackState()
        self.clock: Optional[TimelineClock] = None
        self._carried: CategoryRatings = {}
        self.dispatched_count = 0
        self._status = ReplayStatus.IDLE
        self._events: list = []
        self._chunks: list[AudioChunk] = []
        self._next_event = 0
        self._next_chunk = 0
        self._cursor_ms = 0.0
        self._wake = asyncio.Event()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def status(self) -> ReplayStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status in _ACTIVE

    @property
    def cursor_ms(self) -> float:
        """Offset dispatched up to (the replay cursor)."""
        return self._cursor_ms

    @property
    def duration_ms(self) -> float:
        return self.session.duration_ms if self.session is not None else 0.0

    @property
    def categories(self) -> dict[str, Optional[int]]:
        return dict(self.state.categories)

    @property
    def annotations(self) -> list[DrawingPath]:
        return list(self.state.paths)

    def now(self) -> float:
        return self.clock.now() if self.clock is not None else 0.0

    def _set_status(self, status: ReplayStatus) -> None:
        self._status = status
        self._wake.set()
        self.status_changed.publish(status)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self, session: FeedbackSession) -> None:
        """Begin replaying ``session`` from offset 0.

        Raises:
            AlreadyActiveError: a replay is already running (here or elsewhere in the process).
        """
        if self.is_active:
            raise AlreadyActiveError("replay")
        clock = TimelineClock(ClockMode.REPLAY, self.time_source, self.speed)
        clock.start(0.0)

        self.session = session
        self.clock = clock
        self._events = list(session.events)
        self._carried = carried_ratings(session.categories, self._events, self.max_rating)
        self.state = PlaybackState(categories=dict(self._carried))
        self.dispatched_count = 0
        self._chunks = list(session.audio_track.chunks)
        self._next_event = 0
        self._next_chunk = 0
        self._cursor_ms = 0.0
        self._set_status(ReplayStatus.REPLAYING)
        logger.info(
            "Replay of %s started: %d events, %d chunks, %.1fms",
            session.id, len(self._events), len(self._chunks), session.duration_ms,
        )
        self._sync_consumers(0.0, restart_audio=False)
        self.pump()

    def pause(self) -> None:
        if self._status is not ReplayStatus.REPLAYING:
            raise ClockStateError("pause", self._status.value)
        self.clock.pause()
        self._stop_audio()
        if self.consumers.video is not None:
            self.consumers.video.pause()
        self._set_status(ReplayStatus.PAUSED)

    def resume(self) -> None:
        if self._status is not ReplayStatus.PAUSED:
            raise ClockStateError("resume", self._status.value)
        self.clock.resume()
        self._set_status(ReplayStatus.REPLAYING)
        now = self.clock.now()
        self._restart_audio_at(now)
        if self.consumers.video is not None and self.state.video.playing:
            self.consumers.video.play()
        self.pump()

    def seek(self, target_ms: float) -> None:
        """Jump to ``target_ms`` and rebuild the observable state as of that offset."""
        if not self.is_active:
            raise ClockStateError("seek", self._status.value)
        target = min(max(0.0, float(target_ms)), self.duration_ms)
        new_index = self._index_after(target)

        if target >= self._cursor_ms:
            for event in self._events[self._next_event:new_index]:
                self.state.apply(event, max(event.time_offset, self._cursor_ms))
        else:
            self.state = PlaybackState.at(self._events[:new_index], target, self._carried)

        logger.info("Replay seek %.1fms -> %.1fms", self._cursor_ms, target)
        self.clock.seek(target)
        self._next_event = new_index
        self._cursor_ms = target
        self._sync_consumers(target, restart_audio=self._status is ReplayStatus.REPLAYING)
        self._wake.set()
        if self._status is ReplayStatus.REPLAYING:
            self.pump()

    def stop(self) -> None:
        """Cancel the replay; no dispatch happens after this returns."""
        if self._status is ReplayStatus.IDLE:
            return
        if self.clock is not None and self.clock.is_active:
            self.clock.stop()
        self._stop_audio()
        self._set_status(ReplayStatus.IDLE)
        logger.info("Replay stopped at %.1fms", self._cursor_ms)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _index_after(self, offset_ms: float) -> int:
        """Length of the leading run of events due at ``offset_ms``."""
        index = 0
        while index < len(self._events) and self._events[index].time_offset <= offset_ms:
            index += 1
        return index

    def pump(self) -> int:
        """Dispatch everything due at ``clock.now()``. Returns the number of events dispatched."""
        if self._status is not ReplayStatus.REPLAYING:
            return 0
        now = self.clock.now()
        dispatched = 0

        while self._next_event < len(self._events):
            event = self._events[self._next_event]
            if event.time_offset > now:
                break
            offset = event.time_offset
            if offset < self._cursor_ms:
                error = ReplayDesyncError(event.id, offset, self._cursor_ms)
                logger.warning("%s", error)
                self.desynced.publish(error)
                offset = self._cursor_ms
            self._next_event += 1
            self._cursor_ms = offset
            self._dispatch(event, offset)
            dispatched += 1
            if self._status is not ReplayStatus.REPLAYING:
                # a listener stopped or paused the replay
                return dispatched

        while self._next_chunk < len(self._chunks) and self._chunks[self._next_chunk].start_time <= now:
            chunk = self._chunks[self._next_chunk]
            self._next_chunk += 1
            if now < chunk.end_time:
                self._play_audio(chunk, now - chunk.start_time)

        self._cursor_ms = max(self._cursor_ms, now)
        if self._next_event >= len(self._events) and now >= self.duration_ms:
            self._complete()
        return dispatched

    def _dispatch(self, event, offset: float) -> None:
        self.state.apply(event, offset)
        payload = event.payload
        consumers = self.consumers
        if event.type == "video":
            video = consumers.video
            if video is not None:
                if payload.action is VideoAction.PLAY:
                    if payload.from_ is not None:
                        video.seek(payload.from_)
                    video.play()
                elif payload.action is VideoAction.PAUSE:
                    video.pause()
                elif payload.action is VideoAction.SEEK:
                    video.seek(payload.to)
                elif payload.action is VideoAction.RATE_CHANGE:
                    video.set_rate(payload.to)
        elif event.type == "annotation":
            if consumers.drawing is not None:
                if payload.action == "clear":
                    consumers.drawing.clear()
                else:
                    consumers.drawing.draw(payload.path)
        elif event.type == "marker":
            self.marker_reached.publish(payload.text)
        elif event.type == "category":
            if consumers.categories is not None:
                consumers.categories.show_ratings(dict(self.state.categories))
        else:
            raise TypeError(f"unhandled event type '{event.type}'")
        self.dispatched_count += 1
        self.event_dispatched.publish(event)

    def _sync_consumers(self, offset_ms: float, restart_audio: bool) -> None:
        """Push the accumulated state to every consumer."""
        consumers = self.consumers
        if consumers.drawing is not None:
            consumers.drawing.clear()
            for path in self.state.paths:
                consumers.drawing.draw(path)
        if consumers.categories is not None:
            consumers.categories.show_ratings(dict(self.state.categories))
        if consumers.video is not None:
            video_state = self.state.video
            consumers.video.seek(video_state.position_at(offset_ms))
            consumers.video.set_rate(video_state.rate)
            if video_state.playing and self._status is ReplayStatus.REPLAYING:
                consumers.video.play()
            else:
                consumers.video.pause()
        self._stop_audio()
        if restart_audio:
            self._restart_audio_at(offset_ms)
        else:
            self._next_chunk = self._chunk_index_after(offset_ms)

    def _chunk_index_after(self, offset_ms: float) -> int:
        index = 0
        while index < len(self._chunks) and self._chunks[index].start_time < offset_ms:
            index += 1
        return index

    def _restart_audio_at(self, offset_ms: float) -> None:
        covering = self.session.audio_track.chunk_at(offset_ms) if self.session is not None else None
        if covering is None:
            self._next_chunk = self._chunk_index_after(offset_ms)
            return
        self._next_chunk = covering + 1
        chunk = self._chunks[covering]
        self._play_audio(chunk, offset_ms - chunk.start_time)

    def _play_audio(self, chunk: AudioChunk, offset_ms: float) -> None:
        if self.consumers.audio is not None:
            self.consumers.audio.play(chunk, offset_ms)
        self.audio_started.publish(chunk)

    def _stop_audio(self) -> None:
        if self.consumers.audio is not None:
            self.consumers.audio.stop()

    def _complete(self) -> None:
        self.clock.complete()
        self._stop_audio()
        self._set_status(ReplayStatus.COMPLETED)
        logger.info("Replay of %s completed: %d events dispatched", self.session.id, self.dispatched_count)
        self.completed.publish(self.session)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _next_due_ms(self) -> float:
        candidates = [self.duration_ms]
        if self._next_event < len(self._events):
            candidates.append(self._events[self._next_event].time_offset)
        if self._next_chunk < len(self._chunks):
            candidates.append(self._chunks[self._next_chunk].start_time)
        return min(candidates)

    async def run(self) -> None:
        """Drive the replay until it completes or is stopped."""
        self._wake = asyncio.Event()  # bound to the running loop
        while self.is_active:
            timeout: Optional[float] = None
            if self._status is ReplayStatus.REPLAYING:
                self.pump()
                if self._status is not ReplayStatus.REPLAYING:
                    continue
                delay_ms = (self._next_due_ms() - self.clock.now()) / self.speed
                timeout = min(max(delay_ms, 1.0), self.max_sleep_ms) / 1000.0
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout)
            except asyncio.TimeoutError:
                pass
