"""FeedbackEngine: the imperative surface the UI layer drives.

One engine owns the shared CategoryRatings snapshot and the event recorder,
creates a fresh capture clock, audio pipeline and assembler per recording, and
wraps a single replay scheduler. UI code subscribes to the ``on_*`` signals:

    on_record_action       every event appended to the capture log
    on_annotation_added    each completed stroke while recording
    on_audio_chunk         each captured audio chunk
    on_capture_error       dropped audio buffers (recording continues)
    on_categories_loaded   ratings restored from a loaded session
    on_session_complete    the finalized session after stop_recording()
    on_marker              marker text reached during replay
    on_replay_complete     the session whose replay ran to its end
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from vidfeedback.capture.assembler import SessionAssembler
from vidfeedback.capture.audio import AudioCapturePipeline, StreamOpener
from vidfeedback.capture.recorder import EventRecorder
from vidfeedback.clock import ClockMode, TimeSource, TimelineClock
from vidfeedback.codec import BlobCodec, default_codec
from vidfeedback.config import EngineSettings
from vidfeedback.errors import AlreadyActiveError, CaptureError, ClockStateError, PersistenceError
from vidfeedback.replay.scheduler import ReplayConsumers, ReplayScheduler
from vidfeedback.session.ratings import CategoryRatings, expand_categories, ratings_from_events
from vidfeedback.session.schema import DrawingPath, FeedbackSession
from vidfeedback.signals import Signal
from vidfeedback.storage import BlobStore, DocumentStore, prepare_session_for_storage, save_with_retry

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class _Capture:
    clock: TimelineClock
    pipeline: AudioCapturePipeline
    assembler: SessionAssembler
    unsubscribe: list[Callable[[], None]]


class FeedbackEngine:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        blob_store: Optional[BlobStore] = None,
        document_store: Optional[DocumentStore] = None,
        consumers: Optional[ReplayConsumers] = None,
        time_source: TimeSource = time.monotonic_ns,
        wall_clock: Callable[[], float] = time.time,
        codec: BlobCodec = default_codec,
        session_id_factory: Callable[[], str] = new_session_id,
    ) -> None:
        self.settings = settings or EngineSettings.from_env()
        self.blob_store = blob_store
        self.document_store = document_store
        self.time_source = time_source
        self.wall_clock = wall_clock
        self.codec = codec
        self.session_id_factory = session_id_factory

        self.ratings: CategoryRatings = {}
        self.recorder = EventRecorder(TimelineClock(ClockMode.CAPTURE, time_source), self.ratings)
        self.replay = ReplayScheduler(
            consumers, time_source,
            max_sleep_ms=self.settings.replay_max_sleep_ms, max_rating=self.settings.max_rating,
        )
        self.last_session: Optional[FeedbackSession] = None

        self.on_record_action = self.recorder.event_recorded
        self.on_annotation_added = self.recorder.annotation_added
        self.on_audio_chunk = Signal("engine-audio-chunk")
        self.on_capture_error = Signal("engine-capture-error")
        self.on_categories_loaded: Signal[CategoryRatings] = Signal("categories-loaded")
        self.on_session_complete: Signal[FeedbackSession] = Signal("session-complete")
        self.on_marker = self.replay.marker_reached
        self.on_replay_complete = self.replay.completed

        self._capture: Optional[_Capture] = None
        self._replay_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    @property
    def is_recording(self) -> bool:
        return self._capture is not None

    async def start_recording(
        self,
        video_id: str,
        open_stream: StreamOpener,
        video_position: Callable[[], float] = lambda: 0.0,
    ) -> str:
        """Start a capture session and return its id.

        Raises:
            AlreadyActiveError: a capture is already running; it is left untouched.
            MicrophonePermissionError: no audio stream; nothing was recorded.

        Any failure while opening the stream releases the capture clock, so a
        later call can start cleanly.
        """
        if self._capture is not None:
            raise AlreadyActiveError("capture session")
        clock = TimelineClock(ClockMode.CAPTURE, self.time_source)
        clock.start()

        session_id = self.session_id_factory()
        pipeline = AudioCapturePipeline(clock, video_position, self.settings.mime_preferences)
        assembler = SessionAssembler(
            session_id, video_id, self.wall_clock() * 1000.0, self.blob_store, self.codec
        )
        capture = _Capture(clock, pipeline, assembler, [
            pipeline.chunk_captured.subscribe(assembler.track_chunk),
            pipeline.chunk_captured.subscribe(self.on_audio_chunk.publish),
            pipeline.capture_failed.subscribe(self.on_capture_error.publish),
        ])
        self._capture = capture
        try:
            await pipeline.start(open_stream)
        except BaseException:
            self._teardown(capture)
            clock.stop()
            raise

        self.recorder.attach(clock)
        logger.info("Recording %s started for video %s", session_id, video_id)
        return session_id

    def _teardown(self, capture: _Capture) -> None:
        for unsubscribe in capture.unsubscribe:
            unsubscribe()
        if self._capture is capture:
            self._capture = None

    async def stop_recording(self) -> FeedbackSession:
        """Flush audio, stop the clock and assemble the session.

        Raises:
            ClockStateError: nothing is recording.
            SerializationError: an inlined chunk failed its round-trip check.
            PersistenceError: a chunk upload failed; ``.session`` holds the complete session.
            CaptureError: the audio device failed to stop; ``.session`` holds every
                event and every chunk flushed before the failure.
        """
        capture = self._capture
        if capture is None:
            raise ClockStateError("stop", "idle")
        stop_error: Optional[Exception] = None
        try:
            chunks = (await capture.pipeline.stop()).chunks
        except Exception as exc:
            logger.error("Audio device failed to stop; keeping %d captured chunk(s): %s",
                         len(capture.pipeline.chunks), exc)
            stop_error = exc
            chunks = capture.pipeline.chunks
        finally:
            end_ms = capture.clock.stop()
            self._teardown(capture)

        try:
            session = await capture.assembler.finalize(end_ms, self.recorder.events, chunks, self.ratings)
        except PersistenceError as exc:
            self.last_session = exc.session
            raise
        self.last_session = session
        self.on_session_complete.publish(session)
        if stop_error is not None:
            raise CaptureError(end_ms, f"audio device failed to stop: {stop_error}", session=session) from stop_error
        return session

    # ``at_ms`` is a capture offset read when the UI action happened.

    def record_video(
        self,
        action,
        from_: Optional[float] = None,
        to: Optional[float] = None,
        at_ms: Optional[float] = None,
    ):
        return self.recorder.record_video(action, from_, to, at_ms=at_ms)

    def record_annotation(self, path: DrawingPath, at_ms: Optional[float] = None):
        return self.recorder.record_annotation(path, at_ms=at_ms)

    def clear_annotations(self, at_ms: Optional[float] = None):
        return self.recorder.record_clear(at_ms=at_ms)

    def add_marker(self, text: str, duration: Optional[float] = None, at_ms: Optional[float] = None):
        return self.recorder.add_marker(text, duration, at_ms=at_ms)

    def set_category(self, category: str, rating: Optional[int], at_ms: Optional[float] = None):
        return self.recorder.set_category(category, rating, at_ms=at_ms)

    def capture_offset(self) -> Optional[float]:
        """Current capture clock value, or None when idle."""
        capture = self._capture
        return capture.clock.now() if capture is not None else None

    def clear_categories(self) -> None:
        self.recorder.clear_categories()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_session(self, session: FeedbackSession) -> FeedbackSession:
        """Upload or inline chunk audio, then save the document with retries.

        Returns the session exactly as stored.
        """
        if self.document_store is None:
            raise PersistenceError("no document store configured", session=session)
        prepared, upload_errors = await prepare_session_for_storage(session, self.blob_store, self.codec)
        if upload_errors:
            logger.warning("%d chunk(s) were inlined after failed uploads", len(upload_errors))
        await save_with_retry(self.document_store, prepared, attempts=self.settings.save_attempts)
        logger.info("Session %s saved", prepared.id)
        return prepared

    def restore_ratings(self, session: FeedbackSession) -> CategoryRatings:
        """Load the session's ratings into the shared snapshot and announce them."""
        ratings = expand_categories(session.categories, self.settings.max_rating)
        if not ratings:
            ratings = ratings_from_events(session.events)
        self.recorder.load_ratings(ratings)
        self.on_categories_loaded.publish(dict(ratings))
        return ratings

    async def load_session(self, session_id: str) -> FeedbackSession:
        if self.document_store is None:
            raise PersistenceError(f"no document store configured to load '{session_id}'")
        session = await self.document_store.load(session_id)
        self.restore_ratings(session)
        return session

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def start_replay(self, session: FeedbackSession) -> Optional[asyncio.Task]:
        """Begin replaying ``session``.

        With a running event loop the scheduler loop is started as a task and
        returned; without one the caller drives ``self.replay.pump()``.
        """
        self.replay.start(session)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        self._replay_task = loop.create_task(self.replay.run())
        return self._replay_task

    def pause_replay(self) -> None:
        self.replay.pause()

    def resume_replay(self) -> None:
        self.replay.resume()

    def seek(self, target_ms: float) -> None:
        self.replay.seek(target_ms)

    def stop_replay(self) -> None:
        self.replay.stop()
        task, self._replay_task = self._replay_task, None
        if task is not None and not task.done():
            task.cancel()

    async def wait_replay(self) -> None:
        """Wait for the running replay loop to finish (complete or stopped)."""
        task = self._replay_task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        finally:
            if self._replay_task is task:
                self._replay_task = None

    async def close(self) -> None:
        """Stop replay and abandon any capture in progress."""
        self.stop_replay()
        capture = self._capture
        if capture is not None:
            try:
                await capture.pipeline.stop()
            finally:
                capture.clock.stop()
                self._teardown(capture)
