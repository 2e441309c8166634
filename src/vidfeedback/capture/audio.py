"""Audio capture pipeline: microphone buffers -> timestamped AudioChunks.

The microphone itself is an external collaborator behind the ``AudioInput``
protocol. Whenever the input flushes a buffer, ``on_chunk`` wraps it into an
``AudioChunk`` spanning from the end of the previous chunk to the current
timeline clock value, so chunks within a track abut and never overlap.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Protocol

from vidfeedback.clock import ClockState, TimelineClock
from vidfeedback.config import AUDIO_MIME_PREFERENCES, DEFAULT_AUDIO_MIME
from vidfeedback.errors import AlreadyActiveError, CaptureError, MicrophonePermissionError
from vidfeedback.session.schema import AudioChunk, AudioTrack
from vidfeedback.signals import Signal

logger = logging.getLogger(__name__)


class AudioInput(Protocol):
    """A live microphone stream.

    ``stop`` must hand the last partial buffer to ``on_data`` before it
    returns, then release the device.
    """

    def is_type_supported(self, mime_type: str) -> bool: ...

    def start(self, mime_type: str, on_data: Callable[[bytes], None]) -> None: ...

    async def stop(self) -> None: ...


StreamOpener = Callable[[], Awaitable[Optional[AudioInput]]]


def choose_mime_type(stream: AudioInput, preferences: tuple[str, ...] = AUDIO_MIME_PREFERENCES) -> str:
    """First preferred encoding the stream supports, else ``audio/webm``."""
    for mime_type in preferences:
        if stream.is_type_supported(mime_type):
            return mime_type
    logger.warning("No preferred audio encoding supported; falling back to %s", DEFAULT_AUDIO_MIME)
    return DEFAULT_AUDIO_MIME


class AudioCapturePipeline:
    def __init__(
        self,
        clock: TimelineClock,
        video_position: Callable[[], float] = lambda: 0.0,
        mime_preferences: tuple[str, ...] = AUDIO_MIME_PREFERENCES,
    ) -> None:
        self.clock = clock
        self.video_position = video_position
        self.mime_preferences = mime_preferences
        self.mime_type: Optional[str] = None
        self.chunk_captured: Signal[AudioChunk] = Signal("audio-chunk")
        self.capture_failed: Signal[CaptureError] = Signal("audio-capture-error")
        self._stream: Optional[AudioInput] = None
        self._chunks: list[AudioChunk] = []
        self._boundary_ms = 0.0

    @property
    def is_capturing(self) -> bool:
        return self._stream is not None

    @property
    def chunks(self) -> list[AudioChunk]:
        return list(self._chunks)

    async def start(self, open_stream: StreamOpener) -> str:
        """Acquire the microphone and begin capturing. Returns the fixed MIME type.

        Raises:
            AlreadyActiveError: capture is already running.
            MicrophonePermissionError: no stream could be obtained.
        """
        if self._stream is not None:
            raise AlreadyActiveError("audio capture")
        try:
            stream = await open_stream()
        except MicrophonePermissionError:
            raise
        except (PermissionError, OSError) as exc:
            raise MicrophonePermissionError(str(exc) or type(exc).__name__) from exc
        if stream is None:
            raise MicrophonePermissionError("no input stream was returned")

        self.mime_type = choose_mime_type(stream, self.mime_preferences)
        self._chunks = []
        self._boundary_ms = self.clock.now()
        self._stream = stream
        stream.start(self.mime_type, self.on_chunk)
        logger.info("Audio capture started (%s) at %.1fms", self.mime_type, self._boundary_ms)
        return self.mime_type

    def on_chunk(self, data: bytes, offset_ms: Optional[float] = None) -> Optional[AudioChunk]:
        """Wrap one flushed buffer. Empty buffers are logged and dropped."""
        if self._stream is None or self.clock.state is not ClockState.RECORDING:
            logger.warning("Audio buffer of %d bytes arrived outside a recording; dropped", len(data or b""))
            return None
        offset = self.clock.now() if offset_ms is None else max(offset_ms, self._boundary_ms)
        start = self._boundary_ms
        self._boundary_ms = offset

        if not data:
            error = CaptureError(offset, "zero-length buffer")
            logger.warning("Dropped empty audio buffer at %.1fms", offset)
            self.capture_failed.publish(error)
            return None

        chunk = AudioChunk(
            start_time=start,
            duration=offset - start,
            video_time=max(0.0, float(self.video_position())),
            mime_type=self.mime_type or DEFAULT_AUDIO_MIME,
            data=bytes(data),
        )
        self._chunks.append(chunk)
        self.chunk_captured.publish(chunk)
        return chunk

    async def stop(self) -> AudioTrack:
        """Flush the final partial buffer, release the device, return the track."""
        stream = self._stream
        if stream is None:
            return AudioTrack.from_chunks(self._chunks)
        try:
            await stream.stop()
        finally:
            self._stream = None
        logger.info("Audio capture stopped: %d chunks, %.1fms", len(self._chunks), self._boundary_ms)
        return AudioTrack.from_chunks(self._chunks)
