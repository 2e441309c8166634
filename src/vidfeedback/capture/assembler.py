"""Session assembler: event log + audio track + ratings -> one FeedbackSession.

Chunk uploads start as soon as a chunk is captured (``track_chunk``) and run
concurrently with the recording. ``finalize`` awaits every in-flight upload
before it builds the session, so the returned session is never missing audio.

Outcomes of ``finalize``:
  * all uploads succeed  -> chunks carry ``blobUrl``
  * no blob store        -> chunks are inlined as verified data URLs
  * any upload fails     -> ``PersistenceError`` whose ``session`` attribute is
                            the complete in-memory session; failed chunks keep
                            their local bytes so the caller can retry the save
"""
from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Optional

from vidfeedback.codec import BlobCodec, default_codec
from vidfeedback.errors import PersistenceError
from vidfeedback.session.ratings import collapse_ratings
from vidfeedback.session.schema import AudioChunk, AudioTrack, FeedbackSession, content_end
from vidfeedback.storage import BlobStore

logger = logging.getLogger(__name__)


class SessionAssembler:
    def __init__(
        self,
        session_id: str,
        video_id: str,
        start_time: float,
        blob_store: Optional[BlobStore] = None,
        codec: BlobCodec = default_codec,
    ) -> None:
        self.session_id = session_id
        self.video_id = video_id
        self.start_time = start_time
        self.blob_store = blob_store
        self.codec = codec
        self._uploads: dict[int, asyncio.Task] = {}

    @property
    def pending_uploads(self) -> int:
        return sum(1 for task in self._uploads.values() if not task.done())

    def track_chunk(self, chunk: AudioChunk) -> None:
        """Begin uploading ``chunk`` in the background, if a blob store is configured."""
        if self.blob_store is None or chunk.data is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: finalize uploads it.
            return
        self._uploads[id(chunk)] = loop.create_task(
            self.blob_store.upload(chunk.data, chunk.mime_type, self.session_id)
        )

    async def _resolve_chunk(self, index: int, chunk: AudioChunk, errors: list[str]) -> AudioChunk:
        if self.blob_store is None:
            if chunk.data is None:
                return chunk
            text = await asyncio.to_thread(self.codec.encode_verified, chunk.data, chunk.mime_type, index)
            return chunk.model_copy(update={"blob": text, "data": None})

        task = self._uploads.pop(id(chunk), None)
        try:
            if task is not None:
                url = await task
            elif chunk.data is not None:
                url = await self.blob_store.upload(chunk.data, chunk.mime_type, self.session_id)
            else:
                return chunk
        except PersistenceError as exc:
            logger.warning("Upload of chunk %d failed: %s", index, exc.detail)
            errors.append(f"chunk {index}: {exc.detail}")
            return chunk
        return chunk.model_copy(update={"blob_url": url, "data": None})

    async def finalize(
        self,
        end_clock_value: float,
        events: list,
        chunks: list[AudioChunk],
        ratings: Mapping[str, Optional[int]],
    ) -> FeedbackSession:
        """Freeze the capture into a session.

        Raises:
            SerializationError: an inlined chunk failed its round-trip check.
            PersistenceError: a chunk upload failed; ``.session`` holds the result.
        """
        errors: list[str] = []
        resolved = [await self._resolve_chunk(i, chunk, errors) for i, chunk in enumerate(chunks)]
        for task in self._uploads.values():
            task.cancel()
        self._uploads.clear()

        track = AudioTrack.from_chunks(resolved)
        ordered = sorted(events, key=lambda e: e.time_offset)
        span = max(end_clock_value, content_end(ordered, track))
        session = FeedbackSession(
            id=self.session_id,
            video_id=self.video_id,
            start_time=self.start_time,
            end_time=self.start_time + span,
            audio_track=track,
            events=ordered,
            categories=collapse_ratings(ratings),
        )
        logger.info(
            "Session %s finalized: %d events, %d chunks, %.1fms",
            session.id, len(session.events), len(track.chunks), span,
        )
        if errors:
            raise PersistenceError("; ".join(errors), session=session)
        return session
