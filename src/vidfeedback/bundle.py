"""Self-contained session bundles for moving a session between machines.

Bundle formats
--------------
``*.json``      the session document with every audio chunk inlined as a
                base64 data URL in ``blob`` (the transport form). Readable by
                anything that reads stored sessions.

``*.msgpack``   a msgpack dict carrying the session document without audio
                payloads plus the raw chunk bytes::

                    {
                        "format": "vidfeedback-bundle",
                        "version": 1,
                        "session": {...camelCase session document...},
                        "audio": [b"...", None, ...]   # one entry per chunk
                    }

Chunks stored as ``blobUrl`` are downloaded through the given blob store while
exporting, so a bundle never references anything outside itself. Imported
chunks carry their bytes in memory (``AudioChunk.data``); saving the imported
session re-uploads or re-inlines them.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import msgpack
from pydantic import ValidationError

from vidfeedback.codec import BlobCodec, default_codec
from vidfeedback.errors import PersistenceError, SessionFileError
from vidfeedback.session.loader import load_session
from vidfeedback.session.schema import AudioChunk, FeedbackSession
from vidfeedback.storage import BlobStore, atomic_write_bytes

logger = logging.getLogger(__name__)

BUNDLE_FORMAT = "vidfeedback-bundle"
BUNDLE_VERSION = 1
MSGPACK_SUFFIXES = {".msgpack", ".mpk"}


def _is_msgpack(path: Path) -> bool:
    return path.suffix.lower() in MSGPACK_SUFFIXES


async def _chunk_bytes(
    index: int,
    chunk: AudioChunk,
    blob_store: Optional[BlobStore],
    codec: BlobCodec,
) -> Optional[bytes]:
    if chunk.data is not None:
        return chunk.data
    if chunk.blob:
        return codec.decode(chunk.blob, chunk.mime_type)
    if chunk.blob_url:
        if blob_store is None:
            raise PersistenceError(f"chunk {index} is stored at {chunk.blob_url} and no blob store was given")
        return await blob_store.download(chunk.blob_url)
    logger.warning("Chunk %d carries no audio; exporting it empty", index)
    return None


async def collect_audio(
    session: FeedbackSession,
    blob_store: Optional[BlobStore] = None,
    codec: BlobCodec = default_codec,
) -> list[Optional[bytes]]:
    """Raw bytes of every chunk in track order (None for a chunk without audio)."""
    return [
        await _chunk_bytes(i, chunk, blob_store, codec)
        for i, chunk in enumerate(session.audio_track.chunks)
    ]


def _strip_audio(session: FeedbackSession) -> FeedbackSession:
    chunks = [c.model_copy(update={"blob": None, "blob_url": None, "data": None}) for c in session.audio_track.chunks]
    return session.model_copy(update={"audio_track": session.audio_track.model_copy(update={"chunks": chunks})})


def _with_audio(session: FeedbackSession, audio: list[Optional[bytes]], inline: Optional[BlobCodec]) -> FeedbackSession:
    chunks = []
    for chunk, data in zip(session.audio_track.chunks, audio):
        if data is None:
            chunks.append(chunk)
        elif inline is not None:
            chunks.append(chunk.model_copy(update={"blob": inline.encode(data, chunk.mime_type), "blob_url": None}))
        else:
            chunks.append(chunk.model_copy(update={"data": data}))
    return session.model_copy(update={"audio_track": session.audio_track.model_copy(update={"chunks": chunks})})


async def export_bundle(
    session: FeedbackSession,
    dest: Path,
    blob_store: Optional[BlobStore] = None,
    codec: BlobCodec = default_codec,
) -> Path:
    """Write ``session`` and all of its audio to ``dest``; format follows the suffix.

    Raises:
        PersistenceError: a chunk's audio could not be fetched.
        SerializationError: inline audio could not be decoded.
    """
    audio = await collect_audio(session, blob_store, codec)
    bare = _strip_audio(session)
    if _is_msgpack(dest):
        payload = {
            "format": BUNDLE_FORMAT,
            "version": BUNDLE_VERSION,
            "session": bare.model_dump(mode="json", by_alias=True, exclude_none=True),
            "audio": audio,
        }
        data = msgpack.packb(payload, use_bin_type=True)
    else:
        data = _with_audio(bare, audio, codec).to_json().encode("utf-8")

    dest.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_bytes(dest, data)
    logger.info("Exported session %s (%d chunks) to %s", session.id, len(audio), dest)
    return dest


def _load_msgpack_bundle(path: Path) -> FeedbackSession:
    try:
        payload = msgpack.unpackb(path.read_bytes(), raw=False, strict_map_key=False)
    except OSError as e:
        raise SessionFileError(path, str(e)) from e
    except (msgpack.exceptions.UnpackException, ValueError) as e:
        raise SessionFileError(path, f"not a msgpack bundle: {e}") from e

    if not isinstance(payload, dict) or payload.get("format") != BUNDLE_FORMAT:
        raise SessionFileError(path, "missing the vidfeedback-bundle format marker")
    if payload.get("version") != BUNDLE_VERSION:
        raise SessionFileError(path, f"unsupported bundle version {payload.get('version')!r}")

    try:
        session = FeedbackSession.model_validate(payload["session"])
    except (KeyError, ValidationError) as e:
        raise SessionFileError(path, f"invalid session document: {e}") from e

    audio = payload.get("audio") or []
    if len(audio) != len(session.audio_track.chunks):
        raise SessionFileError(
            path, f"{len(audio)} audio payloads for {len(session.audio_track.chunks)} chunks"
        )
    return _with_audio(session, audio, inline=None)


def import_bundle(path: Path) -> FeedbackSession:
    """Read a bundle written by ``export_bundle``. Raises SessionFileError on failure."""
    if _is_msgpack(path):
        session = _load_msgpack_bundle(path)
    else:
        session = load_session(path)
    logger.info("Imported session %s from %s", session.id, path)
    return session
