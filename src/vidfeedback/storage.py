"""Binary-object and document stores consumed by the engine.

Two collaborator contracts:

    BlobStore      upload(bytes) -> url, download(url) -> bytes
    DocumentStore  save(session), load(id) -> session

Local implementations write atomically (tempfile + os.replace) so a file is
either the old version or the new one, never partially written. The HTTP blob
store posts multipart form data (``audio`` file + ``sessionId``) and expects a
JSON body ``{"url": ...}`` back. Every failure surfaces as ``PersistenceError``.
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol
from urllib.parse import unquote, urlparse

import requests

from vidfeedback.codec import BlobCodec, default_codec
from vidfeedback.errors import PersistenceError, SessionFileError
from vidfeedback.session.loader import load_session
from vidfeedback.session.schema import AudioChunk, FeedbackSession

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/mp4": "m4a",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
}


class BlobStore(Protocol):
    async def upload(self, data: bytes, mime_type: str, session_id: str) -> str: ...

    async def download(self, url: str) -> bytes: ...


class DocumentStore(Protocol):
    async def save(self, session: FeedbackSession) -> None: ...

    async def load(self, session_id: str) -> FeedbackSession: ...


def blob_extension(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type.split(";")[0].strip().lower(), "bin")


def atomic_write_bytes(dest: Path, data: bytes) -> None:
    """Write ``data`` to ``dest`` via a temp file in the same directory + os.replace()."""
    fd, tmp_path = tempfile.mkstemp(dir=dest.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, dest)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class LocalBlobStore:
    """Blobs under ``<root>/blobs``; URLs are ``file://`` URIs."""

    def __init__(self, root: Path) -> None:
        self.root = root / "blobs"

    def _write(self, data: bytes, mime_type: str, session_id: str) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        dest = self.root / f"{session_id}-{uuid.uuid4().hex[:12]}.{blob_extension(mime_type)}"
        atomic_write_bytes(dest, data)
        return dest.resolve().as_uri()

    async def upload(self, data: bytes, mime_type: str, session_id: str) -> str:
        if not data:
            raise PersistenceError("refusing to upload an empty audio blob")
        try:
            return await asyncio.to_thread(self._write, data, mime_type, session_id)
        except OSError as exc:
            raise PersistenceError(f"could not write blob under {self.root}: {exc}") from exc

    async def download(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme != "file":
            raise PersistenceError(f"LocalBlobStore cannot fetch '{url}'")
        path = Path(unquote(parsed.path))
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise PersistenceError(f"could not read blob {path}: {exc}") from exc


class HttpBlobStore:
    """Uploads to an HTTP endpoint that answers with ``{"url": ...}``."""

    def __init__(self, endpoint: str, timeout_s: float = 30.0) -> None:
        self.endpoint = endpoint
        self.timeout_s = timeout_s

    def _post(self, data: bytes, mime_type: str, session_id: str) -> str:
        files = {"audio": (f"audio.{blob_extension(mime_type)}", data, mime_type)}
        resp = requests.post(self.endpoint, files=files, data={"sessionId": session_id}, timeout=self.timeout_s)
        if not resp.ok:
            try:
                message = resp.json().get("error") or resp.reason
            except ValueError:
                message = resp.reason
            raise PersistenceError(f"upload rejected: {message} (status: {resp.status_code})")
        url = resp.json().get("url")
        if not url:
            raise PersistenceError("upload response carried no URL")
        return url

    def _get(self, url: str) -> bytes:
        resp = requests.get(url, timeout=self.timeout_s)
        resp.raise_for_status()
        return resp.content

    async def upload(self, data: bytes, mime_type: str, session_id: str) -> str:
        if not data:
            raise PersistenceError("refusing to upload an empty audio blob")
        try:
            return await asyncio.to_thread(self._post, data, mime_type, session_id)
        except (requests.RequestException, ValueError) as exc:
            raise PersistenceError(f"upload to {self.endpoint} failed: {exc}") from exc

    async def download(self, url: str) -> bytes:
        try:
            return await asyncio.to_thread(self._get, url)
        except requests.RequestException as exc:
            raise PersistenceError(f"download of {url} failed: {exc}") from exc


class LocalDocumentStore:
    """Session documents at ``<root>/sessions/<id>.json``."""

    def __init__(self, root: Path) -> None:
        self.root = root / "sessions"

    def path_for(self, session_id: str) -> Path:
        return self.root / f"{session_id}.json"

    def _write(self, session: FeedbackSession) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        atomic_write_bytes(self.path_for(session.id), session.to_json().encode("utf-8"))

    async def save(self, session: FeedbackSession) -> None:
        try:
            await asyncio.to_thread(self._write, session)
        except OSError as exc:
            raise PersistenceError(f"could not save session {session.id}: {exc}", session=session) from exc

    async def load(self, session_id: str) -> FeedbackSession:
        path = self.path_for(session_id)
        if not path.exists():
            raise PersistenceError(f"no stored session '{session_id}' under {self.root}")
        try:
            return await asyncio.to_thread(load_session, path)
        except SessionFileError as exc:
            raise PersistenceError(exc.detail) from exc


def make_blob_store(root: Path, endpoint: Optional[str] = None) -> BlobStore:
    if endpoint:
        return HttpBlobStore(endpoint)
    return LocalBlobStore(root)


async def _prepare_chunk(
    index: int,
    chunk: AudioChunk,
    session_id: str,
    blob_store: Optional[BlobStore],
    codec: BlobCodec,
    errors: list[PersistenceError],
) -> AudioChunk:
    if chunk.blob_url:
        return chunk.model_copy(update={"blob": None, "data": None})
    data = chunk.local_bytes()
    if data is None:
        logger.warning("Chunk %d has no audio payload; storing it empty", index)
        return chunk
    if blob_store is not None:
        try:
            url = await blob_store.upload(data, chunk.mime_type, session_id)
            return chunk.model_copy(update={"blob_url": url, "blob": None, "data": None})
        except PersistenceError as exc:
            logger.warning("Upload of chunk %d failed, inlining it instead: %s", index, exc.detail)
            errors.append(exc)
    if chunk.data is None:
        # already inline
        return chunk
    text = await asyncio.to_thread(codec.encode_verified, data, chunk.mime_type, index)
    return chunk.model_copy(update={"blob": text, "data": None})


async def prepare_session_for_storage(
    session: FeedbackSession,
    blob_store: Optional[BlobStore] = None,
    codec: BlobCodec = default_codec,
) -> tuple[FeedbackSession, list[PersistenceError]]:
    """Replace in-memory chunk bytes with uploaded URLs, or inline data URLs on failure.

    Returns the storable session plus the upload errors that forced inlining.

    Raises:
        SerializationError: an inlined chunk did not survive the encode round trip.
    """
    errors: list[PersistenceError] = []
    chunks = [
        await _prepare_chunk(i, chunk, session.id, blob_store, codec, errors)
        for i, chunk in enumerate(session.audio_track.chunks)
    ]
    track = session.audio_track.model_copy(update={"chunks": chunks})
    return session.model_copy(update={"audio_track": track}), errors


async def save_with_retry(
    store: DocumentStore,
    session: FeedbackSession,
    attempts: int = 3,
    base_delay_s: float = 0.5,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Save with exponential backoff; re-raise the last PersistenceError."""
    for attempt in range(1, attempts + 1):
        try:
            await store.save(session)
            return
        except PersistenceError as exc:
            if attempt == attempts:
                exc.session = session
                raise
            delay = base_delay_s * (2 ** (attempt - 1))
            logger.warning("Save attempt %d/%d failed (%s); retrying in %.2fs", attempt, attempts, exc.detail, delay)
            await sleep(delay)
