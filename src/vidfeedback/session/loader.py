from pathlib import Path

from pydantic import ValidationError

from vidfeedback.codec import is_data_url, parse_data_url
from vidfeedback.errors import SerializationError, SessionFileError
from vidfeedback.session.schema import AudioChunk, FeedbackSession


def parse_session(text: str, source: Path = Path("<memory>")) -> FeedbackSession:
    """Validate session JSON text. Raises SessionFileError on failure."""
    try:
        return restore_chunks(FeedbackSession.model_validate_json(text))
    except ValidationError as e:
        field_errors = "; ".join(
            f"{' -> '.join(str(x) for x in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise SessionFileError(source, f"Schema validation failed: {field_errors}") from e


def load_session(path: Path) -> FeedbackSession:
    """Load and validate a session JSON file. Raises SessionFileError on failure."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SessionFileError(path, str(e)) from e
    return parse_session(text, path)


def _restore_chunk(chunk: AudioChunk) -> AudioChunk:
    if chunk.blob_url:
        return chunk.model_copy(update={"blob": None})
    if is_data_url(chunk.blob):
        try:
            mime, _ = parse_data_url(chunk.blob)
        except SerializationError:
            return chunk
        return chunk.model_copy(update={"mime_type": mime})
    return chunk


def restore_chunks(session: FeedbackSession) -> FeedbackSession:
    """Normalize audio chunk references after loading.

    Uploaded chunks drop any inline blob; inline data-URL chunks take their
    MIME type from the data URL header.
    """
    chunks = [_restore_chunk(c) for c in session.audio_track.chunks]
    track = session.audio_track.model_copy(update={"chunks": chunks})
    return session.model_copy(update={"audio_track": track})
