"""Engine settings resolved from environment variables."""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

_logger = logging.getLogger(__name__)

# Tried in order; the first encoding the input supports is fixed for the whole session.
AUDIO_MIME_PREFERENCES: tuple[str, ...] = (
    "audio/webm;codecs=opus",
    "audio/webm",
    "audio/mp4;codecs=opus",
    "audio/mp4",
    "audio/ogg;codecs=opus",
    "audio/ogg",
    "audio/wav",
)
DEFAULT_AUDIO_MIME = "audio/webm"

DEFAULT_MAX_RATING = 5


def get_storage_dir() -> Path:
    """Return the root of the local blob and document stores.

    Respects the VIDFEEDBACK_STORAGE_DIR environment variable.
    Falls back to ~/.vidfeedback when the variable is not set.
    """
    env_val = os.environ.get("VIDFEEDBACK_STORAGE_DIR")
    if env_val is not None:
        return Path(env_val).expanduser().resolve()
    return Path.home() / ".vidfeedback"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        _logger.warning("Ignoring %s=%r: not an integer, using %d", name, raw, default)
        return default
    if value < minimum:
        _logger.warning("Ignoring %s=%d: below minimum %d, using %d", name, value, minimum, default)
        return default
    return value


@dataclass(frozen=True)
class EngineSettings:
    """Tunables shared by capture, replay and persistence."""

    storage_dir: Path = field(default_factory=get_storage_dir)
    blob_endpoint: Optional[str] = None
    max_rating: int = DEFAULT_MAX_RATING
    replay_max_sleep_ms: int = 250
    save_attempts: int = 3
    log_level: str = "WARNING"
    mime_preferences: tuple[str, ...] = AUDIO_MIME_PREFERENCES

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            storage_dir=get_storage_dir(),
            blob_endpoint=os.environ.get("VIDFEEDBACK_BLOB_ENDPOINT") or None,
            max_rating=_env_int("VIDFEEDBACK_MAX_RATING", DEFAULT_MAX_RATING, minimum=1),
            replay_max_sleep_ms=_env_int("VIDFEEDBACK_REPLAY_MAX_SLEEP_MS", 250, minimum=1),
            save_attempts=_env_int("VIDFEEDBACK_SAVE_ATTEMPTS", 3, minimum=1),
            log_level=os.environ.get("VIDFEEDBACK_LOG_LEVEL", "WARNING").upper(),
        )
