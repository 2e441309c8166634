from pathlib import Path
from typing import Any, Optional


class VidFeedbackError(Exception):
    """Base class for all vidfeedback errors."""


class MicrophonePermissionError(VidFeedbackError, PermissionError):
    def __init__(self, detail: str) -> None:
        super().__init__(
            f"Microphone access was not granted; recording did not start.\n"
            f"  Cause: {detail}\n"
            f"  Check: Is a capture device connected and has the user allowed access?"
        )
        self.detail = detail


class CaptureError(VidFeedbackError):
    def __init__(self, offset_ms: float, detail: str, session: Any = None) -> None:
        super().__init__(
            f"Audio buffer flushed at {offset_ms:.0f}ms was dropped.\n"
            f"  Cause: {detail}"
        )
        self.offset_ms = offset_ms
        self.detail = detail
        self.session = session


class SerializationError(VidFeedbackError):
    def __init__(self, detail: str, chunk_index: Optional[int] = None) -> None:
        where = f"chunk {chunk_index}" if chunk_index is not None else "session"
        super().__init__(
            f"Encoding {where} for storage did not round-trip.\n"
            f"  Cause: {detail}\n"
            f"  Check: Retry the save, or discard the recording if it keeps failing."
        )
        self.detail = detail
        self.chunk_index = chunk_index


class ReplayDesyncError(VidFeedbackError):
    def __init__(self, event_id: str, event_offset_ms: float, cursor_ms: float) -> None:
        super().__init__(
            f"Event '{event_id}' at {event_offset_ms:.0f}ms lies before the replay cursor "
            f"({cursor_ms:.0f}ms); it was clamped to the cursor and applied.\n"
            f"  Check: The stored session events are not sorted by timeOffset."
        )
        self.event_id = event_id
        self.event_offset_ms = event_offset_ms
        self.cursor_ms = cursor_ms


class PersistenceError(VidFeedbackError):
    def __init__(self, detail: str, session: Any = None) -> None:
        super().__init__(
            f"Storage operation failed.\n"
            f"  Cause: {detail}\n"
            f"  Tip: The in-memory session is kept on this error; retry the save."
        )
        self.detail = detail
        self.session = session


class AlreadyActiveError(VidFeedbackError):
    def __init__(self, what: str) -> None:
        super().__init__(
            f"A {what} is already active.\n"
            f"  Check: Stop the existing {what} before starting a new one."
        )
        self.what = what


class ClockStateError(VidFeedbackError):
    def __init__(self, operation: str, state: str) -> None:
        super().__init__(f"Cannot {operation} a timeline clock in state '{state}'.")
        self.operation = operation
        self.state = state


class SessionFileError(VidFeedbackError):
    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(
            f"Cannot load session '{path.name}'.\n"
            f"  Cause: {detail}\n"
            f"  Check: Is the file a feedback session exported as JSON or msgpack?"
        )
        self.path = path
        self.detail = detail
