"""Shared fakes: a manual time source, a scripted microphone, in-memory stores."""
import pytest

from vidfeedback.clock import reset_active_clocks
from vidfeedback.errors import PersistenceError
from vidfeedback.session.schema import (
    AnnotationPayload,
    AudioChunk,
    AudioTrack,
    CategoryPayload,
    DrawingPath,
    FeedbackSession,
    Point,
    VideoAction,
    VideoPayload,
    make_event,
)

SESSION_START = 1_700_000_000_000.0


class ManualTimeSource:
    """Monotonic nanoseconds that only move when a test says so."""

    def __init__(self, start_ns: int = 100_000_000_000) -> None:
        self.ns = start_ns

    def __call__(self) -> int:
        return self.ns

    def advance_ms(self, ms: float) -> None:
        self.ns += round(ms * 1_000_000)


class FakeAudioInput:
    def __init__(self, supported=("audio/webm;codecs=opus", "audio/webm"), final_chunk=b"tail", stop_error=None):
        self.supported = set(supported)
        self.final_chunk = final_chunk
        self.stop_error = stop_error
        self.mime_type = None
        self.on_data = None
        self.stopped = False

    def is_type_supported(self, mime_type):
        return mime_type in self.supported

    def start(self, mime_type, on_data):
        self.mime_type = mime_type
        self.on_data = on_data

    def emit(self, data):
        self.on_data(data)

    async def stop(self):
        if self.stop_error is not None:
            raise self.stop_error
        if self.final_chunk is not None:
            self.on_data(self.final_chunk)
        self.stopped = True


class MemoryBlobStore:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.blobs: dict[str, bytes] = {}
        self.upload_calls = 0

    async def upload(self, data, mime_type, session_id):
        self.upload_calls += 1
        if self.fail:
            raise PersistenceError("storage offline")
        url = f"https://blobs.example/{session_id}/{len(self.blobs)}"
        self.blobs[url] = data
        return url

    async def download(self, url):
        try:
            return self.blobs[url]
        except KeyError:
            raise PersistenceError(f"no blob at {url}") from None


class MemoryDocumentStore:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.saved: dict[str, FeedbackSession] = {}
        self.save_calls = 0

    async def save(self, session):
        self.save_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("document store unavailable")
        self.saved[session.id] = session

    async def load(self, session_id):
        try:
            return self.saved[session_id]
        except KeyError:
            raise PersistenceError(f"no stored session '{session_id}'") from None


class RecordingConsumers:
    """Video, drawing, category and audio consumers that log every call."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []

    # video
    def play(self, *args):
        if args:
            self.calls.append(("audio.play", args[0].start_time, args[1]))
        else:
            self.calls.append(("video.play",))

    def pause(self):
        self.calls.append(("video.pause",))

    def seek(self, position_ms):
        self.calls.append(("video.seek", position_ms))

    def set_rate(self, rate):
        self.calls.append(("video.rate", rate))

    # drawing
    def draw(self, path):
        self.calls.append(("draw", path.id))

    def clear(self):
        self.calls.append(("clear",))

    # categories
    def show_ratings(self, ratings):
        self.calls.append(("ratings", dict(ratings)))

    # audio
    def stop(self):
        self.calls.append(("audio.stop",))

    def named(self, name):
        return [c for c in self.calls if c[0] == name]


def make_path(path_id: str = "p1") -> DrawingPath:
    return DrawingPath(points=[Point(x=0.1, y=0.2), Point(x=0.3, y=0.4)], id=path_id)


def build_scenario_session() -> FeedbackSession:
    """play@0, setupAlignment=4 @500, draw@1200; one chunk 0..1500."""
    events = [
        make_event("e1", 0.0, VideoPayload(action=VideoAction.PLAY)),
        make_event("e2", 500.0, CategoryPayload(category="setupAlignment", rating=4)),
        make_event("e3", 1200.0, AnnotationPayload(action="draw", path=make_path("p1"))),
    ]
    chunk = AudioChunk(start_time=0.0, duration=1500.0, blob_url="https://blobs.example/s1/0")
    return FeedbackSession(
        id="s1",
        video_id="v1",
        start_time=SESSION_START,
        end_time=SESSION_START + 1500.0,
        audio_track=AudioTrack.from_chunks([chunk]),
        events=events,
        categories={"setupAlignment": 4},
    )


@pytest.fixture(autouse=True)
def _fresh_clock_registry():
    reset_active_clocks()
    yield
    reset_active_clocks()


@pytest.fixture
def time_source():
    return ManualTimeSource()


@pytest.fixture
def stream():
    return FakeAudioInput()


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def document_store():
    return MemoryDocumentStore()


@pytest.fixture
def consumers():
    return RecordingConsumers()


@pytest.fixture
def scenario_session():
    return build_scenario_session()
