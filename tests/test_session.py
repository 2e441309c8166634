"""Tests for the session schema, ratings helpers and JSON loading."""
import json

import pytest
from pydantic import ValidationError

from conftest import SESSION_START, make_path
from vidfeedback.errors import SessionFileError
from vidfeedback.session.loader import load_session, parse_session, restore_chunks
from vidfeedback.session.ratings import carried_ratings, collapse_ratings, expand_categories, ratings_from_events
from vidfeedback.session.schema import (
    AnnotationEvent,
    AnnotationPayload,
    AudioChunk,
    AudioTrack,
    CategoryPayload,
    FeedbackSession,
    MarkerPayload,
    VideoAction,
    VideoPayload,
    make_event,
)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class TestPayloads:
    def test_seek_requires_target(self):
        with pytest.raises(ValidationError):
            VideoPayload(action=VideoAction.SEEK)

    def test_rate_must_be_positive(self):
        with pytest.raises(ValidationError):
            VideoPayload(action=VideoAction.RATE_CHANGE, to=0)

    def test_draw_requires_path(self):
        with pytest.raises(ValidationError):
            AnnotationPayload(action="draw")

    def test_clear_needs_no_path(self):
        assert AnnotationPayload(action="clear").path is None

    def test_make_event_picks_variant(self):
        event = make_event("a", 10.0, AnnotationPayload(action="draw", path=make_path()))
        assert isinstance(event, AnnotationEvent)
        assert event.type == "annotation"

    def test_make_event_rejects_unknown_payload(self):
        with pytest.raises(TypeError):
            make_event("a", 0.0, {"action": "play"})

    def test_marker_end_offset_includes_duration(self):
        event = make_event("m", 100.0, MarkerPayload(text="here"), duration=250.0)
        assert event.end_offset == 350.0


class TestAudioTrack:
    def test_total_duration_must_match_last_chunk(self):
        chunk = AudioChunk(start_time=0, duration=1000)
        with pytest.raises(ValidationError):
            AudioTrack(chunks=[chunk], total_duration=900)

    def test_overlapping_chunks_rejected(self):
        chunks = [AudioChunk(start_time=0, duration=1000), AudioChunk(start_time=500, duration=1000)]
        with pytest.raises(ValidationError):
            AudioTrack(chunks=chunks, total_duration=1500)

    def test_chunk_at(self):
        track = AudioTrack.from_chunks([
            AudioChunk(start_time=0, duration=1000),
            AudioChunk(start_time=1000, duration=500),
        ])
        assert track.chunk_at(0) == 0
        assert track.chunk_at(1000) == 1
        assert track.chunk_at(1500) is None

    def test_in_memory_bytes_never_serialized(self):
        chunk = AudioChunk(start_time=0, duration=10, data=b"raw")
        assert "data" not in chunk.model_dump(by_alias=True)


class TestFeedbackSession:
    def test_end_time_must_cover_content(self):
        events = [make_event("e", 2000.0, MarkerPayload(text="late"))]
        with pytest.raises(ValidationError):
            FeedbackSession(id="s", video_id="v", start_time=SESSION_START,
                            end_time=SESSION_START + 1000, events=events)

    def test_json_uses_camel_case_and_discriminator(self, scenario_session):
        doc = json.loads(scenario_session.to_json())
        assert doc["videoId"] == "v1"
        assert doc["audioTrack"]["totalDuration"] == 1500.0
        assert doc["audioTrack"]["chunks"][0]["blobUrl"] == "https://blobs.example/s1/0"
        assert [e["type"] for e in doc["events"]] == ["video", "category", "annotation"]
        assert doc["events"][1]["timeOffset"] == 500.0

    def test_video_from_field_alias(self):
        payload = VideoPayload.model_validate({"action": "play", "from": 12.5})
        assert payload.from_ == 12.5
        assert payload.model_dump(by_alias=True, exclude_none=True) == {"action": "play", "from": 12.5}

    def test_duration_of_unfinalized_session(self):
        events = [make_event("e", 700.0, MarkerPayload(text="x"), duration=100.0)]
        session = FeedbackSession(id="s", video_id="v", start_time=SESSION_START, events=events)
        assert not session.is_finalized
        assert session.duration_ms == 800.0


# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------

def test_collapse_drops_unrated_and_zero():
    assert collapse_ratings({"a": 3, "b": None, "c": 0}) == {"a": 3}


def test_expand_treats_true_as_max():
    assert expand_categories({"a": True, "b": False, "c": 2}, max_rating=5) == {"a": 5, "b": None, "c": 2}


def test_ratings_from_events_last_wins():
    events = [
        make_event("1", 0.0, CategoryPayload(category="grip", rating=2)),
        make_event("2", 10.0, CategoryPayload(category="grip", rating=4)),
        make_event("3", 20.0, CategoryPayload(category="stance", rating=3)),
        make_event("4", 30.0, CategoryPayload(category="stance", rating=None)),
    ]
    assert ratings_from_events(events) == {"grip": 4, "stance": None}


def test_carried_ratings_skip_categories_with_events():
    events = [make_event("1", 10.0, CategoryPayload(category="grip", rating=4))]
    carried = carried_ratings({"grip": 4, "stance": True, "focus": False}, events, max_rating=5)
    assert carried == {"stance": 5}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def test_load_session_round_trip(tmp_path, scenario_session):
    path = tmp_path / "s1.json"
    path.write_text(scenario_session.to_json(), encoding="utf-8")
    loaded = load_session(path)
    assert loaded == scenario_session


def test_load_missing_file_raises(tmp_path):
    with pytest.raises(SessionFileError):
        load_session(tmp_path / "missing.json")


def test_parse_reports_field_errors():
    with pytest.raises(SessionFileError) as exc_info:
        parse_session(json.dumps({"id": "s", "videoId": "v", "startTime": 0,
                                  "events": [{"id": "e", "type": "bogus", "timeOffset": 0, "payload": {}}]}))
    assert "events" in str(exc_info.value)


def test_restore_takes_mime_from_data_url():
    chunk = AudioChunk(start_time=0, duration=10, blob="data:audio/ogg;base64,AAEC")
    session = FeedbackSession(id="s", video_id="v", start_time=0, audio_track=AudioTrack.from_chunks([chunk]))
    restored = restore_chunks(session)
    assert restored.audio_track.chunks[0].mime_type == "audio/ogg"


def test_restore_drops_inline_blob_when_uploaded():
    chunk = AudioChunk(start_time=0, duration=10, blob="data:audio/ogg;base64,AAEC", blob_url="https://x/1")
    session = FeedbackSession(id="s", video_id="v", start_time=0, audio_track=AudioTrack.from_chunks([chunk]))
    assert restore_chunks(session).audio_track.chunks[0].blob is None
