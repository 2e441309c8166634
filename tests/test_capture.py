"""Tests for the audio capture pipeline and the event recorder."""
import asyncio

import pytest

from conftest import FakeAudioInput, make_path
from vidfeedback.capture.audio import AudioCapturePipeline, choose_mime_type
from vidfeedback.capture.recorder import EventRecorder
from vidfeedback.clock import ClockMode, TimelineClock
from vidfeedback.errors import AlreadyActiveError, MicrophonePermissionError
from vidfeedback.session.schema import VideoAction


def _opener(stream):
    async def _open():
        return stream
    return _open


# ---------------------------------------------------------------------------
# Audio capture pipeline
# ---------------------------------------------------------------------------

class TestMimeSelection:
    def test_first_supported_preference_wins(self):
        stream = FakeAudioInput(supported=("audio/mp4", "audio/ogg"))
        assert choose_mime_type(stream) == "audio/mp4"

    def test_falls_back_to_webm(self):
        stream = FakeAudioInput(supported=())
        assert choose_mime_type(stream) == "audio/webm"


class TestAudioCapturePipeline:
    def test_chunks_abut_and_carry_video_position(self, time_source, stream):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        pipeline = AudioCapturePipeline(clock, video_position=lambda: 42.0)

        async def _run():
            mime = await pipeline.start(_opener(stream))
            time_source.advance_ms(1000)
            stream.emit(b"first")
            time_source.advance_ms(500)
            return mime, await pipeline.stop()

        mime, track = asyncio.run(_run())
        assert mime == "audio/webm;codecs=opus"
        assert [(c.start_time, c.duration) for c in track.chunks] == [(0.0, 1000.0), (1000.0, 500.0)]
        assert track.total_duration == 1500.0
        assert track.chunks[-1].data == b"tail"
        assert all(c.video_time == 42.0 for c in track.chunks)
        assert stream.stopped

    def test_empty_buffer_dropped_and_reported(self, time_source, stream):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        pipeline = AudioCapturePipeline(clock)
        failures = []
        pipeline.capture_failed.subscribe(failures.append)

        async def _run():
            await pipeline.start(_opener(stream))
            time_source.advance_ms(300)
            stream.emit(b"")
            time_source.advance_ms(300)
            stream.emit(b"audio")

        asyncio.run(_run())
        assert len(failures) == 1
        assert failures[0].offset_ms == pytest.approx(300.0)
        assert [(c.start_time, c.duration) for c in pipeline.chunks] == [(300.0, 300.0)]

    def test_permission_denied_produces_no_chunks(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        pipeline = AudioCapturePipeline(clock)

        async def _denied():
            raise PermissionError("NotAllowedError")

        with pytest.raises(MicrophonePermissionError) as exc_info:
            asyncio.run(pipeline.start(_denied))
        assert isinstance(exc_info.value, PermissionError)
        assert not pipeline.is_capturing
        assert pipeline.chunks == []

    def test_missing_stream_is_permission_error(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        pipeline = AudioCapturePipeline(clock)
        with pytest.raises(MicrophonePermissionError):
            asyncio.run(pipeline.start(_opener(None)))

    def test_second_start_rejected(self, time_source, stream):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        pipeline = AudioCapturePipeline(clock)

        async def _run():
            await pipeline.start(_opener(stream))
            await pipeline.start(_opener(FakeAudioInput()))

        with pytest.raises(AlreadyActiveError):
            asyncio.run(_run())

    def test_buffers_after_clock_stop_are_dropped(self, time_source, stream):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        pipeline = AudioCapturePipeline(clock)
        asyncio.run(pipeline.start(_opener(stream)))
        clock.stop()
        assert pipeline.on_chunk(b"late") is None
        assert pipeline.chunks == []


# ---------------------------------------------------------------------------
# Event recorder
# ---------------------------------------------------------------------------

class TestEventRecorder:
    def test_records_only_while_recording(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        recorder = EventRecorder(clock)
        assert recorder.record_video(VideoAction.PLAY) is None
        clock.start()
        time_source.advance_ms(120)
        event = recorder.record_video("play")
        clock.stop()
        assert recorder.record_video("pause") is None
        assert [e.id for e in recorder.events] == [event.id]
        assert event.time_offset == pytest.approx(120.0)

    def test_ids_are_unique(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        recorder = EventRecorder(clock)
        clock.start()
        ids = {recorder.add_marker(f"m{i}").id for i in range(50)}
        assert len(ids) == 50

    def test_out_of_order_stamp_is_corrected(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        recorder = EventRecorder(clock)
        clock.start()
        time_source.advance_ms(500)
        recorder.record_video("play")
        late = recorder.record_annotation(make_path(), at_ms=200.0)
        assert late.time_offset == pytest.approx(500.0)
        assert len(recorder.reorder_warnings) == 1
        offsets = [e.time_offset for e in recorder.events]
        assert offsets == sorted(offsets)

    def test_category_change_while_idle_updates_snapshot_only(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        ratings = {}
        recorder = EventRecorder(clock, ratings)
        assert recorder.set_category("grip", 3) is None
        assert ratings == {"grip": 3}
        assert recorder.events == []
        assert recorder.category_changes[0].time_offset is None

    def test_reverting_rating_is_logged(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        recorder = EventRecorder(clock)
        clock.start()
        recorder.set_category("grip", 3)
        recorder.set_category("grip", 0)
        assert [e.payload.rating for e in recorder.events] == [3, None]
        assert recorder.ratings == {"grip": None}

    def test_annotation_signal_fires_only_when_recorded(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        recorder = EventRecorder(clock)
        seen = []
        recorder.annotation_added.subscribe(seen.append)
        recorder.record_annotation(make_path("idle"))
        clock.start()
        recorder.record_annotation(make_path("live"))
        assert [p.id for p in seen] == ["live"]

    def test_clear_categories_logs_each_rated_one(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        recorder = EventRecorder(clock, {"a": 2, "b": None, "c": 5})
        clock.start()
        recorder.clear_categories()
        assert sorted(e.payload.category for e in recorder.events) == ["a", "c"]
        assert all(v is None for v in recorder.ratings.values())
