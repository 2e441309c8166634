"""Unit tests for the timeline clock and the active-clock registry."""
import pytest

from vidfeedback.clock import ClockMode, ClockState, TimelineClock, active_clock
from vidfeedback.errors import AlreadyActiveError, ClockStateError


class TestCaptureClock:
    def test_starts_idle_at_zero(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        assert clock.state is ClockState.IDLE
        assert clock.now() == 0.0

    def test_now_tracks_elapsed_ms(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        time_source.advance_ms(250)
        assert clock.now() == pytest.approx(250.0)
        assert clock.state is ClockState.RECORDING

    def test_now_never_decreases(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        time_source.advance_ms(100)
        assert clock.now() == pytest.approx(100.0)
        time_source.advance_ms(-50)  # misbehaving source
        assert clock.now() == pytest.approx(100.0)

    def test_repeated_advances_stay_on_whole_milliseconds(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        for _ in range(12):
            time_source.advance_ms(100)
        assert clock.now() == 1200.0

    def test_stop_is_terminal_and_freezes(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        time_source.advance_ms(1500)
        assert clock.stop() == pytest.approx(1500.0)
        time_source.advance_ms(1000)
        assert clock.now() == pytest.approx(1500.0)
        assert clock.state is ClockState.STOPPED
        with pytest.raises(ClockStateError):
            clock.start()

    def test_start_twice_raises(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        with pytest.raises(AlreadyActiveError):
            clock.start()

    def test_capture_clock_cannot_pause_or_seek(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        clock.start()
        with pytest.raises(ClockStateError):
            clock.pause()
        with pytest.raises(ClockStateError):
            clock.seek(10)

    def test_transitions_are_published(self, time_source):
        clock = TimelineClock(ClockMode.CAPTURE, time_source)
        seen = []
        clock.transitions.subscribe(seen.append)
        clock.start()
        clock.stop()
        assert seen == [
            (ClockState.IDLE, ClockState.RECORDING),
            (ClockState.RECORDING, ClockState.STOPPED),
        ]


class TestReplayClock:
    def test_pause_freezes_and_resume_continues(self, time_source):
        clock = TimelineClock(ClockMode.REPLAY, time_source)
        clock.start()
        time_source.advance_ms(400)
        clock.pause()
        time_source.advance_ms(1000)
        assert clock.now() == pytest.approx(400.0)
        clock.resume()
        time_source.advance_ms(100)
        assert clock.now() == pytest.approx(500.0)

    def test_seek_moves_backwards_explicitly(self, time_source):
        clock = TimelineClock(ClockMode.REPLAY, time_source)
        clock.start()
        time_source.advance_ms(900)
        clock.seek(200)
        assert clock.now() == pytest.approx(200.0)
        time_source.advance_ms(50)
        assert clock.now() == pytest.approx(250.0)

    def test_seek_while_paused_stays_paused(self, time_source):
        clock = TimelineClock(ClockMode.REPLAY, time_source)
        clock.start()
        clock.pause()
        clock.seek(700)
        time_source.advance_ms(300)
        assert clock.now() == pytest.approx(700.0)
        assert clock.state is ClockState.PAUSED

    def test_speed_scales_elapsed_time(self, time_source):
        clock = TimelineClock(ClockMode.REPLAY, time_source, speed=2.0)
        clock.start()
        time_source.advance_ms(100)
        assert clock.now() == pytest.approx(200.0)

    def test_complete_is_terminal(self, time_source):
        clock = TimelineClock(ClockMode.REPLAY, time_source)
        clock.start()
        clock.complete()
        assert clock.state is ClockState.COMPLETED
        with pytest.raises(ClockStateError):
            clock.resume()

    def test_invalid_speed_rejected(self, time_source):
        with pytest.raises(ValueError):
            TimelineClock(ClockMode.REPLAY, time_source, speed=0)


# ---------------------------------------------------------------------------
# Process-wide registry
# ---------------------------------------------------------------------------

def test_second_active_capture_clock_rejected(time_source):
    first = TimelineClock(ClockMode.CAPTURE, time_source)
    first.start()
    second = TimelineClock(ClockMode.CAPTURE, time_source)
    with pytest.raises(AlreadyActiveError):
        second.start()
    assert first.state is ClockState.RECORDING
    assert active_clock(ClockMode.CAPTURE) is first


def test_capture_and_replay_may_run_together(time_source):
    capture = TimelineClock(ClockMode.CAPTURE, time_source)
    replay = TimelineClock(ClockMode.REPLAY, time_source)
    capture.start()
    replay.start()
    assert active_clock(ClockMode.CAPTURE) is capture
    assert active_clock(ClockMode.REPLAY) is replay


def test_slot_released_on_stop(time_source):
    first = TimelineClock(ClockMode.CAPTURE, time_source)
    first.start()
    first.stop()
    assert active_clock(ClockMode.CAPTURE) is None
    second = TimelineClock(ClockMode.CAPTURE, time_source)
    second.start()
    assert active_clock(ClockMode.CAPTURE) is second
