import asyncio

import pytest

from communityhub.service.activity import ActivityTracker, format_remaining


class Recorder:
    def __init__(self):
        self.expired = 0
        self.warnings = []

    def on_expired(self):
        self.expired += 1

    def on_warning_change(self, active):
        self.warnings.append(active)


@pytest.fixture
def recorder():
    return Recorder()


def _tracker(fake_clock, recorder, **kwargs):
    return ActivityTracker(
        timeout_seconds=60,
        warning_seconds=10,
        on_expired=recorder.on_expired,
        on_warning_change=recorder.on_warning_change,
        clock=fake_clock,
        **kwargs,
    )


def test_warning_must_be_shorter_than_timeout(fake_clock):
    with pytest.raises(ValueError):
        ActivityTracker(timeout_seconds=60, warning_seconds=60, clock=fake_clock)


def test_expiry_fires_exactly_once(fake_clock, recorder):
    tracker = _tracker(fake_clock, recorder)
    fake_clock.advance(61)
    for _ in range(5):
        state = tracker.tick()
        fake_clock.advance(1)
    assert state.expired is True
    assert state.remaining_seconds == 0
    assert recorder.expired == 1


def test_activity_before_threshold_prevents_warning(fake_clock, recorder):
    tracker = _tracker(fake_clock, recorder)
    fake_clock.advance(40)
    assert tracker.record_activity("keydown") is True
    fake_clock.advance(40)
    state = tracker.tick()
    assert state.warning is False
    assert state.expired is False
    assert recorder.warnings == []


def test_warning_turns_on_inside_window(fake_clock, recorder):
    tracker = _tracker(fake_clock, recorder)
    fake_clock.advance(55)
    state = tracker.tick()
    assert state.warning is True
    assert state.remaining_minutes == 1
    assert state.progress_percent == pytest.approx(50.0)
    tracker.tick()
    assert recorder.warnings == [True]

    fake_clock.advance(10)
    state = tracker.tick()
    assert state.warning is False
    assert recorder.warnings == [True, False]
    assert recorder.expired == 1


def test_record_activity_filters_and_debounces(fake_clock, recorder):
    tracker = _tracker(fake_clock, recorder)
    fake_clock.advance(5)
    assert tracker.record_activity("resize") is False
    assert tracker.record_activity("scroll") is True
    fake_clock.advance(0.5)
    assert tracker.record_activity("click") is False


def test_activity_after_expiry_is_ignored(fake_clock, recorder):
    tracker = _tracker(fake_clock, recorder)
    fake_clock.advance(61)
    tracker.tick()
    assert tracker.record_activity("click") is False
    assert tracker.tick().expired is True


async def test_extend_success_rearms_expiry(fake_clock, recorder):
    async def refresh():
        return True

    tracker = _tracker(fake_clock, recorder, refresh=refresh)
    fake_clock.advance(55)
    tracker.tick()
    assert await tracker.extend() is True
    assert tracker.warning is False
    assert recorder.warnings == [True, False]

    fake_clock.advance(61)
    tracker.tick()
    assert recorder.expired == 1
    assert await tracker.extend() is True
    assert tracker.expired is False
    fake_clock.advance(61)
    tracker.tick()
    assert recorder.expired == 2


async def test_extend_refused_is_treated_as_expiry(fake_clock, recorder):
    async def refresh():
        return False

    tracker = _tracker(fake_clock, recorder, refresh=refresh)
    fake_clock.advance(55)
    tracker.tick()
    assert await tracker.extend() is False
    assert tracker.expired is True
    assert recorder.expired == 1
    tracker.tick()
    assert recorder.expired == 1


async def test_extend_error_is_treated_as_expiry(fake_clock, recorder):
    async def refresh():
        raise ConnectionError("network down")

    tracker = _tracker(fake_clock, recorder, refresh=refresh)
    assert await tracker.extend() is False
    assert tracker.expired is True
    assert recorder.expired == 1


async def test_sign_out_always_expires(fake_clock, recorder):
    calls = []

    async def sign_out():
        calls.append("sign_out")
        raise ConnectionError("network down")

    tracker = _tracker(fake_clock, recorder, sign_out=sign_out)
    fake_clock.advance(55)
    tracker.tick()
    await tracker.sign_out()
    assert calls == ["sign_out"]
    assert tracker.expired is True
    assert tracker.warning is False
    assert recorder.expired == 1


async def test_background_ticker_starts_and_stops(fake_clock, recorder):
    tracker = _tracker(fake_clock, recorder)
    fake_clock.advance(61)
    task = tracker.start(interval=0.001)
    assert tracker.start(interval=0.001) is task
    await asyncio.sleep(0.02)
    await tracker.stop()
    assert task.cancelled()
    assert recorder.expired == 1


@pytest.mark.parametrize(
    "minutes, expected", [(0, "0m"), (4, "4m"), (59, "59m"), (60, "1h 0m"), (65, "1h 5m"), (125, "2h 5m")]
)
def test_format_remaining(minutes, expected):
    assert format_remaining(minutes) == expected
