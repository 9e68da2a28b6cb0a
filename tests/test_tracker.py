import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import FakeClock, FakeResponse, FakeSession
from doppler import doppler_shift
from errors import NetworkFailure
from feeds import FeedBatch, N2YOPositionFeed
from offload import BackgroundCompute
from propagator import from_epoch_ms, to_epoch_ms
from tracker import PositionSample, PositionTracker, interpolate_position


def _tracker(iss, start_time, cache, **kwargs):
    clock = FakeClock(start_time)
    return PositionTracker({25544: iss}.get, clock=clock, cache=cache, **kwargs), clock


def _check_buffers(session, now):
    assert all(p.timestamp >= now for p in session.future_positions)
    assert all(p.timestamp < now for p in session.position_history)
    cutoff = now - timedelta(seconds=300)
    assert all(p.timestamp > cutoff for p in session.position_history)
    stamps = [p.timestamp for p in session.future_positions]
    assert stamps == sorted(stamps)


class StubFeed:
    """Position feed serving one sample per second from the server clock."""

    def __init__(self, clock, offset=timedelta(0), fail=False):
        self.clock = clock
        self.offset = offset
        self.fail = fail
        self.calls = 0
        self.on_fetch = None

    def fetch_positions(self, norad_id, observer, window_seconds):
        self.calls += 1
        if self.on_fetch is not None:
            self.on_fetch()
        if self.fail:
            raise NetworkFailure("feed down")
        server_now = self.clock() + self.offset
        samples = [
            PositionSample(
                timestamp=server_now + timedelta(seconds=i),
                azimuth_deg=(100.0 + i) % 360.0,
                elevation_deg=10.0,
                distance_km=1500.0 + i,
            )
            for i in range(window_seconds + 1)
        ]
        return FeedBatch(samples=samples, server_timestamp=server_now)


# ---------------------------------------------------------------------------
# Local propagation
# ---------------------------------------------------------------------------

def test_first_tick_fills_buffer(iss, observer, start_time, cache):
    tracker, _ = _tracker(iss, start_time, cache)
    session = tracker.start_tracking(25544, observer, poll=False)
    current = session.tick()
    assert current is not None
    assert current.timestamp == start_time
    assert current.sat_latitude is not None
    assert session.current_position is current
    assert session.previous_position is None
    assert len(session.future_positions) == 301
    _check_buffers(session, start_time)
    tracker.stop_tracking()


def test_tick_advances_and_measures_range_rate(iss, observer, start_time, cache):
    tracker, clock = _tracker(iss, start_time, cache)
    session = tracker.start_tracking(25544, observer, poll=False)
    first = session.tick()
    clock.advance(timedelta(seconds=10))
    second = session.tick()

    assert second.timestamp == start_time + timedelta(seconds=10)
    assert session.previous_position == first
    assert len(session.position_history) == 10
    expected = (second.distance_km - first.distance_km) / 10.0
    assert session.radial_velocity_km_s == pytest.approx(expected)
    # LEO range rate stays well under orbital speed
    assert abs(session.radial_velocity_km_s) < 8.0

    shift = session.doppler(145_800_000.0)
    assert shift == doppler_shift(145_800_000.0, session.radial_velocity_km_s)
    _check_buffers(session, clock())
    tracker.stop_tracking()


def test_history_is_pruned_over_time(iss, observer, start_time, cache):
    tracker, clock = _tracker(iss, start_time, cache)
    session = tracker.start_tracking(25544, observer, poll=False)
    for _ in range(14):
        assert session.tick() is not None
        _check_buffers(session, clock())
        clock.advance(timedelta(seconds=30))
    now = clock() - timedelta(seconds=30)
    assert session.position_history
    assert min(p.timestamp for p in session.position_history) > now - timedelta(seconds=300)
    tracker.stop_tracking()


def test_clock_never_moves_backwards(iss, observer, start_time, cache):
    tracker, clock = _tracker(iss, start_time, cache)
    session = tracker.start_tracking(25544, observer, poll=False)
    clock.advance(timedelta(seconds=20))
    session.tick()
    clock.advance(timedelta(seconds=-15))
    assert session.now() == start_time + timedelta(seconds=20)
    current = session.tick()
    assert current.timestamp == start_time + timedelta(seconds=20)
    tracker.stop_tracking()


def test_missing_elements_yield_no_position(observer, start_time, cache):
    tracker = PositionTracker({}.get, clock=FakeClock(start_time), cache=cache)
    session = tracker.start_tracking(25544, observer, poll=False)
    assert session.tick() is None
    assert session.is_active
    tracker.stop_tracking()


@pytest.mark.parametrize("executor_factory", [lambda: ThreadPoolExecutor(max_workers=1), None])
def test_offloaded_fill_matches_local_fill(iss, observer, start_time, cache, executor_factory):
    compute = BackgroundCompute(executor_factory, timeout=30.0)
    local, _ = _tracker(iss, start_time, cache)
    offloaded, _ = _tracker(iss, start_time, cache, offload=compute)
    try:
        a = local.start_tracking(25544, observer, poll=False)
        b = offloaded.start_tracking(25544, observer, poll=False)
        assert a.tick() == b.tick()
        assert len(b.future_positions) == 301
        assert a.future_positions == b.future_positions
    finally:
        local.stop_tracking()
        offloaded.stop_tracking()
        compute.terminate()


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

def test_requires_a_data_source():
    with pytest.raises(ValueError):
        PositionTracker()


def test_duplicate_start_reuses_session(iss, observer, start_time, cache):
    tracker, _ = _tracker(iss, start_time, cache)
    a = tracker.start_tracking(25544, observer, poll=False)
    b = tracker.start_tracking(25544, observer, poll=False)
    assert a is b
    assert tracker.sessions() == [a]
    tracker.stop_tracking(a)
    c = tracker.start_tracking(25544, observer, poll=False)
    assert c is not a
    tracker.stop_tracking()


def test_stop_is_idempotent_and_clears_state(iss, observer, start_time, cache):
    tracker, _ = _tracker(iss, start_time, cache)
    session = tracker.start_tracking(25544, observer, poll=False)
    session.tick()
    tracker.stop_tracking(session)
    session.stop()
    tracker.stop_tracking(session)
    assert not session.is_active
    assert session.current_position is None
    assert session.future_positions == []
    assert session.position_history == []
    assert session.tick() is None
    assert tracker.sessions() == []


def test_stop_during_fetch_discards_samples(observer, start_time):
    clock = FakeClock(start_time)
    feed = StubFeed(clock, offset=timedelta(seconds=42))
    tracker = PositionTracker(feed=feed, clock=clock)
    session = tracker.start_tracking(25544, observer, poll=False)
    feed.on_fetch = session.stop
    assert session.tick() is None
    assert session.future_positions == []
    assert session.current_position is None
    assert session.clock_offset == timedelta(0)
    assert session.now() == start_time


def test_polling_thread_notifies_and_stops(iss, observer, start_time, cache):
    updated = threading.Event()
    seen = []

    def on_update(session):
        seen.append(session.current_position)
        updated.set()

    tracker, _ = _tracker(iss, start_time, cache, on_update=on_update)
    session = tracker.start_tracking(25544, observer)
    try:
        assert updated.wait(timeout=10.0)
    finally:
        tracker.stop_tracking()
    assert seen[0].timestamp == start_time
    assert not session.is_active
    assert session._thread is None


def test_polling_survives_a_failed_tick(iss, observer, start_time, cache, monkeypatch):
    monkeypatch.setattr("tracker.DEFAULT_INTERVAL_MS", 10)
    lookups = []

    def lookup(norad_id):
        lookups.append(norad_id)
        if len(lookups) == 1:
            raise RuntimeError("element store unavailable")
        return iss

    updated = threading.Event()
    tracker = PositionTracker(lookup, clock=FakeClock(start_time), cache=cache,
                              on_update=lambda session: updated.set())
    session = tracker.start_tracking(25544, observer)
    try:
        assert updated.wait(timeout=10.0)
    finally:
        tracker.stop_tracking()
    assert len(lookups) >= 2
    assert not session.is_active


# ---------------------------------------------------------------------------
# Remote feed
# ---------------------------------------------------------------------------

def test_feed_sets_server_clock_offset(observer, start_time):
    clock = FakeClock(start_time)
    feed = StubFeed(clock, offset=timedelta(seconds=5))
    tracker = PositionTracker(feed=feed, clock=clock)
    session = tracker.start_tracking(25544, observer, poll=False)

    first = session.tick()
    assert session.clock_offset == timedelta(seconds=5)
    assert first.timestamp == start_time + timedelta(seconds=5)
    assert session.now() == start_time + timedelta(seconds=5)

    clock.advance(timedelta(seconds=3))
    second = session.tick()
    assert second.timestamp == start_time + timedelta(seconds=8)
    assert session.radial_velocity_km_s == pytest.approx(1.0)
    assert feed.calls == 1
    tracker.stop_tracking()


def test_feed_refetched_before_buffer_runs_dry(observer, start_time):
    clock = FakeClock(start_time)
    feed = StubFeed(clock)
    tracker = PositionTracker(feed=feed, clock=clock)
    session = tracker.start_tracking(25544, observer, poll=False)
    session.tick()
    clock.advance(timedelta(seconds=269))
    session.tick()
    assert feed.calls == 1
    clock.advance(timedelta(seconds=1))
    session.tick()
    assert feed.calls == 2
    _check_buffers(session, clock())
    assert len({p.timestamp for p in session.future_positions}) == len(session.future_positions)
    tracker.stop_tracking()


def test_feed_failure_falls_back_to_local(iss, observer, start_time, cache):
    clock = FakeClock(start_time)
    feed = StubFeed(clock, fail=True)
    tracker = PositionTracker({25544: iss}.get, feed=feed, clock=clock, cache=cache)
    session = tracker.start_tracking(25544, observer, poll=False)
    current = session.tick()
    assert feed.calls == 1
    assert current is not None
    assert current.timestamp == start_time
    assert current.sat_latitude is not None
    tracker.stop_tracking()


def test_feed_failure_without_fallback(observer, start_time):
    clock = FakeClock(start_time)
    tracker = PositionTracker(feed=StubFeed(clock, fail=True), clock=clock)
    session = tracker.start_tracking(25544, observer, poll=False)
    assert session.tick() is None
    tracker.stop_tracking()


def test_malformed_feed_reply_falls_back_to_local(iss, observer, start_time, cache):
    # No "sataltitude" on the sample
    reply = {"positions": [{"satlatitude": 44.0, "satlongitude": 20.9, "azimuth": 200.0,
                            "elevation": 64.0, "timestamp": 1715040000}]}
    feed = N2YOPositionFeed(api_key="KEY", session=FakeSession(FakeResponse(json_data=reply)))
    clock = FakeClock(start_time)
    tracker = PositionTracker({25544: iss}.get, feed=feed, clock=clock, cache=cache)
    session = tracker.start_tracking(25544, observer, poll=False)
    current = session.tick()
    assert current is not None
    assert current.timestamp == start_time
    assert current.sat_altitude_km > 300.0
    assert session.clock_offset == timedelta(0)
    tracker.stop_tracking()


# ---------------------------------------------------------------------------
# Interpolation
# ---------------------------------------------------------------------------

def test_interpolation_wraps_azimuth(start_time):
    a = PositionSample(start_time, 359.0, 10.0, 1000.0, sat_latitude=40.0)
    b = PositionSample(start_time + timedelta(seconds=2), 1.0, 12.0, 1010.0)
    mid = interpolate_position(a, b, 0.5)
    assert mid.azimuth_deg == pytest.approx(0.0, abs=1e-9)
    assert mid.elevation_deg == pytest.approx(11.0)
    assert mid.distance_km == pytest.approx(1005.0)
    assert mid.sat_latitude is None
    assert to_epoch_ms(mid.timestamp) == to_epoch_ms(start_time) + 1000


def test_interpolation_clamps_fraction(start_time):
    a = PositionSample(start_time, 10.0, 10.0, 1000.0)
    b = PositionSample(from_epoch_ms(to_epoch_ms(start_time) + 1000), 20.0, 20.0, 1100.0)
    assert interpolate_position(a, b, -1.0).azimuth_deg == pytest.approx(10.0)
    assert interpolate_position(a, b, 2.0).azimuth_deg == pytest.approx(20.0)
