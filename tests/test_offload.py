import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import timedelta

import pytest

from calc_cache import default_cache
from conftest import ISS_LINE1
from errors import InvalidOrbitalElements, OffloadTerminated, RequestTimeout
from offload import (
    COMPUTE_BATCH,
    COMPUTE_LOOK_ANGLE,
    COMPUTE_TRACK,
    BackgroundCompute,
    handle_message,
    look_angle_from_dict,
    observer_to_dict,
    track_rows,
)
from propagator import OrbitalElementSet, compute_batch, compute_look_angle


@pytest.fixture(autouse=True)
def fresh_default_cache():
    default_cache.clear()
    yield
    default_cache.clear()


def _thread_pool():
    return ThreadPoolExecutor(max_workers=1)


class StallingExecutor(Executor):
    """Accepts work and never runs it."""

    def __init__(self):
        self.futures = []
        self.shut_down = False

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.futures.append(future)
        return future

    def shutdown(self, wait=True, *, cancel_futures=False):
        self.shut_down = True


def _payload(elements, observer, when):
    return {
        "elements": elements.to_dict(),
        "observer": observer_to_dict(observer),
        "time": when.isoformat(),
    }


# ---------------------------------------------------------------------------
# Worker side
# ---------------------------------------------------------------------------

def test_handle_look_angle(iss, observer, start_time):
    reply = handle_message({
        "operation": COMPUTE_LOOK_ANGLE,
        "payload": _payload(iss, observer, start_time),
    })
    assert look_angle_from_dict(reply["result"]) == compute_look_angle(iss, observer, start_time)


def test_handle_track(iss, observer, start_time):
    times = [start_time + timedelta(seconds=s) for s in range(0, 60, 10)]
    reply = handle_message({
        "operation": COMPUTE_TRACK,
        "payload": {
            "elements": iss.to_dict(),
            "observer": observer_to_dict(observer),
            "times": [t.isoformat() for t in times],
        },
    })
    rows = reply["result"]
    assert rows == track_rows(iss, observer, times, cache=None)
    assert len(rows) == 6
    look = compute_look_angle(iss, observer, start_time)
    assert rows[0][2] == pytest.approx(look.elevation_deg, abs=0.02)
    assert rows[0][3] == pytest.approx(look.range_km, abs=0.02)


def test_handle_unknown_operation(iss, observer, start_time):
    reply = handle_message({"operation": "computePasses", "payload": _payload(iss, observer, start_time)})
    assert reply["error"]["kind"] == "UnknownOperation"


def test_handle_malformed_payload():
    reply = handle_message({"operation": COMPUTE_LOOK_ANGLE, "payload": {}})
    assert reply["error"]["kind"] == "InvalidOrbitalElements"
    assert handle_message({})["error"]["kind"] == "InvalidOrbitalElements"


def test_handle_reports_error_kind(iss, start_time):
    payload = {
        "elements": iss.to_dict(),
        "observer": {"latitude": 95.0, "longitude": 0.0},
        "time": start_time.isoformat(),
    }
    reply = handle_message({"operation": COMPUTE_LOOK_ANGLE, "payload": payload})
    assert reply["error"]["kind"] == "InvalidObserverLocation"


# ---------------------------------------------------------------------------
# Caller side
# ---------------------------------------------------------------------------

def test_pool_result_matches_direct_computation(iss, observer, start_time):
    compute = BackgroundCompute(_thread_pool, timeout=30.0)
    try:
        for minutes in (0, 17, 94):
            when = start_time + timedelta(minutes=minutes)
            assert compute.available
            assert compute.compute_look_angle(iss, observer, when) == \
                compute_look_angle(iss, observer, when)
    finally:
        compute.terminate()


def test_pool_batch_reports_failures(iss, geo, observer, start_time):
    bad = OrbitalElementSet(
        norad_id=99999, line1="1 99999U garbage", line2="2 99999 garbage", epoch=start_time,
    )
    compute = BackgroundCompute(_thread_pool, timeout=30.0)
    try:
        results, failures = compute.compute_batch([iss, bad, geo], observer, start_time)
    finally:
        compute.terminate()
    direct, _ = compute_batch([iss, geo], observer, start_time)
    assert results == direct
    assert failures == {99999: "InvalidOrbitalElements"}


def test_worker_error_is_reraised(iss, observer, start_time):
    corrupted = OrbitalElementSet(
        norad_id=25544, line1=ISS_LINE1[:-1] + "0", line2=iss.line2, epoch=iss.epoch,
    )
    compute = BackgroundCompute(_thread_pool, timeout=30.0)
    try:
        with pytest.raises(InvalidOrbitalElements):
            compute.compute_look_angle(corrupted, observer, start_time)
        with pytest.raises(ValueError):
            compute.request("computePasses", {})
    finally:
        compute.terminate()


def test_timeout_falls_back_to_calling_thread(iss, observer, start_time):
    compute = BackgroundCompute(StallingExecutor, timeout=0.05)
    with pytest.raises(RequestTimeout):
        compute.request(COMPUTE_LOOK_ANGLE, _payload(iss, observer, start_time))
    look = compute.compute_look_angle(iss, observer, start_time)
    assert look == compute_look_angle(iss, observer, start_time)
    compute.terminate()


def test_terminate_wakes_pending_request(iss, observer, start_time):
    compute = BackgroundCompute(StallingExecutor, timeout=30.0)
    timer = threading.Timer(0.1, compute.terminate)
    timer.start()
    try:
        with pytest.raises(OffloadTerminated):
            compute.request(COMPUTE_LOOK_ANGLE, _payload(iss, observer, start_time))
    finally:
        timer.join()
    assert not compute.available
    # Terminated pools still answer through the calling thread
    look = compute.compute_look_angle(iss, observer, start_time)
    assert look == compute_look_angle(iss, observer, start_time)
    compute.terminate()


def test_missing_pool_computes_locally(iss, geo, observer, start_time):
    compute = BackgroundCompute(executor_factory=None)
    assert not compute.available
    with pytest.raises(OffloadTerminated):
        compute.request(COMPUTE_BATCH, {})
    results, failures = compute.compute_batch([iss, geo], observer, start_time)
    assert set(results) == {25544, 43700}
    assert failures == {}


def test_failing_factory_marks_pool_unavailable(iss, observer, start_time):
    def factory():
        raise OSError("no processes here")

    compute = BackgroundCompute(factory)
    look = compute.compute_look_angle(iss, observer, start_time)
    assert look == compute_look_angle(iss, observer, start_time)
    assert not compute.available
