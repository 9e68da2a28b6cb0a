"""Optional background compute context for look-angle work.

Requests and replies are plain JSON-compatible dicts so they can cross a
process boundary:

    {"operation": "computeLookAngle" | "computeBatch" | "computeTrack",
     "payload": {...}}
    -> {"result": ...} | {"error": {"kind": ..., "message": ...}}

``handle_message`` is the worker side and runs in the pool.
``BackgroundCompute`` is the caller side.  It bounds every request with a
timeout and falls back to computing on the calling thread when the pool
is missing, slow or shut down, so results never depend on whether the
pool exists.
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import (
    FIRST_COMPLETED,
    Executor,
    Future,
    ProcessPoolExecutor,
    wait,
)
from concurrent.futures.process import BrokenProcessPool
from datetime import datetime
from typing import Callable, Iterable

from calc_cache import default_cache
from errors import (
    InvalidOrbitalElements,
    OffloadTerminated,
    PassTrackError,
    RequestTimeout,
    error_from_kind,
)
from propagator import (
    LookAngle,
    ObserverLocation,
    OrbitalElementSet,
    compute_batch,
    compute_look_angle,
    ensure_utc,
    parse_satrec,
    to_epoch_ms,
    topocentric_track,
    utc_now,
)
from settings import Config

logger = logging.getLogger(__name__)

COMPUTE_LOOK_ANGLE = "computeLookAngle"
COMPUTE_BATCH = "computeBatch"
COMPUTE_TRACK = "computeTrack"
OPERATIONS = (COMPUTE_LOOK_ANGLE, COMPUTE_BATCH, COMPUTE_TRACK)


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------

def observer_to_dict(observer: ObserverLocation) -> dict:
    return {
        "latitude": observer.latitude,
        "longitude": observer.longitude,
        "altitude_meters": observer.altitude_meters,
    }


def observer_from_dict(data: dict) -> ObserverLocation:
    return ObserverLocation(
        float(data["latitude"]),
        float(data["longitude"]),
        float(data.get("altitude_meters", 0.0)),
    )


def look_angle_to_dict(look: LookAngle) -> dict:
    return {
        "azimuth_deg": look.azimuth_deg,
        "elevation_deg": look.elevation_deg,
        "range_km": look.range_km,
        "timestamp": look.timestamp.isoformat(),
    }


def look_angle_from_dict(data: dict) -> LookAngle:
    return LookAngle(
        azimuth_deg=data["azimuth_deg"],
        elevation_deg=data["elevation_deg"],
        range_km=data["range_km"],
        timestamp=ensure_utc(datetime.fromisoformat(data["timestamp"])),
    )


def track_rows(
    elements: OrbitalElementSet,
    observer: ObserverLocation,
    times: Iterable[datetime],
    cache=default_cache,
) -> list[list[float]]:
    """Rounded look angles plus sub-satellite points along a time grid.

    Each row is ``[epoch ms, az°, el°, range km, lat°, lon°, alt km]``;
    times SGP4 could not propagate are left out.
    """
    times = [ensure_utc(t) for t in times]
    satrec = cache.satrec(elements) if cache is not None else parse_satrec(elements)
    az, el, rng, geo = topocentric_track(satrec, observer, times)
    rows = []
    for i, ts in enumerate(times):
        if not (math.isfinite(az[i]) and math.isfinite(el[i]) and math.isfinite(rng[i])):
            continue
        rows.append([
            to_epoch_ms(ts),
            round(float(az[i]), 2) % 360.0,
            round(float(el[i]), 2),
            round(float(rng[i]), 2),
            float(geo[i, 0]),
            float(geo[i, 1]),
            float(geo[i, 2]),
        ])
    return rows


# ---------------------------------------------------------------------------
# Worker side
# ---------------------------------------------------------------------------

def handle_message(message: dict) -> dict:
    """Execute one request and wrap the outcome; never raises."""
    operation = message.get("operation")
    payload = message.get("payload") or {}
    try:
        observer = observer_from_dict(payload["observer"])
        if operation == COMPUTE_TRACK:
            elements = OrbitalElementSet.from_dict(payload["elements"])
            times = [datetime.fromisoformat(t) for t in payload["times"]]
            return {"result": track_rows(elements, observer, times)}
        when = ensure_utc(datetime.fromisoformat(payload["time"]))
        if operation == COMPUTE_LOOK_ANGLE:
            elements = OrbitalElementSet.from_dict(payload["elements"])
            look = compute_look_angle(elements, observer, when, default_cache)
            return {"result": look_angle_to_dict(look)}
        if operation == COMPUTE_BATCH:
            elements_list = [OrbitalElementSet.from_dict(e) for e in payload["elements"]]
            results, failures = compute_batch(elements_list, observer, when, default_cache)
            return {"result": {
                "results": {str(k): look_angle_to_dict(v) for k, v in results.items()},
                "failures": {str(k): v for k, v in failures.items()},
            }}
        return {"error": {"kind": "UnknownOperation", "message": f"Unknown operation {operation!r}"}}
    except PassTrackError as exc:
        return {"error": {"kind": exc.kind, "message": str(exc)}}
    except (KeyError, TypeError, ValueError) as exc:
        return {"error": {"kind": InvalidOrbitalElements.kind, "message": f"Malformed payload: {exc}"}}


# ---------------------------------------------------------------------------
# Caller side
# ---------------------------------------------------------------------------

def _default_executor() -> Executor:
    return ProcessPoolExecutor(max_workers=1)


class BackgroundCompute:
    """Caller-side handle on the background compute pool.

    Parameters
    ----------
    executor_factory : builds the executor on first use; defaults to a
                       single-process ``ProcessPoolExecutor``
    timeout          : seconds to wait for any one reply
    """

    def __init__(
        self,
        executor_factory: Callable[[], Executor] | None = _default_executor,
        timeout: float = Config.OFFLOAD_TIMEOUT_SECONDS,
    ):
        self._factory = executor_factory
        self.timeout = timeout
        self._executor: Executor | None = None
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self._shutdown_signal: Future = Future()
        self._terminated = False
        self._broken = executor_factory is None

    @property
    def available(self) -> bool:
        return not (self._terminated or self._broken)

    def _get_executor(self) -> Executor | None:
        with self._lock:
            if not self.available:
                return None
            if self._executor is None:
                try:
                    self._executor = self._factory()
                except (OSError, NotImplementedError, ImportError) as exc:
                    logger.warning("Background compute unavailable: %s", exc)
                    self._broken = True
                    return None
            return self._executor

    def request(self, operation: str, payload: dict):
        """Send one message and wait for its reply.

        Raises
        ------
        RequestTimeout     : no reply within ``timeout`` seconds
        OffloadTerminated  : pool missing, broken or terminated mid-request
        PassTrackError     : the error kind reported by the worker
        """
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation {operation!r}")
        executor = self._get_executor()
        if executor is None:
            raise OffloadTerminated("Background compute is not available")

        try:
            future = executor.submit(handle_message, {"operation": operation, "payload": payload})
        except (RuntimeError, BrokenProcessPool) as exc:
            self._broken = True
            raise OffloadTerminated(f"Background compute rejected request: {exc}") from exc

        with self._lock:
            self._pending.add(future)
        try:
            done, _ = wait([future, self._shutdown_signal], timeout=self.timeout,
                           return_when=FIRST_COMPLETED)
            if future not in done:
                future.cancel()
                if self._shutdown_signal in done:
                    raise OffloadTerminated("Background compute terminated with request pending")
                raise RequestTimeout(f"{operation} timed out after {self.timeout:.0f} s")
            if future.cancelled():
                raise OffloadTerminated("Request cancelled by termination")
            try:
                reply = future.result()
            except BrokenProcessPool as exc:
                self._broken = True
                raise OffloadTerminated(f"Background compute crashed: {exc}") from exc
        finally:
            with self._lock:
                self._pending.discard(future)

        if "error" in reply:
            err = reply["error"]
            raise error_from_kind(err.get("kind", ""), err.get("message", ""))
        return reply["result"]

    def compute_look_angle(
        self,
        elements: OrbitalElementSet,
        observer: ObserverLocation,
        when: datetime | None = None,
    ) -> LookAngle:
        """Look angle via the pool, or on this thread if the pool cannot answer."""
        when = utc_now() if when is None else ensure_utc(when)
        payload = {
            "elements": elements.to_dict(),
            "observer": observer_to_dict(observer),
            "time": when.isoformat(),
        }
        try:
            return look_angle_from_dict(self.request(COMPUTE_LOOK_ANGLE, payload))
        except (RequestTimeout, OffloadTerminated) as exc:
            logger.warning("Offload failed (%s), computing on calling thread", exc.kind)
            return compute_look_angle(elements, observer, when, default_cache)

    def compute_batch(
        self,
        elements_list: Iterable[OrbitalElementSet],
        observer: ObserverLocation,
        when: datetime | None = None,
    ) -> tuple[dict[int, LookAngle], dict[int, str]]:
        when = utc_now() if when is None else ensure_utc(when)
        elements_list = list(elements_list)
        payload = {
            "elements": [e.to_dict() for e in elements_list],
            "observer": observer_to_dict(observer),
            "time": when.isoformat(),
        }
        try:
            result = self.request(COMPUTE_BATCH, payload)
        except (RequestTimeout, OffloadTerminated) as exc:
            logger.warning("Offload failed (%s), computing batch on calling thread", exc.kind)
            return compute_batch(elements_list, observer, when, default_cache)
        results = {int(k): look_angle_from_dict(v) for k, v in result["results"].items()}
        failures = {int(k): v for k, v in result["failures"].items()}
        return results, failures

    def compute_track(
        self,
        elements: OrbitalElementSet,
        observer: ObserverLocation,
        times: Iterable[datetime],
    ) -> list[list[float]]:
        """``track_rows`` via the pool, or on this thread if the pool cannot answer."""
        times = [ensure_utc(t) for t in times]
        payload = {
            "elements": elements.to_dict(),
            "observer": observer_to_dict(observer),
            "times": [t.isoformat() for t in times],
        }
        try:
            return self.request(COMPUTE_TRACK, payload)
        except (RequestTimeout, OffloadTerminated) as exc:
            logger.warning("Offload failed (%s), computing track on calling thread", exc.kind)
            return track_rows(elements, observer, times, default_cache)

    def terminate(self) -> None:
        """Shut the pool down; outstanding requests fail with OffloadTerminated."""
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
            pending = list(self._pending)
            executor = self._executor
            self._executor = None
        self._shutdown_signal.set_result(None)
        for future in pending:
            future.cancel()
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Background compute terminated (%d requests abandoned)", len(pending))
