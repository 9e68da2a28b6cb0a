"""Real-time position tracking for one satellite at a time per session.

A session keeps three things current:

* ``future_positions``: a forward buffer of samples with timestamp ≥ now,
  filled either from a remote position feed (about every 270 s, 300 s of
  samples per fetch) or by local SGP4 propagation over the same window at
  1 s spacing;
* ``current_position``: the first buffered sample at or after now;
* ``position_history``: consumed samples from the last five minutes.

"now" is the client clock plus the offset learned from the feed's server
timestamp at the last fetch, and never moves backwards inside a session.
Every tick runs a liveness check under the session lock before touching
state, so a tick already in flight when ``stop_tracking`` is called cannot
resurrect a stopped session.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from calc_cache import default_cache
from doppler import DopplerShift, doppler_shift, radial_velocity
from errors import PassTrackError
from offload import BackgroundCompute, track_rows
from propagator import (
    LookAngle,
    ObserverLocation,
    OrbitalElementSet,
    ensure_utc,
    from_epoch_ms,
    to_epoch_ms,
    utc_now,
)
from refresh import DEFAULT_INTERVAL_MS, next_interval_ms
from settings import Config

logger = logging.getLogger(__name__)

LOCAL_SAMPLE_SPACING = timedelta(seconds=1)


@dataclass(frozen=True)
class PositionSample:
    """One buffered position, from the feed or from local propagation."""

    timestamp: datetime
    azimuth_deg: float
    elevation_deg: float
    distance_km: float
    sat_latitude: float | None = None
    sat_longitude: float | None = None
    sat_altitude_km: float | None = None

    @property
    def is_visible(self) -> bool:
        return self.elevation_deg > 0.0

    def as_look_angle(self) -> LookAngle:
        return LookAngle(
            azimuth_deg=self.azimuth_deg,
            elevation_deg=self.elevation_deg,
            range_km=self.distance_km,
            timestamp=self.timestamp,
        )


def interpolate_position(a: PositionSample, b: PositionSample, t: float) -> PositionSample:
    """Linear blend of two samples, ``t`` in [0, 1].

    Azimuth is blended along the shorter arc so 359° → 1° passes through 0°.
    """
    t = min(max(t, 0.0), 1.0)

    def lerp(x, y):
        if x is None or y is None:
            return None
        return x + (y - x) * t

    d_az = ((b.azimuth_deg - a.azimuth_deg + 180.0) % 360.0) - 180.0
    span_ms = to_epoch_ms(b.timestamp) - to_epoch_ms(a.timestamp)
    return PositionSample(
        timestamp=from_epoch_ms(to_epoch_ms(a.timestamp) + span_ms * t),
        azimuth_deg=(a.azimuth_deg + d_az * t) % 360.0,
        elevation_deg=lerp(a.elevation_deg, b.elevation_deg),
        distance_km=lerp(a.distance_km, b.distance_km),
        sat_latitude=lerp(a.sat_latitude, b.sat_latitude),
        sat_longitude=lerp(a.sat_longitude, b.sat_longitude),
        sat_altitude_km=lerp(a.sat_altitude_km, b.sat_altitude_km),
    )


class TrackingSession:
    """Handle returned by ``PositionTracker.start_tracking``."""

    def __init__(self, norad_id: int, observer: ObserverLocation, tracker: "PositionTracker"):
        self.norad_id = norad_id
        self.observer = observer
        self.current_position: PositionSample | None = None
        self.previous_position: PositionSample | None = None
        self.position_history: list[PositionSample] = []
        self.future_positions: list[PositionSample] = []
        self.radial_velocity_km_s = 0.0
        self.clock_offset = timedelta(0)

        self._tracker = tracker
        self._lock = threading.Lock()
        self._alive = True
        self._last_now: datetime | None = None
        self._last_fill: datetime | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def __repr__(self):
        state = "active" if self._alive else "stopped"
        return f"<TrackingSession NORAD {self.norad_id} {state}>"

    @property
    def is_active(self) -> bool:
        return self._alive

    def now(self) -> datetime:
        """Session clock: client time plus server offset, never decreasing."""
        now = ensure_utc(self._tracker.clock()) + self.clock_offset
        if self._last_now is not None and now < self._last_now:
            return self._last_now
        return now

    # ── ticking ───────────────────────────────────────────────────────────

    def tick(self, now: datetime | None = None) -> PositionSample | None:
        """Refill the buffer if due, advance to ``now`` and notify listeners.

        Returns the new current position, or None once the session is
        stopped or while no sample at or after ``now`` is available.
        """
        if not self._alive:
            return None
        now = self.now() if now is None else ensure_utc(now)
        if self._last_now is not None and now < self._last_now:
            now = self._last_now

        if self._refill_due(now):
            fresh = self._tracker._fill(self, now)
            if fresh is not None:
                samples, offset = fresh
                self._merge(samples, now, offset)

        with self._lock:
            if not self._alive:
                return None
            self._last_now = now
            self._advance(now)
            current = self.current_position

        if self._tracker.on_update is not None and current is not None:
            self._tracker.on_update(self)
        return current

    def _refill_due(self, now: datetime) -> bool:
        if self._last_fill is None or not self.future_positions:
            return True
        refetch = timedelta(seconds=self._tracker.refetch_seconds)
        return now - self._last_fill >= refetch

    def _merge(
        self,
        samples: list[PositionSample],
        now: datetime,
        clock_offset: timedelta | None = None,
    ) -> None:
        with self._lock:
            if not self._alive:
                return
            if clock_offset is not None:
                self.clock_offset = clock_offset
            existing = [p for p in self.future_positions if p.timestamp >= now]
            seen = {p.timestamp for p in existing}
            added = [p for p in samples if p.timestamp not in seen]
            self.future_positions = sorted(existing + added, key=lambda p: p.timestamp)
            self._last_fill = now
        logger.debug("NORAD %s buffer: %d existing + %d new",
                     self.norad_id, len(existing), len(added))

    def _advance(self, now: datetime) -> None:
        consumed = [p for p in self.future_positions if p.timestamp < now]
        if consumed:
            self.position_history.extend(consumed)
            self.future_positions = [p for p in self.future_positions if p.timestamp >= now]
        cutoff = now - timedelta(seconds=self._tracker.past_window_seconds)
        self.position_history = [p for p in self.position_history if p.timestamp > cutoff]

        if not self.future_positions:
            return
        candidate = self.future_positions[0]
        current = self.current_position
        if current is not None and candidate.timestamp < current.timestamp:
            return
        if current is not None and current.distance_km > 0 and candidate.distance_km > 0:
            dt = (candidate.timestamp - current.timestamp).total_seconds()
            if dt > 0:
                self.radial_velocity_km_s = radial_velocity(
                    current.distance_km, candidate.distance_km, dt
                )
        if current is None or candidate.timestamp != current.timestamp:
            self.previous_position = current
        self.current_position = candidate

    # ── derived values ────────────────────────────────────────────────────

    def doppler(self, frequency_hz: float) -> DopplerShift:
        return doppler_shift(frequency_hz, self.radial_velocity_km_s)

    def next_interval_ms(self) -> int:
        if self.current_position is None:
            return DEFAULT_INTERVAL_MS
        return next_interval_ms(self.current_position, self.previous_position)

    # ── lifecycle ─────────────────────────────────────────────────────────

    def _run(self) -> None:
        logger.info("Tracking loop started for NORAD %s", self.norad_id)
        while not self._stop_event.is_set():
            try:
                self.tick()
            except PassTrackError as exc:
                logger.warning("Tracking tick for NORAD %s failed: %s", self.norad_id, exc)
            except Exception:
                logger.exception("Unexpected error in tracking tick for NORAD %s", self.norad_id)
            self._stop_event.wait(self.next_interval_ms() / 1000.0)
        logger.info("Tracking loop ended for NORAD %s", self.norad_id)

    def _start_thread(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name=f"track-{self.norad_id}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Halt polling and discard every buffer.  Safe to call repeatedly."""
        with self._lock:
            if not self._alive:
                return
            self._alive = False
            self.current_position = None
            self.previous_position = None
            self.position_history = []
            self.future_positions = []
            self.radial_velocity_km_s = 0.0
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None
        logger.info("Stopped tracking NORAD %s", self.norad_id)


class PositionTracker:
    """Owns tracking sessions and the data sources that feed them.

    Parameters
    ----------
    elements_lookup : callable ``norad_id -> OrbitalElementSet | None`` used
                      for local propagation; may be None when a feed is set
    feed            : optional remote position feed with
                      ``fetch_positions(norad_id, observer, window_seconds)``
    clock           : returns the current UTC datetime
    cache           : calculation cache for parsed records
    on_update       : called with the session after every successful tick
    offload         : optional background compute context for local fills;
                      it answers on the polling thread when its pool cannot
    """

    def __init__(
        self,
        elements_lookup: Callable[[int], OrbitalElementSet | None] | None = None,
        feed=None,
        clock: Callable[[], datetime] = utc_now,
        cache=default_cache,
        on_update: Callable[[TrackingSession], None] | None = None,
        offload: BackgroundCompute | None = None,
        future_window_seconds: int = Config.FUTURE_WINDOW_SECONDS,
        past_window_seconds: int = Config.PAST_WINDOW_SECONDS,
        refetch_seconds: int = Config.FEED_REFETCH_SECONDS,
    ):
        if elements_lookup is None and feed is None:
            raise ValueError("PositionTracker needs an elements_lookup or a feed")
        self.elements_lookup = elements_lookup
        self.feed = feed
        self.clock = clock
        self.cache = cache
        self.on_update = on_update
        self.offload = offload
        self.future_window_seconds = future_window_seconds
        self.past_window_seconds = past_window_seconds
        self.refetch_seconds = refetch_seconds
        self._sessions: dict[int, TrackingSession] = {}
        self._lock = threading.Lock()

    def start_tracking(
        self,
        norad_id: int,
        observer: ObserverLocation,
        poll: bool = True,
    ) -> TrackingSession:
        """Begin tracking; a second start for the same satellite reuses the session.

        With ``poll=False`` no background thread is started and the caller
        drives the session with ``tick()``.
        """
        with self._lock:
            existing = self._sessions.get(norad_id)
            if existing is not None and existing.is_active:
                logger.warning("Already tracking NORAD %s, ignoring duplicate start", norad_id)
                return existing
            session = TrackingSession(norad_id, observer, self)
            self._sessions[norad_id] = session

        logger.info("Starting real-time tracking for NORAD %s from %.4f, %.4f",
                    norad_id, observer.latitude, observer.longitude)
        if poll:
            session._start_thread()
        return session

    def stop_tracking(self, session: TrackingSession | None = None) -> None:
        """Stop one session, or every session when none is given."""
        with self._lock:
            if session is None:
                sessions = list(self._sessions.values())
                self._sessions.clear()
            else:
                sessions = [session]
                if self._sessions.get(session.norad_id) is session:
                    del self._sessions[session.norad_id]
        for s in sessions:
            s.stop()

    def sessions(self) -> list[TrackingSession]:
        with self._lock:
            return [s for s in self._sessions.values() if s.is_active]

    # ── buffer sources ────────────────────────────────────────────────────

    def _fill(
        self, session: TrackingSession, now: datetime
    ) -> tuple[list[PositionSample], timedelta | None] | None:
        """Fresh samples plus the server clock offset they came with, if any."""
        if self.feed is not None:
            fetched = self._fetch_remote(session)
            if fetched is not None:
                return fetched
        if self.elements_lookup is not None:
            samples = self._compute_local(session, now)
            if samples is not None:
                return samples, None
        return None

    def _fetch_remote(
        self, session: TrackingSession
    ) -> tuple[list[PositionSample], timedelta | None] | None:
        fetched_at = ensure_utc(self.clock())
        try:
            batch = self.feed.fetch_positions(
                session.norad_id, session.observer, self.future_window_seconds
            )
        except PassTrackError as exc:
            logger.warning("Position feed failed for NORAD %s: %s", session.norad_id, exc)
            return None
        offset = None
        if batch.server_timestamp is not None:
            offset = ensure_utc(batch.server_timestamp) - fetched_at
        logger.debug("Received %d feed samples for NORAD %s", len(batch.samples), session.norad_id)
        return list(batch.samples), offset

    def _compute_local(self, session: TrackingSession, now: datetime) -> list[PositionSample] | None:
        elements = self.elements_lookup(session.norad_id)
        if elements is None:
            logger.warning("No orbital elements for NORAD %s", session.norad_id)
            return None

        # Whole seconds from now to the end of the lookahead window
        first = now.replace(microsecond=0)
        if first < now:
            first += LOCAL_SAMPLE_SPACING
        count = int(self.future_window_seconds / LOCAL_SAMPLE_SPACING.total_seconds()) + 1
        times = [first + i * LOCAL_SAMPLE_SPACING for i in range(count)]

        if self.offload is not None:
            rows = self.offload.compute_track(elements, session.observer, times)
        else:
            rows = track_rows(elements, session.observer, times, self.cache)
        return [
            PositionSample(
                timestamp=from_epoch_ms(ms),
                azimuth_deg=az,
                elevation_deg=el,
                distance_km=rng,
                sat_latitude=lat,
                sat_longitude=lon,
                sat_altitude_km=alt,
            )
            for ms, az, el, rng, lat, lon, alt in rows
        ]
