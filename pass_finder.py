"""Coarse and fine pass search for one satellite or a batch.

Algorithm
---------
1. Coarse scan: fixed steps forward from the start time (60 s for the
   interactive profile, 15 min for the batch profile).  Each chunk of steps
   is propagated in one vectorised SGP4 call and then walked in order.  A
   rising edge (previous ≤ 0° < current) opens a pass, a falling edge
   (previous > 0° ≥ current) closes it; the running maximum is tracked in
   between.  NaN samples (SGP4 failure) are skipped without ending the scan.
2. Fine refinement of each candidate:
   - Rise / set: the bracketing coarse interval is re-scanned at the finer
     step, then linearly interpolated between the last below-horizon and
     first above-horizon samples (and vice versa).
   - Peak: the window ±1 coarse step around the coarse maximum is
     re-scanned, then refined with 3-point parabolic interpolation.
3. After a pass the scan jumps ahead by ``skip_after_pass`` so the tail of
   the same pass is never picked up again.
4. ``max_steps`` is a soft budget.  Hitting it returns what was found so
   far; callers must not assume completeness near the cap.

Geostationary satellites never cross the horizon.  They are classified as
stationary and get a single closed-form pointing solution instead of an
empty pass list.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Sequence

import numpy as np
from sgp4.api import Satrec

from errors import InvalidOrbitalElements, PropagationFailed
from propagator import (
    WGS84_A,
    ObserverLocation,
    OrbitalElementSet,
    compute_look_angle,
    eccentricity,
    ensure_utc,
    julian_dates,
    look_angles_jd,
    mean_motion_rev_per_day,
    orbital_altitude_km,
    parse_satrec,
    utc_now,
)

logger = logging.getLogger(__name__)

# Jump taken after a pass ends before scanning resumes
PASS_SKIP_AHEAD = timedelta(hours=1)

# Geosynchronous classification (rev/day, eccentricity, inclination °)
GEO_MEAN_MOTION = (0.99, 1.01)
GEO_MAX_ECCENTRICITY = 0.01
GEO_MAX_INCLINATION_DEG = 3.0

# A scan that never crossed the horizon and whose elevation moved less than
# this is treated as a stationary target
STATIONARY_SPAN_DEG = 1.0


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Pass:
    """A single satellite pass over the observer."""

    norad_id: int
    start_time: datetime
    end_time: datetime
    max_elevation_time: datetime
    max_elevation_deg: float
    start_azimuth_deg: float
    end_azimuth_deg: float
    max_azimuth_deg: float
    name: str = ""

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60.0

    def to_dict(self) -> dict:
        return {
            "norad_id": self.norad_id,
            "name": self.name,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "max_elevation_time": self.max_elevation_time.isoformat(),
            "max_elevation_deg": self.max_elevation_deg,
            "start_azimuth_deg": self.start_azimuth_deg,
            "end_azimuth_deg": self.end_azimuth_deg,
            "max_azimuth_deg": self.max_azimuth_deg,
            "duration_minutes": round(self.duration_minutes, 2),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Pass":
        return cls(
            norad_id=int(data["norad_id"]),
            name=data.get("name", ""),
            start_time=ensure_utc(datetime.fromisoformat(data["start_time"])),
            end_time=ensure_utc(datetime.fromisoformat(data["end_time"])),
            max_elevation_time=ensure_utc(datetime.fromisoformat(data["max_elevation_time"])),
            max_elevation_deg=float(data["max_elevation_deg"]),
            start_azimuth_deg=float(data["start_azimuth_deg"]),
            end_azimuth_deg=float(data["end_azimuth_deg"]),
            max_azimuth_deg=float(data["max_azimuth_deg"]),
        )


@dataclass(frozen=True)
class StationaryTarget:
    """Fixed pointing solution for a geostationary satellite."""

    norad_id: int
    azimuth_deg: float
    elevation_deg: float
    range_km: float
    altitude_km: float
    computed_at: datetime
    name: str = ""

    @property
    def is_visible(self) -> bool:
        return self.elevation_deg > 0.0

    def to_dict(self) -> dict:
        return {
            "norad_id": self.norad_id,
            "name": self.name,
            "azimuth_deg": self.azimuth_deg,
            "elevation_deg": self.elevation_deg,
            "range_km": self.range_km,
            "altitude_km": self.altitude_km,
            "computed_at": self.computed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StationaryTarget":
        return cls(
            norad_id=int(data["norad_id"]),
            name=data.get("name", ""),
            azimuth_deg=float(data["azimuth_deg"]),
            elevation_deg=float(data["elevation_deg"]),
            range_km=float(data["range_km"]),
            altitude_km=float(data["altitude_km"]),
            computed_at=ensure_utc(datetime.fromisoformat(data["computed_at"])),
        )


@dataclass(frozen=True)
class SearchProfile:
    """Step sizes and budget for a pass search.

    A coarser ``step`` is cheaper but can step over short passes entirely;
    the refinement phase only tightens passes the coarse scan has seen.
    """

    step: timedelta
    refine_step: timedelta | None
    max_steps: int
    skip_after_pass: timedelta = PASS_SKIP_AHEAD
    chunk_size: int = 240


# Single satellite, user waiting: 1-minute scan, 10-second refinement
INTERACTIVE = SearchProfile(
    step=timedelta(minutes=1),
    refine_step=timedelta(seconds=10),
    max_steps=12_000,
)

# Background multi-satellite search: 15-minute scan, 1-minute refinement
BATCH = SearchProfile(
    step=timedelta(minutes=15),
    refine_step=timedelta(minutes=1),
    max_steps=1_000,
)


@dataclass
class SearchResult:
    """Outcome of searching one satellite: passes or a stationary fix."""

    norad_id: int
    passes: list[Pass] = field(default_factory=list)
    stationary: StationaryTarget | None = None
    budget_exhausted: bool = False


@dataclass
class BatchResult:
    passes: list[Pass] = field(default_factory=list)
    stationary: list[StationaryTarget] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)


@dataclass
class _ScanOutcome:
    passes: list[Pass]
    crossed_horizon: bool
    el_min: float
    el_max: float
    budget_exhausted: bool


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def find_passes(
    elements: OrbitalElementSet,
    observer: ObserverLocation,
    start_time: datetime | None = None,
    max_days_ahead: float = 3.0,
    min_elevation_deg: float = 0.0,
    profile: SearchProfile = INTERACTIVE,
    cache=None,
) -> list[Pass]:
    """Passes of one satellite, soonest first.

    Parameters
    ----------
    elements          : orbital element set to search
    observer          : observer location
    start_time        : search start (default now)
    max_days_ahead    : search horizon in days
    min_elevation_deg : drop passes whose maximum elevation is lower
    profile           : coarse/fine step sizes and step budget
    cache             : optional ``calc_cache.CalculationCache`` for the
                        parsed record

    A geostationary satellite never rises or sets, so its list is empty;
    ``search_satellite`` classifies it and returns its fixed pointing.

    Raises
    ------
    InvalidOrbitalElements when the TLE cannot be parsed.
    """
    satrec = _satrec_for(elements, cache)
    start = utc_now() if start_time is None else ensure_utc(start_time)
    if is_stationary(elements):
        logger.debug("NORAD %s is geostationary, no passes to find; see search_satellite",
                     elements.norad_id)
    return _scan(satrec, elements, observer, start, max_days_ahead,
                 min_elevation_deg, profile).passes


def next_pass(
    elements: OrbitalElementSet,
    observer: ObserverLocation,
    start_time: datetime | None = None,
    max_days_ahead: float = 7.0,
    min_elevation_deg: float = 0.0,
    profile: SearchProfile = INTERACTIVE,
    cache=None,
) -> Pass | None:
    passes = find_passes(elements, observer, start_time, max_days_ahead,
                         min_elevation_deg, profile, cache)
    return passes[0] if passes else None


def is_stationary(elements: OrbitalElementSet) -> bool:
    """True for a near-circular, near-equatorial geosynchronous orbit."""
    try:
        mm = mean_motion_rev_per_day(elements.line2)
        ecc = eccentricity(elements.line2)
        inc = float(elements.line2[8:16])
    except ValueError:
        return False
    return (
        GEO_MEAN_MOTION[0] <= mm <= GEO_MEAN_MOTION[1]
        and ecc <= GEO_MAX_ECCENTRICITY
        and inc <= GEO_MAX_INCLINATION_DEG
    )


def stationary_geometry(
    elements: OrbitalElementSet,
    observer: ObserverLocation,
    when: datetime | None = None,
    cache=None,
) -> StationaryTarget:
    """One-off pointing solution for a stationary satellite.

    Azimuth and elevation come from a single look-angle evaluation.  The
    distance uses the law of cosines on the triangle Earth centre –
    observer – satellite:

        d = sqrt((Re + h)² − (Re·cos ε)²) − Re·sin ε

    where Re is the observer's geocentric radius, h the satellite altitude
    and ε the elevation angle.
    """
    when = utc_now() if when is None else ensure_utc(when)
    look = compute_look_angle(elements, observer, when, cache)
    altitude_km = orbital_altitude_km(elements.line2)
    re_km = WGS84_A + observer.altitude_km
    r_sat = WGS84_A + altitude_km
    el = math.radians(look.elevation_deg)
    distance = math.sqrt(max(r_sat ** 2 - (re_km * math.cos(el)) ** 2, 0.0)) - re_km * math.sin(el)
    return StationaryTarget(
        norad_id=elements.norad_id,
        name=elements.name,
        azimuth_deg=look.azimuth_deg,
        elevation_deg=look.elevation_deg,
        range_km=round(distance, 2),
        altitude_km=round(altitude_km, 2),
        computed_at=when,
    )


def search_satellite(
    elements: OrbitalElementSet,
    observer: ObserverLocation,
    start_time: datetime | None = None,
    max_days_ahead: float = 3.0,
    min_elevation_deg: float = 0.0,
    profile: SearchProfile = INTERACTIVE,
    cache=None,
) -> SearchResult:
    """Search one satellite, classifying stationary targets separately."""
    start = utc_now() if start_time is None else ensure_utc(start_time)
    if is_stationary(elements):
        return SearchResult(
            norad_id=elements.norad_id,
            stationary=stationary_geometry(elements, observer, start, cache),
        )

    satrec = _satrec_for(elements, cache)
    outcome = _scan(satrec, elements, observer, start, max_days_ahead,
                    min_elevation_deg, profile)
    if (
        not outcome.crossed_horizon
        and math.isfinite(outcome.el_min)
        and outcome.el_max - outcome.el_min < STATIONARY_SPAN_DEG
    ):
        logger.info("NORAD %s never crossed the horizon; treating as stationary",
                    elements.norad_id)
        return SearchResult(
            norad_id=elements.norad_id,
            stationary=stationary_geometry(elements, observer, start, cache),
        )
    return SearchResult(
        norad_id=elements.norad_id,
        passes=outcome.passes,
        budget_exhausted=outcome.budget_exhausted,
    )


def find_passes_batch(
    elements_list: Iterable[OrbitalElementSet],
    observer: ObserverLocation,
    start_time: datetime | None = None,
    max_days_ahead: float = 3.0,
    min_elevation_deg: float = 0.0,
    profile: SearchProfile = BATCH,
    cache=None,
    max_workers: int | None = None,
) -> BatchResult:
    """Search many satellites; one failure never aborts the rest.

    Each search is a pure function of its inputs, so they may run on a
    thread pool (``max_workers`` > 1).  Output passes are ordered by
    ``(start_time, norad_id)`` regardless of completion order.
    """
    start = utc_now() if start_time is None else ensure_utc(start_time)
    elements_list = list(elements_list)
    result = BatchResult()

    def _one(elements: OrbitalElementSet) -> SearchResult:
        return search_satellite(elements, observer, start, max_days_ahead,
                                min_elevation_deg, profile, cache)

    if max_workers and max_workers > 1 and len(elements_list) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [(e, pool.submit(_one, e)) for e in elements_list]
            outcomes = [(e, _collect(e, f.result)) for e, f in futures]
    else:
        outcomes = [(e, _collect(e, lambda e=e: _one(e))) for e in elements_list]

    for elements, outcome in outcomes:
        if isinstance(outcome, str):
            result.failures[elements.norad_id] = outcome
            continue
        result.passes.extend(outcome.passes)
        if outcome.stationary is not None:
            result.stationary.append(outcome.stationary)

    result.passes.sort(key=lambda p: (p.start_time, p.norad_id))
    result.stationary.sort(key=lambda s: s.norad_id)
    return result


def _collect(elements: OrbitalElementSet, fn) -> SearchResult | str:
    try:
        return fn()
    except (InvalidOrbitalElements, PropagationFailed) as exc:
        logger.warning("Pass search failed for NORAD %s: %s", elements.norad_id, exc)
        return exc.kind


# ---------------------------------------------------------------------------
# Coarse scan
# ---------------------------------------------------------------------------

def _satrec_for(elements: OrbitalElementSet, cache) -> Satrec:
    return cache.satrec(elements) if cache is not None else parse_satrec(elements)


def _scan(
    satrec: Satrec,
    elements: OrbitalElementSet,
    observer: ObserverLocation,
    start: datetime,
    max_days_ahead: float,
    min_el: float,
    profile: SearchProfile,
) -> _ScanOutcome:
    if max_days_ahead <= 0:
        raise ValueError("max_days_ahead must be positive")

    end = start + timedelta(days=max_days_ahead)
    step_s = profile.step.total_seconds()
    passes: list[Pass] = []
    steps = 0
    crossed = False
    el_min, el_max = math.inf, -math.inf

    t = start
    prev_el: float | None = None
    prev_t: datetime | None = None
    rise_bracket: tuple[datetime, datetime] | None = None
    peak_el = -math.inf
    peak_t: datetime | None = None

    while t < end and steps < profile.max_steps:
        remaining = math.ceil((end - t).total_seconds() / step_s)
        n = max(1, min(profile.chunk_size, profile.max_steps - steps, remaining))
        times = [t + timedelta(seconds=i * step_s) for i in range(n)]
        jd_whole, jd_frac = julian_dates(times)
        _, el, _ = look_angles_jd(satrec, observer, jd_whole, jd_frac)

        next_t = t + timedelta(seconds=n * step_s)
        for i in range(n):
            steps += 1
            cur_t = times[i]
            cur_el = float(el[i])
            if not math.isfinite(cur_el):
                continue
            el_min = min(el_min, cur_el)
            el_max = max(el_max, cur_el)

            if prev_el is not None and prev_el <= 0.0 < cur_el:
                crossed = True
                rise_bracket = (prev_t, cur_t)
                peak_el, peak_t = cur_el, cur_t
            elif rise_bracket is not None and cur_el > peak_el:
                peak_el, peak_t = cur_el, cur_t

            if rise_bracket is not None and prev_el is not None and prev_el > 0.0 >= cur_el:
                crossed = True
                found = _refine_pass(satrec, elements, observer, rise_bracket,
                                     (prev_t, cur_t), peak_t, profile)
                rise_bracket = None
                peak_el, peak_t = -math.inf, None
                if found is not None:
                    if found.max_elevation_deg >= min_el:
                        passes.append(found)
                    resume = found.end_time + profile.skip_after_pass
                    if resume > cur_t:
                        next_t = resume
                        prev_el, prev_t = None, None
                        break

            prev_el, prev_t = cur_el, cur_t
        t = next_t

    exhausted = steps >= profile.max_steps and t < end
    if exhausted:
        logger.debug("Pass search for NORAD %s hit the %d-step budget at %s",
                     elements.norad_id, profile.max_steps, t.isoformat())
    return _ScanOutcome(passes, crossed, el_min, el_max, exhausted)


# ---------------------------------------------------------------------------
# Refinement
# ---------------------------------------------------------------------------

def _refine_pass(
    satrec: Satrec,
    elements: OrbitalElementSet,
    observer: ObserverLocation,
    rise: tuple[datetime, datetime],
    set_: tuple[datetime, datetime],
    coarse_peak: datetime,
    profile: SearchProfile,
) -> Pass | None:
    """Tighten rise/set/peak of a coarse candidate into a Pass record."""
    fine = profile.refine_step or profile.step
    start_time = _refine_crossing(satrec, observer, rise[0], rise[1], fine, rising=True)
    end_time = _refine_crossing(satrec, observer, set_[0], set_[1], fine, rising=False)
    if not start_time < end_time:
        return None

    lo = max(coarse_peak - profile.step, start_time)
    hi = min(coarse_peak + profile.step, end_time)
    peak_time, peak_el = _refine_peak(satrec, observer, lo, hi, fine)
    if peak_time is None or not start_time < peak_time < end_time:
        peak_time = start_time + (end_time - start_time) / 2

    jd_whole, jd_frac = julian_dates([start_time, peak_time, end_time])
    az, el, _ = look_angles_jd(satrec, observer, jd_whole, jd_frac)
    max_el = float(np.nanmax([el[1], peak_el]))
    if not math.isfinite(max_el) or max_el < 0.0:
        return None

    return Pass(
        norad_id=elements.norad_id,
        name=elements.name,
        start_time=start_time,
        end_time=end_time,
        max_elevation_time=peak_time,
        max_elevation_deg=round(max_el, 2),
        start_azimuth_deg=_round_az(az[0]),
        end_azimuth_deg=_round_az(az[2]),
        max_azimuth_deg=_round_az(az[1]),
    )


def _fine_grid(lo: datetime, hi: datetime, step: timedelta) -> list[datetime]:
    """Evenly spaced times from lo to hi inclusive, no wider than ``step``."""
    span = (hi - lo).total_seconds()
    n = max(2, int(math.ceil(span / step.total_seconds())) + 1)
    return [lo + timedelta(seconds=span * i / (n - 1)) for i in range(n)]


def _refine_crossing(
    satrec: Satrec,
    observer: ObserverLocation,
    lo: datetime,
    hi: datetime,
    step: timedelta,
    rising: bool,
) -> datetime:
    """Horizon crossing between lo and hi: fine scan + linear interpolation."""
    times = _fine_grid(lo, hi, step)
    jd_whole, jd_frac = julian_dates(times)
    _, el, _ = look_angles_jd(satrec, observer, jd_whole, jd_frac)
    # NaN from failed SGP4 propagations → treat as below horizon
    el = np.where(np.isnan(el), -1.0, el)

    for i in range(len(times) - 1):
        a, b = el[i], el[i + 1]
        if (rising and a <= 0.0 < b) or (not rising and a > 0.0 >= b):
            return _interpolate_crossing(times[i], times[i + 1], a, b)
    return _interpolate_crossing(times[0], times[-1], el[0], el[-1])


def _interpolate_crossing(t_lo: datetime, t_hi: datetime, el_lo: float, el_hi: float) -> datetime:
    span = el_hi - el_lo
    if abs(span) < 1e-10:
        return t_lo
    frac = float(np.clip((0.0 - el_lo) / span, 0.0, 1.0))
    return t_lo + timedelta(seconds=frac * (t_hi - t_lo).total_seconds())


def _refine_peak(
    satrec: Satrec,
    observer: ObserverLocation,
    lo: datetime,
    hi: datetime,
    step: timedelta,
) -> tuple[datetime | None, float]:
    """Peak time / elevation via fine scan and 3-point parabolic interpolation.

    Falls back to the grid time if the maximum sits on the window edge or
    a neighbouring sample is NaN.
    """
    if not lo < hi:
        return None, -math.inf
    times = _fine_grid(lo, hi, step)
    jd_whole, jd_frac = julian_dates(times)
    _, el, _ = look_angles_jd(satrec, observer, jd_whole, jd_frac)
    if np.all(np.isnan(el)):
        return None, -math.inf

    idx = int(np.nanargmax(el))
    peak_el = float(el[idx])
    if idx <= 0 or idx >= len(el) - 1:
        return times[idx], peak_el

    y0, y1, y2 = el[idx - 1], el[idx], el[idx + 1]
    if np.isnan(y0) or np.isnan(y2):
        return times[idx], peak_el

    denom = 2.0 * (y0 - 2.0 * y1 + y2)
    if abs(denom) < 1e-10:
        return times[idx], peak_el

    # Fractional offset from idx, in units of grid step
    t_frac = (y0 - y2) / denom
    dt_s = (times[idx + 1] - times[idx]).total_seconds()
    return times[idx] + timedelta(seconds=float(t_frac) * dt_s), peak_el


def _round_az(az: float) -> float:
    if not math.isfinite(az):
        return 0.0
    return round(float(az) % 360.0, 2) % 360.0


def sort_passes(passes: Sequence[Pass]) -> list[Pass]:
    """Soonest first; identical start times ordered by NORAD id."""
    return sorted(passes, key=lambda p: (p.start_time, p.norad_id))
