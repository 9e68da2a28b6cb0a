"""SGP4 propagation and topocentric look-angle computation.

Design notes
------------
* sgp4's ``Satrec`` is the orbital propagator; it is treated as a trusted
  primitive.  ``Satrec.sgp4_array`` propagates one satellite over a whole
  vector of timesteps in a single C call, which is what the pass search
  uses for its scans.
* SGP4 returns positions in the TEME (True Equator Mean Equinox) frame,
  which is treated as quasi-ECI here.  The TEME–J2000 difference is a
  few arc-seconds, negligible for pointing a handheld antenna.
* TEME → ECEF via GMST rotation.  The slant range computed in ECEF equals
  the norm of the ECI difference vector because the rotation preserves
  lengths.
* ECEF → topocentric ENU → azimuth / elevation / slant range using WGS-84.

Assumptions
-----------
* Atmospheric refraction is *not* modelled.  Callers decide visibility by
  checking ``elevation > 0`` (or a minimum elevation of their choosing).
* Single look angles are rounded to 2 decimals: that is display precision
  and it keeps cached and freshly computed values identical.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

import numpy as np
from sgp4.api import SGP4_ERRORS, Satrec

from errors import InvalidObserverLocation, InvalidOrbitalElements, PropagationFailed
from gridsquare import from_grid_square, to_grid_square

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# WGS-84 constants
# ---------------------------------------------------------------------------
WGS84_A = 6378.137          # semi-major axis, km
WGS84_F = 1.0 / 298.257223563
WGS84_E2 = 2.0 * WGS84_F - WGS84_F ** 2  # first eccentricity squared

# Earth gravitational parameter (km³ s⁻²)
MU_KM3_S2 = 398600.4418

J2000 = datetime(2000, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
TLE_LINE_LENGTH = 69


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(when: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


def to_epoch_ms(when: datetime) -> int:
    return int(math.floor(ensure_utc(when).timestamp() * 1000.0))


def from_epoch_ms(ms: float) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def julian_dates(times: Sequence[datetime]) -> tuple[np.ndarray, np.ndarray]:
    """Split datetimes into whole/fractional Julian dates for sgp4.

    The J2000 epoch (JD 2451545.0) corresponds to 2000-01-01T12:00:00 UTC.
    """
    n = len(times)
    jd_whole = np.empty(n, dtype=np.float64)
    jd_frac = np.empty(n, dtype=np.float64)
    for i, t in enumerate(times):
        jd = 2451545.0 + (ensure_utc(t) - J2000).total_seconds() / 86400.0
        jd_whole[i] = np.floor(jd)
        jd_frac[i] = jd - jd_whole[i]
    return jd_whole, jd_frac


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class TleSource(str, enum.Enum):
    """Where an orbital element set came from."""

    PROVIDER_A = "provider-A"   # CelesTrak
    PROVIDER_B = "provider-B"   # Space-Track / N2YO
    MANUAL = "manual"


@dataclass(frozen=True)
class OrbitalElementSet:
    """One fetched TLE.  Superseded by a fresher fetch, never mutated."""

    norad_id: int
    line1: str
    line2: str
    epoch: datetime
    source: TleSource = TleSource.MANUAL
    name: str = ""

    @classmethod
    def from_lines(
        cls,
        line1: str,
        line2: str,
        source: TleSource | str = TleSource.MANUAL,
        name: str = "",
    ) -> "OrbitalElementSet":
        line1 = line1.strip()
        line2 = line2.strip()
        validate_tle(line1, line2)
        return cls(
            norad_id=int(line1[2:7]),
            line1=line1,
            line2=line2,
            epoch=tle_epoch(line1),
            source=TleSource(source),
            name=name.strip(),
        )

    def to_dict(self) -> dict:
        return {
            "norad_id": self.norad_id,
            "line1": self.line1,
            "line2": self.line2,
            "epoch": self.epoch.isoformat(),
            "source": self.source.value,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrbitalElementSet":
        return cls(
            norad_id=int(data["norad_id"]),
            line1=data["line1"],
            line2=data["line2"],
            epoch=ensure_utc(datetime.fromisoformat(data["epoch"])),
            source=TleSource(data.get("source", TleSource.MANUAL.value)),
            name=data.get("name", ""),
        )


@dataclass(frozen=True)
class ObserverLocation:
    """Observer geodetic position.  Validated on construction."""

    latitude: float
    longitude: float
    altitude_meters: float = 0.0
    grid_square: str | None = None

    def __post_init__(self):
        lat, lon, alt = self.latitude, self.longitude, self.altitude_meters
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in (lat, lon, alt)):
            raise InvalidObserverLocation(
                f"Observer coordinates must be finite numbers: {lat!r}, {lon!r}, {alt!r}"
            )
        if not -90.0 <= lat <= 90.0:
            raise InvalidObserverLocation(f"Latitude {lat} outside [-90, 90]")
        if not -180.0 <= lon <= 180.0:
            raise InvalidObserverLocation(f"Longitude {lon} outside [-180, 180]")
        if self.grid_square is None:
            object.__setattr__(self, "grid_square", to_grid_square(lat, lon))

    @classmethod
    def from_grid_square(cls, grid: str, altitude_meters: float = 0.0) -> "ObserverLocation":
        """Observer at the centre of a Maidenhead cell."""
        lat, lon = from_grid_square(grid, center=True)
        return cls(lat, lon, altitude_meters, grid_square=grid)

    @property
    def altitude_km(self) -> float:
        return self.altitude_meters / 1000.0


@dataclass(frozen=True)
class LookAngle:
    """Azimuth / elevation / range from an observer at one instant."""

    azimuth_deg: float
    elevation_deg: float
    range_km: float
    timestamp: datetime

    @property
    def is_visible(self) -> bool:
        return self.elevation_deg > 0.0


# ---------------------------------------------------------------------------
# TLE validation / parsing
# ---------------------------------------------------------------------------

def tle_checksum(line: str) -> int:
    """Modulo-10 checksum over the first 68 columns (minus signs count 1)."""
    total = 0
    for ch in line[:68]:
        if ch.isdigit():
            total += int(ch)
        elif ch == "-":
            total += 1
    return total % 10


def validate_tle(line1: str, line2: str) -> None:
    """Raise InvalidOrbitalElements unless both lines are well-formed."""
    if not isinstance(line1, str) or not isinstance(line2, str):
        raise InvalidOrbitalElements("TLE lines must be strings")
    for num, line in (("1", line1), ("2", line2)):
        if len(line) != TLE_LINE_LENGTH:
            raise InvalidOrbitalElements(
                f"TLE line {num} has length {len(line)}, expected {TLE_LINE_LENGTH}"
            )
        if not line.startswith(num + " "):
            raise InvalidOrbitalElements(f"TLE line {num} does not start with '{num} '")
        if not line[68].isdigit() or tle_checksum(line) != int(line[68]):
            raise InvalidOrbitalElements(f"TLE line {num} checksum mismatch")
    if line1[2:7] != line2[2:7]:
        raise InvalidOrbitalElements(
            f"Catalog numbers differ between lines: {line1[2:7]!r} vs {line2[2:7]!r}"
        )


def tle_epoch(line1: str) -> datetime:
    """UTC epoch encoded in TLE line 1 (columns 19–32, YYddd.dddddddd)."""
    try:
        year_2d = int(line1[18:20])
        day_frac = float(line1[20:32])
    except ValueError as exc:
        raise InvalidOrbitalElements(f"Unreadable TLE epoch: {line1[18:32]!r}") from exc
    year = (2000 + year_2d) if year_2d < 57 else (1900 + year_2d)
    return datetime(year, 1, 1, tzinfo=timezone.utc) + timedelta(days=day_frac - 1.0)


def parse_satrec(elements: OrbitalElementSet) -> Satrec:
    """Parse an element set into an sgp4 Satrec."""
    validate_tle(elements.line1, elements.line2)
    try:
        satrec = Satrec.twoline2rv(elements.line1, elements.line2)
    except (ValueError, IndexError) as exc:
        raise InvalidOrbitalElements(
            f"SGP4 rejected TLE for NORAD {elements.norad_id}: {exc}"
        ) from exc
    if satrec.error != 0:
        raise InvalidOrbitalElements(
            f"SGP4 initialisation failed for NORAD {elements.norad_id}: "
            f"{SGP4_ERRORS.get(satrec.error, satrec.error)}"
        )
    return satrec


# ---------------------------------------------------------------------------
# Observer position
# ---------------------------------------------------------------------------

def geodetic_to_ecef(lat_deg: float, lon_deg: float, alt_km: float = 0.0) -> np.ndarray:
    """Convert geodetic coordinates to WGS-84 ECEF (km).

    Parameters
    ----------
    lat_deg : geodetic latitude, degrees
    lon_deg : longitude, degrees east
    alt_km  : altitude above ellipsoid, km (default 0 = sea level)

    Returns
    -------
    np.ndarray shape (3,): [x, y, z] in km
    """
    lat = np.deg2rad(lat_deg)
    lon = np.deg2rad(lon_deg)
    N = WGS84_A / np.sqrt(1.0 - WGS84_E2 * np.sin(lat) ** 2)
    x = (N + alt_km) * np.cos(lat) * np.cos(lon)
    y = (N + alt_km) * np.cos(lat) * np.sin(lon)
    z = (N * (1.0 - WGS84_E2) + alt_km) * np.sin(lat)
    return np.array([x, y, z])


# ---------------------------------------------------------------------------
# Coordinate transforms (internal helpers)
# ---------------------------------------------------------------------------

def _gmst_rad(jd: np.ndarray) -> np.ndarray:
    """Greenwich Mean Sidereal Time in radians for an array of Julian dates."""
    T = (jd - 2451545.0) / 36525.0
    theta_deg = (
        280.46061837
        + 360.98564736629 * (jd - 2451545.0)
        + T * T * (0.000387933 - T / 38710000.0)
    )
    return np.deg2rad(theta_deg % 360.0)


def _eci_to_ecef(r_eci: np.ndarray, jd: np.ndarray) -> np.ndarray:
    """Rotate ECI (TEME) position vectors, shape (n_times, 3), to ECEF."""
    theta = _gmst_rad(jd)
    cos_t = np.cos(theta)
    sin_t = np.sin(theta)

    x = r_eci[:, 0]
    y = r_eci[:, 1]

    r_ecef = np.empty_like(r_eci)
    r_ecef[:, 0] = x * cos_t + y * sin_t
    r_ecef[:, 1] = -x * sin_t + y * cos_t
    r_ecef[:, 2] = r_eci[:, 2]
    return r_ecef


def _ecef_to_azel(
    r_ecef: np.ndarray,
    obs_ecef: np.ndarray,
    lat_deg: float,
    lon_deg: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Topocentric azimuth, elevation, slant range from ECEF coords.

    Returns
    -------
    az_deg   : shape (n_times,), azimuth [0, 360) degrees
    el_deg   : shape (n_times,), elevation [-90, 90] degrees
    slant_km : shape (n_times,), slant range km
    """
    lat = np.deg2rad(lat_deg)
    lon = np.deg2rad(lon_deg)

    # Range vector (satellite − observer) in ECEF
    dx = r_ecef[:, 0] - obs_ecef[0]
    dy = r_ecef[:, 1] - obs_ecef[1]
    dz = r_ecef[:, 2] - obs_ecef[2]

    slant_km = np.sqrt(dx * dx + dy * dy + dz * dz)

    # Rotate range vector to local East-North-Up frame
    sin_lat, cos_lat = np.sin(lat), np.cos(lat)
    sin_lon, cos_lon = np.sin(lon), np.cos(lon)

    E = -sin_lon * dx + cos_lon * dy
    N = -sin_lat * cos_lon * dx - sin_lat * sin_lon * dy + cos_lat * dz
    U = cos_lat * cos_lon * dx + cos_lat * sin_lon * dy + sin_lat * dz

    with np.errstate(invalid="ignore", divide="ignore"):
        el_rad = np.arcsin(np.clip(U / slant_km, -1.0, 1.0))
    az_rad = np.arctan2(E, N) % (2.0 * np.pi)

    return np.rad2deg(az_rad), np.rad2deg(el_rad), slant_km


def _ecef_to_geodetic(r_ecef: np.ndarray) -> tuple[float, float, float]:
    """WGS-84 geodetic (lat°, lon°, alt km) of one ECEF vector (Bowring)."""
    x, y, z = (float(v) for v in r_ecef)
    lon = math.atan2(y, x)
    p = math.hypot(x, y)
    lat = math.atan2(z, p * (1.0 - WGS84_E2))
    for _ in range(5):
        N = WGS84_A / math.sqrt(1.0 - WGS84_E2 * math.sin(lat) ** 2)
        lat = math.atan2(z + WGS84_E2 * N * math.sin(lat), p)
    N = WGS84_A / math.sqrt(1.0 - WGS84_E2 * math.sin(lat) ** 2)
    if abs(math.cos(lat)) > 1e-10:
        alt = p / math.cos(lat) - N
    else:
        alt = abs(z) - N * (1.0 - WGS84_E2)
    return math.degrees(lat), math.degrees(lon), alt


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------

def propagate_ecef(
    satrec: Satrec,
    jd_whole: np.ndarray,
    jd_frac: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Propagate one satellite over many timesteps.

    Returns
    -------
    r_ecef : shape (n_times, 3), km; rows are NaN where SGP4 failed
    errors : shape (n_times,), SGP4 error codes (0 = success)
    """
    e, r, _ = satrec.sgp4_array(jd_whole, jd_frac)
    r = np.array(r, dtype=np.float64)
    r[e != 0] = np.nan
    return _eci_to_ecef(r, jd_whole + jd_frac), e


def look_angles_jd(
    satrec: Satrec,
    observer: ObserverLocation,
    jd_whole: np.ndarray,
    jd_frac: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Unrounded az/el/range arrays for pre-computed Julian dates.

    SGP4 propagation failures come back as NaN, which the pass search
    treats as "no valid sample".
    """
    r_ecef, _ = propagate_ecef(satrec, jd_whole, jd_frac)
    obs_ecef = geodetic_to_ecef(observer.latitude, observer.longitude, observer.altitude_km)
    return _ecef_to_azel(r_ecef, obs_ecef, observer.latitude, observer.longitude)


def look_angles(
    satrec: Satrec,
    observer: ObserverLocation,
    times: Sequence[datetime],
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Unrounded az/el/range arrays for a sequence of datetimes."""
    jd_whole, jd_frac = julian_dates(times)
    return look_angles_jd(satrec, observer, jd_whole, jd_frac)


def topocentric_track(
    satrec: Satrec,
    observer: ObserverLocation,
    times: Sequence[datetime],
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Look angles plus sub-satellite points over a sequence of times.

    Returns
    -------
    az, el, rng : shape (n,) unrounded look angles, NaN where SGP4 failed
    geodetic    : shape (n, 3) sub-satellite (lat°, lon°, alt km)
    """
    jd_whole, jd_frac = julian_dates(times)
    r_ecef, _ = propagate_ecef(satrec, jd_whole, jd_frac)
    obs_ecef = geodetic_to_ecef(observer.latitude, observer.longitude, observer.altitude_km)
    az, el, rng = _ecef_to_azel(r_ecef, obs_ecef, observer.latitude, observer.longitude)
    geodetic = np.full((len(times), 3), np.nan)
    for i, row in enumerate(r_ecef):
        if np.all(np.isfinite(row)):
            geodetic[i] = _ecef_to_geodetic(row)
    return az, el, rng, geodetic


def look_angle_from_satrec(
    satrec: Satrec,
    observer: ObserverLocation,
    when: datetime,
) -> LookAngle:
    """Single rounded look angle from an already-parsed record.

    Raises PropagationFailed when SGP4 reports an error for this instant.
    """
    when = ensure_utc(when)
    jd_whole, jd_frac = julian_dates([when])
    e, r, _ = satrec.sgp4(float(jd_whole[0]), float(jd_frac[0]))
    if e != 0:
        raise PropagationFailed(
            f"SGP4 error {e} for NORAD {satrec.satnum} at {when.isoformat()}: "
            f"{SGP4_ERRORS.get(e, 'unknown error')}",
            error_code=e,
        )
    r_ecef = _eci_to_ecef(np.array([r], dtype=np.float64), jd_whole + jd_frac)
    obs_ecef = geodetic_to_ecef(observer.latitude, observer.longitude, observer.altitude_km)
    az, el, sl = _ecef_to_azel(r_ecef, obs_ecef, observer.latitude, observer.longitude)
    if not (np.isfinite(az[0]) and np.isfinite(el[0]) and np.isfinite(sl[0])):
        raise PropagationFailed(f"Non-finite position for NORAD {satrec.satnum}")

    return LookAngle(
        azimuth_deg=round((float(az[0]) + 360.0) % 360.0, 2) % 360.0,
        elevation_deg=round(float(el[0]), 2),
        range_km=round(float(sl[0]), 2),
        timestamp=when,
    )


def compute_look_angle(
    elements: OrbitalElementSet,
    observer: ObserverLocation,
    when: datetime | None = None,
    cache=None,
) -> LookAngle:
    """Azimuth / elevation / range of a satellite for an observer.

    Parameters
    ----------
    elements : orbital element set to propagate
    observer : observer location
    when     : instant to evaluate (default now); past or future is fine,
               accuracy degrades with distance from the TLE epoch
    cache    : optional ``calc_cache.CalculationCache``; results are the
               same with or without it

    Raises
    ------
    InvalidOrbitalElements, PropagationFailed
    """
    when = utc_now() if when is None else ensure_utc(when)
    if cache is not None:
        return cache.look_angle(elements, observer, when)
    return look_angle_from_satrec(parse_satrec(elements), observer, when)


def compute_batch(
    elements_list: Iterable[OrbitalElementSet],
    observer: ObserverLocation,
    when: datetime | None = None,
    cache=None,
) -> tuple[dict[int, LookAngle], dict[int, str]]:
    """Look angles for many satellites at one instant.

    One bad satellite never aborts the batch; its failure kind is reported
    in the second mapping instead.
    """
    when = utc_now() if when is None else ensure_utc(when)
    results: dict[int, LookAngle] = {}
    failures: dict[int, str] = {}
    for elements in elements_list:
        try:
            results[elements.norad_id] = compute_look_angle(elements, observer, when, cache)
        except (InvalidOrbitalElements, PropagationFailed) as exc:
            logger.warning("Skipping NORAD %s: %s", elements.norad_id, exc)
            failures[elements.norad_id] = exc.kind
    return results, failures


def sub_satellite_point(satrec: Satrec, when: datetime) -> tuple[float, float, float]:
    """Geodetic (lat°, lon°, altitude km) directly below the satellite."""
    jd_whole, jd_frac = julian_dates([ensure_utc(when)])
    r_ecef, e = propagate_ecef(satrec, jd_whole, jd_frac)
    if e[0] != 0:
        raise PropagationFailed(f"SGP4 error {e[0]} for NORAD {satrec.satnum}", error_code=int(e[0]))
    return _ecef_to_geodetic(r_ecef[0])


# ---------------------------------------------------------------------------
# Orbit shape helpers
# ---------------------------------------------------------------------------

def mean_motion_rev_per_day(line2: str) -> float:
    return float(line2[52:63])


def eccentricity(line2: str) -> float:
    return float("0." + line2[26:33].strip())


def orbital_altitude_km(line2: str) -> float:
    """Estimate mean orbital altitude (km) from TLE line 2 mean motion.

    Uses the Kepler third-law relation a = (μ / n²)^(1/3) with n in rad/s.
    """
    mean_motion_rev_day = mean_motion_rev_per_day(line2)
    n_rad_s = mean_motion_rev_day * 2.0 * np.pi / 86400.0
    a_km = (MU_KM3_S2 / n_rad_s ** 2) ** (1.0 / 3.0)
    return float(a_km - WGS84_A)
