"""Doppler shift estimates for transmitter frequencies.

Distance is computed on a spherical Earth (mean radius 6371 km), which is
plenty for a display-only frequency correction.  Radial velocity is the
rate of change of that distance: positive means receding (lower
frequency), negative means approaching (higher frequency).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

EARTH_RADIUS_KM = 6371.0
SPEED_OF_LIGHT_KM_S = 299_792.458

# Bands accepted by the 2 m / 70 cm transmitter filter, Hz
VHF_BAND_HZ = (136_000_000, 174_000_000)
UHF_BAND_HZ = (400_000_000, 520_000_000)


@dataclass(frozen=True)
class DopplerShift:
    shifted_hz: float
    shift_hz: float
    shift_khz: float


@dataclass(frozen=True)
class Transmitter:
    """A satellite downlink (and optional uplink) from the transmitter database."""

    frequency_hz: float
    description: str = ""
    mode: str = ""
    uplink_hz: float | None = None
    alive: bool = True


def slant_distance(
    obs_lat: float,
    obs_lon: float,
    obs_alt_m: float,
    sat_lat: float,
    sat_lon: float,
    sat_alt_km: float,
) -> float:
    """Observer-to-satellite distance in km.

    Haversine for the central angle between the two ground points, then
    the law of cosines between the two geocentric radii.
    """
    lat1 = math.radians(obs_lat)
    lat2 = math.radians(sat_lat)
    dlat = math.radians(sat_lat - obs_lat)
    dlon = math.radians(sat_lon - obs_lon)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    r_obs = EARTH_RADIUS_KM + obs_alt_m / 1000.0
    r_sat = EARTH_RADIUS_KM + sat_alt_km
    return math.sqrt(max(r_obs ** 2 + r_sat ** 2 - 2 * r_obs * r_sat * math.cos(c), 0.0))


def radial_velocity(distance1_km: float, distance2_km: float, dt_s: float) -> float:
    """Range rate in km/s; 0 when the samples share a timestamp."""
    if dt_s == 0:
        return 0.0
    return (distance2_km - distance1_km) / dt_s


def doppler_shift(frequency_hz: float, velocity_km_s: float) -> DopplerShift:
    """Received frequency for a transmitter moving at ``velocity_km_s``.

    f_rx = f_tx · (1 − v / c)
    """
    shifted = frequency_hz * (1.0 - velocity_km_s / SPEED_OF_LIGHT_KM_S)
    shift = shifted - frequency_hz
    return DopplerShift(shifted_hz=shifted, shift_hz=shift, shift_khz=shift / 1000.0)


def format_doppler_shift(shift_khz: float) -> str:
    """``+2.5 kHz`` / ``-1.2 kHz``."""
    sign = "+" if shift_khz >= 0 else ""
    return f"{sign}{shift_khz:.1f} kHz"


def format_frequency(frequency_hz: float | None, precision: int = 3) -> str:
    if not frequency_hz:
        return "Unknown"
    if frequency_hz >= 1_000_000:
        return f"{frequency_hz / 1_000_000:.{precision}f} MHz"
    if frequency_hz >= 1_000:
        return f"{frequency_hz / 1_000:.{precision}f} kHz"
    return f"{frequency_hz:g} Hz"


def in_amateur_bands(transmitter: Transmitter) -> bool:
    """True when the downlink or uplink lies in the VHF or UHF band."""
    for freq in (transmitter.frequency_hz, transmitter.uplink_hz):
        if not freq:
            continue
        if VHF_BAND_HZ[0] <= freq <= VHF_BAND_HZ[1] or UHF_BAND_HZ[0] <= freq <= UHF_BAND_HZ[1]:
            return True
    return False


def transmitter_shifts(
    transmitters: Iterable[Transmitter],
    velocity_km_s: float,
    amateur_only: bool = False,
) -> list[tuple[Transmitter, DopplerShift]]:
    """Doppler shift of every (optionally band-filtered) transmitter."""
    out = []
    for tx in transmitters:
        if amateur_only and not in_amateur_bands(tx):
            continue
        out.append((tx, doppler_shift(tx.frequency_hz, velocity_km_s)))
    return out
