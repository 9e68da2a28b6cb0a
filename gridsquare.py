"""Maidenhead grid-square locator encoding.

A locator is built from up to four pairs, longitude first in each pair:

  field      A–R   20° lon × 10° lat
  square     0–9    2° lon ×  1° lat
  subsquare  a–x    5′ lon × 2.5′ lat
  extended   0–9   30″ lon × 15″ lat
"""

from __future__ import annotations

import math
import re

from errors import InvalidObserverLocation

DEFAULT_PRECISION = 6
VALID_PRECISIONS = (2, 4, 6, 8)

_GRID_RE = re.compile(r"^[A-R]{2}(\d{2}([A-X]{2}(\d{2})?)?)?$", re.IGNORECASE)

# (lon, lat) cell sizes in degrees for each pair
_CELL_DEG = (
    (20.0, 10.0),
    (2.0, 1.0),
    (2.0 / 24.0, 1.0 / 24.0),
    (2.0 / 240.0, 1.0 / 240.0),
)

# Extended-square units per degree (1 unit = 30" lon, 15" lat)
_LON_UNITS_PER_DEG = 120
_LAT_UNITS_PER_DEG = 240
_EPS_UNITS = 1e-6


def is_valid_grid_square(grid: str) -> bool:
    """Return True for a well-formed 2, 4, 6 or 8 character locator."""
    if not grid or not isinstance(grid, str):
        return False
    return bool(_GRID_RE.match(grid))


def to_grid_square(lat: float, lon: float, precision: int = DEFAULT_PRECISION) -> str:
    """Encode a latitude/longitude pair as a Maidenhead locator.

    Parameters
    ----------
    lat       : latitude, degrees [-90, 90]
    lon       : longitude, degrees east; any value, wrapped into [-180, 180)
    precision : locator length, one of 2, 4, 6, 8
    """
    if precision not in VALID_PRECISIONS:
        raise ValueError(f"precision must be one of {VALID_PRECISIONS}, got {precision}")
    if not (math.isfinite(lat) and math.isfinite(lon)) or not -90.0 <= lat <= 90.0:
        raise InvalidObserverLocation(f"Cannot encode lat={lat} lon={lon}")

    # Work in whole extended-square units so decoded cell corners re-encode
    # to the same cell despite float error.  The north pole folds into the
    # last row.
    x = int(math.floor(((lon + 180.0) % 360.0) * _LON_UNITS_PER_DEG + _EPS_UNITS))
    y = int(math.floor((lat + 90.0) * _LAT_UNITS_PER_DEG + _EPS_UNITS))
    x = min(x, 18 * 2400 - 1)
    y = min(y, 18 * 2400 - 1)

    field_x, x = divmod(x, 2400)
    field_y, y = divmod(y, 2400)
    square_x, x = divmod(x, 240)
    square_y, y = divmod(y, 240)
    sub_x, ext_x = divmod(x, 10)
    sub_y, ext_y = divmod(y, 10)

    out = chr(ord("A") + field_x) + chr(ord("A") + field_y)
    if precision >= 4:
        out += f"{square_x}{square_y}"
    if precision >= 6:
        out += chr(ord("a") + sub_x) + chr(ord("a") + sub_y)
    if precision >= 8:
        out += f"{ext_x}{ext_y}"
    return out


def from_grid_square(grid: str, center: bool = False) -> tuple[float, float]:
    """Decode a locator into (lat, lon) degrees.

    Returns the south-west corner of the cell, or its centre when
    ``center`` is True.
    """
    if not is_valid_grid_square(grid):
        raise InvalidObserverLocation(f"Invalid Maidenhead locator: {grid!r}")

    g = grid.upper()
    lon = -180.0
    lat = -90.0
    pairs = len(g) // 2
    for i in range(pairs):
        dlon, dlat = _CELL_DEG[i]
        a, b = g[2 * i], g[2 * i + 1]
        if i in (0, 2):
            lon += (ord(a) - ord("A")) * dlon
            lat += (ord(b) - ord("A")) * dlat
        else:
            lon += int(a) * dlon
            lat += int(b) * dlat

    if center:
        dlon, dlat = _CELL_DEG[pairs - 1]
        lon += dlon / 2.0
        lat += dlat / 2.0
    return lat, lon


def cell_size_deg(precision: int) -> tuple[float, float]:
    """(lat, lon) size of one cell at the given locator length."""
    dlon, dlat = _CELL_DEG[precision // 2 - 1]
    return dlat, dlon
