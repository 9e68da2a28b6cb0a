"""Adaptive polling interval for the real-time tracker.

Fast-moving satellites get frequent updates, slow ones and satellites
below the horizon get few.
"""

from __future__ import annotations

# Interval table, milliseconds
FAST_INTERVAL_MS = 1_000       # ≥ 5° change since the previous sample
MEDIUM_INTERVAL_MS = 2_000     # ≥ 1° change
IDLE_INTERVAL_MS = 30_000      # below the horizon
DEFAULT_INTERVAL_MS = 5_000

FAST_CHANGE_DEG = 5.0
MEDIUM_CHANGE_DEG = 1.0


def azimuth_delta(a: float, b: float) -> float:
    """Shortest angular distance between two azimuths (359° → 1° is 2°)."""
    d = abs(a - b) % 360.0
    return 360.0 - d if d > 180.0 else d


def next_interval_ms(current, previous=None) -> int:
    """Milliseconds to wait before the next position update.

    ``current`` and ``previous`` are anything with ``azimuth_deg`` and
    ``elevation_deg`` attributes (``LookAngle`` or ``PositionSample``).
    Thresholds are inclusive: a change of exactly 5° is "fast".
    """
    if previous is None:
        return DEFAULT_INTERVAL_MS

    change = max(
        azimuth_delta(current.azimuth_deg, previous.azimuth_deg),
        abs(current.elevation_deg - previous.elevation_deg),
    )
    if change >= FAST_CHANGE_DEG:
        return FAST_INTERVAL_MS
    if change >= MEDIUM_CHANGE_DEG:
        return MEDIUM_INTERVAL_MS
    if current.elevation_deg < 0:
        return IDLE_INTERVAL_MS
    return DEFAULT_INTERVAL_MS
