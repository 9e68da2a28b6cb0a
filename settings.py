"""Configuration for the pass-prediction and look-angle engine.

Every value can be overridden from the environment, which is how the UI
layer (or a test) tunes the engine without touching code.
"""

import os


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


class Config:
    """Base configuration class."""

    # Calculation cache bounds (FIFO eviction once exceeded)
    SATREC_CACHE_SIZE = _env_int('PASSTRACK_SATREC_CACHE_SIZE', 100)
    LOOK_ANGLE_CACHE_SIZE = _env_int('PASSTRACK_LOOK_ANGLE_CACHE_SIZE', 1000)
    LOOK_ANGLE_BUCKET_MS = _env_int('PASSTRACK_LOOK_ANGLE_BUCKET_MS', 30_000)

    # Orbital element freshness
    TLE_REFRESH_HOURS = _env_float('PASSTRACK_TLE_REFRESH_HOURS', 6.0)
    TLE_EPOCH_STALE_HOURS = _env_float('PASSTRACK_TLE_EPOCH_STALE_HOURS', 2.0)

    # Pass prediction defaults
    DEFAULT_MIN_ELEVATION_DEG = _env_float('PASSTRACK_MIN_ELEVATION_DEG', 10.0)
    DEFAULT_DAYS_AHEAD = _env_float('PASSTRACK_DAYS_AHEAD', 3.0)

    # Real-time tracking windows
    PAST_WINDOW_SECONDS = _env_int('PASSTRACK_PAST_WINDOW_SECONDS', 300)
    FUTURE_WINDOW_SECONDS = _env_int('PASSTRACK_FUTURE_WINDOW_SECONDS', 300)
    # Refetch 30 s before a 300 s feed buffer runs dry
    FEED_REFETCH_SECONDS = _env_int('PASSTRACK_FEED_REFETCH_SECONDS', 270)

    # Timeouts
    OFFLOAD_TIMEOUT_SECONDS = _env_float('PASSTRACK_OFFLOAD_TIMEOUT_SECONDS', 10.0)
    HTTP_TIMEOUT_SECONDS = _env_float('PASSTRACK_HTTP_TIMEOUT_SECONDS', 10.0)

    # Provider quotas
    # N2YO: positions endpoint allows 1000 requests per hour
    POSITION_FEED_HOURLY_LIMIT = _env_int('PASSTRACK_POSITION_FEED_HOURLY_LIMIT', 1000)

    # External data sources
    CELESTRAK_URL = os.environ.get(
        'PASSTRACK_CELESTRAK_URL',
        'https://celestrak.org/NORAD/elements/gp.php',
    )
    N2YO_URL = os.environ.get('PASSTRACK_N2YO_URL', 'https://api.n2yo.com/rest/v1/satellite')
    SATNOGS_URL = os.environ.get('PASSTRACK_SATNOGS_URL', 'https://db.satnogs.org/api')
    N2YO_API_KEY = os.environ.get('N2YO_API_KEY', '')
    USER_AGENT = 'passtrack/1.0'
