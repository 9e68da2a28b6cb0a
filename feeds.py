"""Remote position feed (N2YO) and transmitter database (SatNOGS) clients.

Provider quotas are enforced by a ``RateLimiter`` built once per provider
and handed to every client that talks to it, so all call sites share one
budget.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

import requests

from doppler import Transmitter, slant_distance
from errors import NetworkFailure, RateLimitExceeded, RequestTimeout
from propagator import ObserverLocation, from_epoch_ms
from settings import Config
from tracker import PositionSample

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window request counter: ``limit`` requests per ``window`` seconds."""

    def __init__(
        self,
        limit: int,
        window: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._count = 0
        self._window_start = clock()
        self._lock = threading.Lock()

    def _roll(self) -> None:
        now = self._clock()
        if now - self._window_start > self.window:
            self._count = 0
            self._window_start = now

    def check(self) -> bool:
        """True while another request fits in the current window."""
        with self._lock:
            self._roll()
            return self._count < self.limit

    def record(self) -> None:
        with self._lock:
            self._roll()
            self._count += 1

    def acquire(self) -> None:
        """Reserve one request or raise RateLimitExceeded."""
        with self._lock:
            self._roll()
            if self._count >= self.limit:
                retry_after = max(self.window - (self._clock() - self._window_start), 0.0)
                raise RateLimitExceeded(
                    f"{self.limit} requests per {self.window:.0f} s used",
                    retry_after=retry_after,
                )
            self._count += 1

    @property
    def remaining(self) -> int:
        with self._lock:
            self._roll()
            return max(self.limit - self._count, 0)


def _get_json(session: requests.Session, url: str, timeout: float, **kwargs):
    try:
        resp = session.get(url, timeout=timeout, **kwargs)
    except requests.Timeout as exc:
        raise RequestTimeout(f"Request to {url} timed out") from exc
    except requests.RequestException as exc:
        raise NetworkFailure(f"Request to {url} failed: {exc}") from exc
    if resp.status_code == 429:
        raise RateLimitExceeded(f"{url} answered 429")
    try:
        resp.raise_for_status()
        return resp.json()
    except requests.HTTPError as exc:
        raise NetworkFailure(f"{url} returned {resp.status_code}") from exc
    except ValueError as exc:
        raise NetworkFailure(f"{url} returned invalid JSON") from exc


# ---------------------------------------------------------------------------
# N2YO position feed
# ---------------------------------------------------------------------------

@dataclass
class FeedBatch:
    samples: list[PositionSample] = field(default_factory=list)
    server_timestamp: datetime | None = None


class N2YOPositionFeed:
    """N2YO ``positions`` endpoint: one sample per second, at most 300 s."""

    MAX_WINDOW_SECONDS = 300

    def __init__(
        self,
        api_key: str = Config.N2YO_API_KEY,
        rate_limiter: RateLimiter | None = None,
        session: requests.Session | None = None,
        base_url: str = Config.N2YO_URL,
        timeout: float = Config.HTTP_TIMEOUT_SECONDS,
    ):
        if not api_key:
            raise ValueError("N2YO API key is missing")
        self.api_key = api_key
        self.rate_limiter = rate_limiter or RateLimiter(Config.POSITION_FEED_HOURLY_LIMIT)
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def fetch_positions(
        self,
        norad_id: int,
        observer: ObserverLocation,
        window_seconds: int = MAX_WINDOW_SECONDS,
    ) -> FeedBatch:
        seconds = max(1, min(int(window_seconds), self.MAX_WINDOW_SECONDS))
        self.rate_limiter.acquire()
        url = (
            f"{self.base_url}/positions/{norad_id}/{observer.latitude}/"
            f"{observer.longitude}/{observer.altitude_meters}/{seconds}"
        )
        data = _get_json(self.session, url, self.timeout, params={"apiKey": self.api_key})
        if "error" in data:
            raise NetworkFailure(f"N2YO error: {data['error']}")
        return positions_from_n2yo(data, observer)


def positions_from_n2yo(data: dict, observer: ObserverLocation) -> FeedBatch:
    """N2YO positions payload → samples with distance filled in.

    Raises
    ------
    NetworkFailure when the payload is missing fields or carries values
    that are not numbers.
    """
    try:
        samples = [_sample_from_n2yo(pos, observer) for pos in data.get("positions", [])]
        server_ms = data.get("serverTimestamp")
        server_timestamp = from_epoch_ms(float(server_ms)) if server_ms is not None else None
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise NetworkFailure(f"Malformed N2YO positions payload: {exc!r}") from exc
    samples.sort(key=lambda s: s.timestamp)
    return FeedBatch(samples=samples, server_timestamp=server_timestamp)


def _sample_from_n2yo(pos: dict, observer: ObserverLocation) -> PositionSample:
    sat_lat = float(pos["satlatitude"])
    sat_lon = float(pos["satlongitude"])
    sat_alt = float(pos["sataltitude"])
    return PositionSample(
        timestamp=from_epoch_ms(int(pos["timestamp"]) * 1000),
        azimuth_deg=float(pos["azimuth"]),
        elevation_deg=float(pos["elevation"]),
        distance_km=slant_distance(
            observer.latitude, observer.longitude, observer.altitude_meters,
            sat_lat, sat_lon, sat_alt,
        ),
        sat_latitude=sat_lat,
        sat_longitude=sat_lon,
        sat_altitude_km=sat_alt,
    )


# ---------------------------------------------------------------------------
# SatNOGS transmitter database
# ---------------------------------------------------------------------------

def transmitters_from_satnogs(records: Iterable[dict]) -> list[Transmitter]:
    """SatNOGS ``/transmitters`` records → transmitters with a downlink."""
    out = []
    for rec in records:
        downlink = rec.get("downlink_low")
        if not downlink:
            continue
        out.append(Transmitter(
            frequency_hz=float(downlink),
            description=rec.get("description") or "",
            mode=rec.get("mode") or "",
            uplink_hz=float(rec["uplink_low"]) if rec.get("uplink_low") else None,
            alive=bool(rec.get("alive", True)),
        ))
    return out


class SatnogsTransmitterSource:
    def __init__(
        self,
        session: requests.Session | None = None,
        base_url: str = Config.SATNOGS_URL,
        timeout: float = Config.HTTP_TIMEOUT_SECONDS,
    ):
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def fetch_transmitters(self, norad_id: int) -> list[Transmitter]:
        data = _get_json(
            self.session,
            f"{self.base_url}/transmitters/",
            self.timeout,
            params={"satellite__norad_cat_id": norad_id, "format": "json"},
        )
        transmitters = transmitters_from_satnogs(data)
        logger.debug("Found %d transmitters for NORAD %s", len(transmitters), norad_id)
        return transmitters
