"""Memoisation of orbital-record parsing and look-angle computation.

Two bounded caches live here:

* parsed ``Satrec`` records keyed by ``<norad_id>-<epoch ms>``.  A fresh
  TLE fetch carries a new epoch, so it lands under a new key and the old
  record ages out;
* rounded look angles keyed by satellite, observer position (4 decimals) and
  time bucketed to 30 s.  Two calls inside the same bucket get the same
  answer; satellite motion inside 30 s is invisible on a handheld-antenna
  pointing display.

Eviction is insertion-order FIFO, not LRU: only the size bound matters.
Entries are immutable once inserted, so reads need no lock; inserts and
evictions take a short lock.  A failed insert is logged and skipped, never
raised into the caller.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Hashable

from sgp4.api import Satrec

from propagator import (
    LookAngle,
    ObserverLocation,
    OrbitalElementSet,
    ensure_utc,
    look_angle_from_satrec,
    parse_satrec,
    to_epoch_ms,
)
from settings import Config

logger = logging.getLogger(__name__)


class BoundedCache:
    """Dict with a size cap; the earliest-inserted key is evicted first."""

    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._data: dict[Hashable, object] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default=None):
        return self._data.get(key, default)

    def put(self, key: Hashable, value) -> None:
        with self._lock:
            if key in self._data:
                return
            self._data[key] = value
            while len(self._data) > self.max_size:
                oldest = next(iter(self._data))
                del self._data[oldest]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def keys(self) -> list:
        return list(self._data)


class CalculationCache:
    """Parsed-record and look-angle caches plus hit/miss counters."""

    def __init__(
        self,
        satrec_size: int = Config.SATREC_CACHE_SIZE,
        look_angle_size: int = Config.LOOK_ANGLE_CACHE_SIZE,
        bucket_ms: int = Config.LOOK_ANGLE_BUCKET_MS,
    ):
        self.bucket_ms = bucket_ms
        self._satrecs = BoundedCache(satrec_size)
        self._look_angles = BoundedCache(look_angle_size)
        self._stats_lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    # ── keys ──────────────────────────────────────────────────────────────

    @staticmethod
    def satrec_key(elements: OrbitalElementSet) -> str:
        return f"{elements.norad_id}-{to_epoch_ms(elements.epoch)}"

    def look_angle_key(self, norad_id: int, observer: ObserverLocation, when: datetime) -> str:
        bucket = (to_epoch_ms(when) // self.bucket_ms) * self.bucket_ms
        return f"{norad_id}-{observer.latitude:.4f}-{observer.longitude:.4f}-{bucket}"

    # ── memoised operations ───────────────────────────────────────────────

    def satrec(self, elements: OrbitalElementSet) -> Satrec:
        """Parsed record for an element set, parsing at most once per epoch."""
        key = self.satrec_key(elements)
        cached = self._satrecs.get(key)
        if cached is not None:
            self._count(hit=True)
            return cached
        self._count(hit=False)
        satrec = parse_satrec(elements)
        self._safe_put(self._satrecs, key, satrec)
        return satrec

    def look_angle(
        self,
        elements: OrbitalElementSet,
        observer: ObserverLocation,
        when: datetime,
    ) -> LookAngle:
        when = ensure_utc(when)
        key = self.look_angle_key(elements.norad_id, observer, when)
        cached = self._look_angles.get(key)
        if cached is not None:
            self._count(hit=True)
            return cached
        self._count(hit=False)
        result = look_angle_from_satrec(self.satrec(elements), observer, when)
        self._safe_put(self._look_angles, key, result)
        return result

    # ── housekeeping ──────────────────────────────────────────────────────

    def clear(self) -> None:
        self._satrecs.clear()
        self._look_angles.clear()
        with self._stats_lock:
            self.hits = 0
            self.misses = 0
        logger.debug("Calculation caches cleared")

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_pct": (self.hits / total * 100.0) if total else 0.0,
            "satrec_cache_size": len(self._satrecs),
            "look_angle_cache_size": len(self._look_angles),
        }

    def _count(self, hit: bool) -> None:
        with self._stats_lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    @staticmethod
    def _safe_put(cache: BoundedCache, key: str, value) -> None:
        try:
            cache.put(key, value)
        except (MemoryError, TypeError) as exc:
            logger.warning("Cache insert for %s failed, continuing uncached: %s", key, exc)


default_cache = CalculationCache()
