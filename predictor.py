"""Pass prediction orchestration: elements → staleness → search → store.

``PassPredictor`` ties the TLE cache, the pass search and the pass store
together for one observer.  Stored passes are reused until the staleness
policy says otherwise; when orbital elements cannot be obtained the last
stored passes are served, flagged stale, instead of failing.
"""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from datetime import datetime
from typing import Iterable

from calc_cache import default_cache
from errors import InvalidOrbitalElements, PropagationFailed
from pass_finder import (
    BATCH,
    INTERACTIVE,
    Pass,
    SearchProfile,
    StationaryTarget,
    find_passes_batch,
    search_satellite,
    sort_passes,
)
from pass_store import PassStore, StoredPasses, is_stale
from propagator import ObserverLocation, ensure_utc, utc_now
from settings import Config
from tle_cache import Served, TleCache

logger = logging.getLogger(__name__)


class PassStatus(str, enum.Enum):
    UPCOMING = "upcoming"
    PASSING = "passing"
    PASSED = "passed"
    STATIONARY = "stationary"


def pass_status(item: Pass | StationaryTarget, now: datetime | None = None) -> PassStatus:
    """Where ``now`` falls relative to a pass; stationary targets never pass."""
    if isinstance(item, StationaryTarget):
        return PassStatus.STATIONARY
    now = utc_now() if now is None else ensure_utc(now)
    if now < item.start_time:
        return PassStatus.UPCOMING
    if now <= item.end_time:
        return PassStatus.PASSING
    return PassStatus.PASSED


def format_time_until(item: Pass | StationaryTarget, now: datetime | None = None) -> str:
    """Countdown label: ``2h 5m``, ``4m 10s``, ``12s``, or the status name."""
    status = pass_status(item, now)
    if status is not PassStatus.UPCOMING:
        return status.value.capitalize()
    now = utc_now() if now is None else ensure_utc(now)
    remaining = int((item.start_time - now).total_seconds())
    hours, rest = divmod(remaining, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class PassPredictor:
    """Cached pass predictions for one observer.

    Parameters
    ----------
    tle_cache         : source of current orbital element sets
    pass_store        : durable per-satellite pass records
    observer          : observer location; changing it drops stored passes
    profile           : search profile for single-satellite requests
    batch_profile     : search profile for ``refresh_all``
    min_elevation_deg : passes peaking lower are not reported
    days_ahead        : search horizon
    max_workers       : thread count for batch searches (None = serial)
    """

    def __init__(
        self,
        tle_cache: TleCache,
        pass_store: PassStore,
        observer: ObserverLocation,
        profile: SearchProfile = INTERACTIVE,
        batch_profile: SearchProfile = BATCH,
        min_elevation_deg: float = Config.DEFAULT_MIN_ELEVATION_DEG,
        days_ahead: float = Config.DEFAULT_DAYS_AHEAD,
        max_workers: int | None = None,
        cache=default_cache,
    ):
        self.tle_cache = tle_cache
        self.pass_store = pass_store
        self.observer = observer
        self.profile = profile
        self.batch_profile = batch_profile
        self.min_elevation_deg = min_elevation_deg
        self.days_ahead = days_ahead
        self.max_workers = max_workers
        self.cache = cache

    def set_observer(self, observer: ObserverLocation) -> None:
        if observer == self.observer:
            return
        logger.info("Observer moved to %s; dropping stored passes", observer.grid_square)
        self.observer = observer
        self.pass_store.clear()

    def passes_for(
        self,
        norad_id: int,
        now: datetime | None = None,
        force: bool = False,
    ) -> Served[StoredPasses | None]:
        """Current pass record for one satellite, recomputed when stale."""
        now = utc_now() if now is None else ensure_utc(now)
        served = self.tle_cache.get([norad_id], now)
        elements = served.value.get(norad_id)
        existing = self.pass_store.load(norad_id)

        if elements is None:
            logger.warning("No orbital elements for NORAD %s; serving stored passes", norad_id)
            return Served(existing, stale=True, errors=served.errors)
        if not force and not is_stale(existing, elements.epoch, now):
            return Served(existing, stale=served.stale, errors=served.errors)

        try:
            result = search_satellite(
                elements, self.observer, now, self.days_ahead,
                self.min_elevation_deg, self.profile, self.cache,
            )
        except (InvalidOrbitalElements, PropagationFailed) as exc:
            logger.warning("Pass search failed for NORAD %s: %s", norad_id, exc)
            errors = dict(served.errors)
            errors[norad_id] = exc.kind
            return Served(existing, stale=True, errors=errors)

        record = self.pass_store.persist(
            norad_id, result.passes, elements.epoch,
            stationary=result.stationary, name=elements.name, computed_at=now,
        )
        logger.info("Computed %d passes for NORAD %s", len(result.passes), norad_id)
        return Served(record, stale=served.stale, errors=served.errors)

    def refresh_all(
        self,
        norad_ids: Iterable[int],
        now: datetime | None = None,
        force: bool = False,
    ) -> Served[list[Pass]]:
        """Recompute every stale satellite in one batch and return all
        unexpired passes, soonest first."""
        now = utc_now() if now is None else ensure_utc(now)
        norad_ids = list(dict.fromkeys(norad_ids))
        served = self.tle_cache.get(norad_ids, now)
        errors = dict(served.errors)

        due = [
            elements for norad_id, elements in served.value.items()
            if force or is_stale(self.pass_store.load(norad_id), elements.epoch, now)
        ]
        if due:
            batch = find_passes_batch(
                due, self.observer, now, self.days_ahead, self.min_elevation_deg,
                self.batch_profile, self.cache, self.max_workers,
            )
            errors.update(batch.failures)
            by_id: dict[int, list[Pass]] = defaultdict(list)
            for p in batch.passes:
                by_id[p.norad_id].append(p)
            stationary = {s.norad_id: s for s in batch.stationary}
            for elements in due:
                if elements.norad_id in batch.failures:
                    continue
                self.pass_store.persist(
                    elements.norad_id, by_id.get(elements.norad_id, []), elements.epoch,
                    stationary=stationary.get(elements.norad_id),
                    name=elements.name, computed_at=now,
                )
            logger.info("Refreshed passes for %d satellites (%d failed)",
                        len(due) - len(batch.failures), len(batch.failures))

        missing = [n for n in norad_ids if n not in served.value]
        stale = served.stale or bool(errors) or bool(missing)
        return Served(self.upcoming(norad_ids, now), stale=stale, errors=errors)

    def upcoming(self, norad_ids: Iterable[int], now: datetime | None = None) -> list[Pass]:
        """Stored passes that have not ended yet, ordered by (start, NORAD id)."""
        now = utc_now() if now is None else ensure_utc(now)
        passes = []
        for norad_id in norad_ids:
            record = self.pass_store.load(norad_id)
            if record is not None:
                passes.extend(p for p in record.passes if p.end_time > now)
        return sort_passes(passes)

    def stationary_targets(self, norad_ids: Iterable[int]) -> list[StationaryTarget]:
        targets = []
        for norad_id in norad_ids:
            record = self.pass_store.load(norad_id)
            if record is not None and record.stationary is not None:
                targets.append(record.stationary)
        return targets
