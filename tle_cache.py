"""Orbital element fetching and freshness management.

Fetches TLEs from CelesTrak per NORAD id and keeps one active element set
per satellite in a key-value store.  Stored sets are served while younger
than ``TLE_REFRESH_HOURS``; older ones are re-fetched.  When a fetch fails
the stored set is still served, flagged stale, so prediction keeps working
offline.

Each provider's raw response shape is mapped to ``OrbitalElementSet`` by
its own adapter function at this boundary.  Nothing past this module sees
provider field names.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Generic, Iterable, TypeVar

import requests

from errors import (
    InvalidOrbitalElements,
    NetworkFailure,
    PassTrackError,
    RateLimitExceeded,
    RequestTimeout,
)
from pass_store import KeyValueStore, MemoryStore
from propagator import OrbitalElementSet, TleSource, ensure_utc, utc_now
from settings import Config

logger = logging.getLogger(__name__)

TLE_KEY_PREFIX = "tle:"
TLE_EPOCH_WARN_DAYS = 2

T = TypeVar("T")


@dataclass
class Served(Generic[T]):
    """A value plus whether it came from stale data, and per-id errors."""

    value: T
    stale: bool = False
    errors: dict[int, str] = field(default_factory=dict)


@dataclass
class FetchResult:
    elements: dict[int, OrbitalElementSet] = field(default_factory=dict)
    failures: dict[int, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------

def parse_tle_text(text: str, source: TleSource = TleSource.PROVIDER_A) -> list[OrbitalElementSet]:
    """Parse 3-line (name + 2 lines) or bare 2-line TLE text.

    Malformed blocks are skipped with a warning rather than failing the
    whole document.
    """
    lines = [l.strip() for l in text.splitlines() if l.strip()]
    records = []
    i = 0
    while i + 1 < len(lines):
        name = ""
        if not lines[i].startswith("1 ") and i + 2 < len(lines):
            name, i = lines[i], i + 1
        line1, line2 = lines[i], lines[i + 1]
        if line1.startswith("1 ") and line2.startswith("2 "):
            try:
                records.append(OrbitalElementSet.from_lines(line1, line2, source, name))
            except InvalidOrbitalElements as exc:
                logger.warning("Skipping TLE block %r: %s", name or line1[:8], exc)
            i += 2
        else:
            i += 1
    return records


def from_spacetrack_record(record: dict) -> OrbitalElementSet:
    """Space-Track ``gp`` JSON record → element set."""
    try:
        return OrbitalElementSet.from_lines(
            record["TLE_LINE1"],
            record["TLE_LINE2"],
            TleSource.PROVIDER_B,
            record.get("OBJECT_NAME", ""),
        )
    except KeyError as exc:
        raise InvalidOrbitalElements(f"Space-Track record missing {exc}") from exc


def from_n2yo_tle(response: dict) -> OrbitalElementSet:
    """N2YO ``/tle/{id}`` response (``info`` + CRLF-joined ``tle``) → element set."""
    try:
        tle = response["tle"]
        info = response.get("info", {})
    except (KeyError, TypeError) as exc:
        raise InvalidOrbitalElements(f"N2YO TLE response malformed: {exc}") from exc
    lines = [l.strip() for l in tle.splitlines() if l.strip()]
    if len(lines) != 2:
        raise InvalidOrbitalElements(f"N2YO TLE for {info.get('satid')} has {len(lines)} lines")
    return OrbitalElementSet.from_lines(lines[0], lines[1], TleSource.PROVIDER_B,
                                        info.get("satname", ""))


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------

class CelestrakSource:
    """Per-satellite TLE fetches from CelesTrak's GP endpoint."""

    def __init__(
        self,
        session: requests.Session | None = None,
        url: str = Config.CELESTRAK_URL,
        timeout: float = Config.HTTP_TIMEOUT_SECONDS,
    ):
        self.session = session or requests.Session()
        self.url = url
        self.timeout = timeout

    def _get(self, norad_id: int) -> str:
        try:
            resp = self.session.get(
                self.url,
                params={"CATNR": norad_id, "FORMAT": "TLE"},
                headers={"User-Agent": Config.USER_AGENT},
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise RequestTimeout(f"CelesTrak timed out for NORAD {norad_id}") from exc
        except requests.RequestException as exc:
            raise NetworkFailure(f"Failed to fetch TLE for NORAD {norad_id}: {exc}") from exc

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise RateLimitExceeded(
                "CelesTrak rate limit reached",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        try:
            resp.raise_for_status()
        except requests.HTTPError as exc:
            raise NetworkFailure(f"CelesTrak returned {resp.status_code} for NORAD {norad_id}") from exc
        return resp.text

    def fetch_orbital_elements(self, norad_ids: Iterable[int]) -> FetchResult:
        """Fetch each id independently; failures are reported per id.

        A rate-limit response stops the loop, since every later request
        would be refused too; the remaining ids are reported as
        ``RateLimitExceeded``.
        """
        result = FetchResult()
        pending = list(dict.fromkeys(norad_ids))
        for idx, norad_id in enumerate(pending):
            try:
                parsed = [e for e in parse_tle_text(self._get(norad_id)) if e.norad_id == norad_id]
            except RateLimitExceeded:
                logger.warning("CelesTrak rate limit hit; %d ids not fetched", len(pending) - idx)
                for rest in pending[idx:]:
                    result.failures[rest] = RateLimitExceeded.kind
                break
            except PassTrackError as exc:
                logger.warning("TLE fetch failed for NORAD %s: %s", norad_id, exc)
                result.failures[norad_id] = exc.kind
                continue
            if not parsed:
                logger.warning("No TLE returned for NORAD %s", norad_id)
                result.failures[norad_id] = InvalidOrbitalElements.kind
                continue
            result.elements[norad_id] = parsed[0]
        logger.info("Fetched %d/%d TLEs from CelesTrak", len(result.elements), len(pending))
        return result


# ---------------------------------------------------------------------------
# Epoch age
# ---------------------------------------------------------------------------

def epoch_age_days(elements: OrbitalElementSet, now: datetime | None = None) -> float:
    now = utc_now() if now is None else ensure_utc(now)
    return (now - elements.epoch).total_seconds() / 86400.0


def is_degraded(elements: OrbitalElementSet, now: datetime | None = None) -> bool:
    """True when the epoch is old enough that propagated positions drift."""
    return epoch_age_days(elements, now) > TLE_EPOCH_WARN_DAYS


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class TleCache:
    """One active element set per satellite, refreshed on age."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        source: CelestrakSource | None = None,
        refresh_hours: float = Config.TLE_REFRESH_HOURS,
    ):
        self.store = store if store is not None else MemoryStore()
        self.source = source
        self.refresh_after = timedelta(hours=refresh_hours)

    @staticmethod
    def key(norad_id: int) -> str:
        return f"{TLE_KEY_PREFIX}{norad_id}"

    def get(
        self,
        norad_ids: Iterable[int],
        now: datetime | None = None,
        force_refresh: bool = False,
    ) -> Served[dict[int, OrbitalElementSet]]:
        """Element sets for the ids, fetching those missing or too old.

        Ids that can be neither fetched nor served from the store are left
        out of the result and listed in ``errors``.
        """
        now = utc_now() if now is None else ensure_utc(now)
        norad_ids = list(dict.fromkeys(norad_ids))
        served: dict[int, OrbitalElementSet] = {}
        stored: dict[int, OrbitalElementSet] = {}
        due: list[int] = []

        for norad_id in norad_ids:
            entry = self._load(norad_id)
            if entry is None:
                due.append(norad_id)
                continue
            elements, fetched_at = entry
            stored[norad_id] = elements
            if force_refresh or now - fetched_at >= self.refresh_after:
                due.append(norad_id)
            else:
                served[norad_id] = elements

        result = Served(served)
        if not due:
            return result

        if self.source is None:
            fetched = FetchResult(failures={n: NetworkFailure.kind for n in due})
        else:
            fetched = self.source.fetch_orbital_elements(due)

        for norad_id in due:
            elements = fetched.elements.get(norad_id)
            if elements is not None:
                served[norad_id] = self.put(elements, now, previous=stored.get(norad_id))
                continue
            result.errors[norad_id] = fetched.failures.get(norad_id, NetworkFailure.kind)
            if norad_id in stored:
                served[norad_id] = stored[norad_id]
                result.stale = True
                logger.warning("Serving stale TLE for NORAD %s (%s)",
                               norad_id, result.errors[norad_id])
        return result

    def put(
        self,
        elements: OrbitalElementSet,
        fetched_at: datetime | None = None,
        previous: OrbitalElementSet | None = None,
    ) -> OrbitalElementSet:
        """Make ``elements`` the active set unless a newer epoch is stored."""
        fetched_at = utc_now() if fetched_at is None else ensure_utc(fetched_at)
        if previous is None:
            entry = self._load(elements.norad_id)
            previous = entry[0] if entry else None
        active = elements
        if previous is not None and previous.epoch > elements.epoch:
            logger.debug("Keeping newer stored epoch for NORAD %s", elements.norad_id)
            active = previous
        try:
            self.store.set(self.key(active.norad_id), {
                "elements": active.to_dict(),
                "fetched_at": fetched_at.isoformat(),
            })
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not store TLE for NORAD %s: %s", active.norad_id, exc)
        return active

    def stored(self, norad_id: int) -> OrbitalElementSet | None:
        entry = self._load(norad_id)
        return entry[0] if entry else None

    def _load(self, norad_id: int) -> tuple[OrbitalElementSet, datetime] | None:
        try:
            raw = self.store.get(self.key(norad_id))
        except OSError as exc:
            logger.warning("Could not read stored TLE for NORAD %s: %s", norad_id, exc)
            return None
        if raw is None:
            return None
        try:
            return (
                OrbitalElementSet.from_dict(raw["elements"]),
                ensure_utc(datetime.fromisoformat(raw["fetched_at"])),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding corrupt TLE record for NORAD %s: %s", norad_id, exc)
            return None
