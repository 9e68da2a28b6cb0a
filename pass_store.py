"""Durable per-satellite pass records and the staleness policy.

Records are replaced wholesale: a satellite's passes are recomputed and
written in full, never edited field by field.  The backing key-value store
is pluggable; ``MemoryStore`` for tests and short-lived callers,
``JsonFileStore`` for persistence across sessions.

Store failures never break prediction.  They are logged and reads degrade
to "nothing stored", which makes the caller recompute.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from pass_finder import Pass, StationaryTarget
from propagator import ensure_utc, utc_now
from settings import Config

logger = logging.getLogger(__name__)

PASS_KEY_PREFIX = "passes:"


# ---------------------------------------------------------------------------
# Key-value stores
# ---------------------------------------------------------------------------

class KeyValueStore(Protocol):
    def get(self, key: str): ...
    def set(self, key: str, value) -> None: ...
    def delete(self, key: str) -> None: ...
    def clear(self) -> None: ...
    def keys(self) -> list[str]: ...


class MemoryStore:
    """In-process dict store.  Values are JSON-compatible objects."""

    def __init__(self):
        self._data: dict[str, object] = {}
        self._lock = threading.Lock()

    def get(self, key: str):
        return self._data.get(key)

    def set(self, key: str, value) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStore:
    """All keys in one JSON document on disk.

    Every write rewrites the document to a temporary file in the same
    directory and swaps it in with ``os.replace``, so readers see either
    the old or the new document, never a partial one.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data = self._read()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with self.path.open() as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable store %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(self._data, fh)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str):
        return self._data.get(key)

    def set(self, key: str, value) -> None:
        with self._lock:
            self._data[key] = value
            self._write()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._write()

    def clear(self) -> None:
        with self._lock:
            self._data = {}
            self._write()

    def keys(self) -> list[str]:
        return list(self._data)


# ---------------------------------------------------------------------------
# Pass records
# ---------------------------------------------------------------------------

@dataclass
class StoredPasses:
    """Everything persisted for one satellite."""

    norad_id: int
    passes: list[Pass]
    tle_epoch: datetime
    computed_at: datetime
    stationary: StationaryTarget | None = None
    name: str = ""

    def to_dict(self) -> dict:
        return {
            "norad_id": self.norad_id,
            "name": self.name,
            "passes": [p.to_dict() for p in self.passes],
            "tle_epoch": self.tle_epoch.isoformat(),
            "computed_at": self.computed_at.isoformat(),
            "stationary": self.stationary.to_dict() if self.stationary else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StoredPasses":
        stationary = data.get("stationary")
        return cls(
            norad_id=int(data["norad_id"]),
            name=data.get("name", ""),
            passes=[Pass.from_dict(p) for p in data.get("passes", [])],
            tle_epoch=ensure_utc(datetime.fromisoformat(data["tle_epoch"])),
            computed_at=ensure_utc(datetime.fromisoformat(data["computed_at"])),
            stationary=StationaryTarget.from_dict(stationary) if stationary else None,
        )

    @property
    def last_end_time(self) -> datetime | None:
        return max((p.end_time for p in self.passes), default=None)


def is_stale(
    existing: StoredPasses | None,
    tle_epoch: datetime,
    now: datetime | None = None,
    epoch_tolerance: timedelta = timedelta(hours=Config.TLE_EPOCH_STALE_HOURS),
) -> bool:
    """Whether a stored record must be recomputed.

    Stale when nothing is stored, when the latest stored pass has already
    ended, or when the current TLE epoch is more than ``epoch_tolerance``
    newer than the epoch the record was computed from.  Stationary records
    have no end time, so only the epoch rule applies to them.
    """
    if existing is None:
        return True
    if ensure_utc(tle_epoch) - existing.tle_epoch > epoch_tolerance:
        return True
    if existing.stationary is not None:
        return False
    if not existing.passes:
        return True
    now = utc_now() if now is None else ensure_utc(now)
    return existing.last_end_time <= now


class PassStore:
    """Pass records for many satellites on top of a key-value store."""

    def __init__(self, store: KeyValueStore | None = None):
        self.store = store if store is not None else MemoryStore()

    @staticmethod
    def key(norad_id: int) -> str:
        return f"{PASS_KEY_PREFIX}{norad_id}"

    def persist(
        self,
        norad_id: int,
        passes: list[Pass],
        tle_epoch: datetime,
        stationary: StationaryTarget | None = None,
        name: str = "",
        computed_at: datetime | None = None,
    ) -> StoredPasses:
        record = StoredPasses(
            norad_id=norad_id,
            name=name,
            passes=sorted(passes, key=lambda p: p.start_time),
            tle_epoch=ensure_utc(tle_epoch),
            computed_at=utc_now() if computed_at is None else ensure_utc(computed_at),
            stationary=stationary,
        )
        try:
            self.store.set(self.key(norad_id), record.to_dict())
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not persist passes for NORAD %s: %s", norad_id, exc)
        else:
            logger.debug("Stored %d passes for NORAD %s", len(passes), norad_id)
        return record

    def load(self, norad_id: int) -> StoredPasses | None:
        try:
            raw = self.store.get(self.key(norad_id))
        except OSError as exc:
            logger.warning("Could not read passes for NORAD %s: %s", norad_id, exc)
            return None
        if raw is None:
            return None
        try:
            return StoredPasses.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding corrupt pass record for NORAD %s: %s", norad_id, exc)
            return None

    def load_all(self) -> dict[int, StoredPasses]:
        records = {}
        for key in self.store.keys():
            if not key.startswith(PASS_KEY_PREFIX):
                continue
            try:
                norad_id = int(key[len(PASS_KEY_PREFIX):])
            except ValueError:
                continue
            record = self.load(norad_id)
            if record is not None:
                records[norad_id] = record
        return records

    def clear(self, norad_id: int | None = None) -> None:
        try:
            if norad_id is not None:
                self.store.delete(self.key(norad_id))
                return
            for key in self.store.keys():
                if key.startswith(PASS_KEY_PREFIX):
                    self.store.delete(key)
        except OSError as exc:
            logger.warning("Could not clear stored passes: %s", exc)

    def prune_expired(self, now: datetime | None = None) -> int:
        """Drop passes that have ended; stationary records are kept as-is.

        Returns the number of passes removed.  A satellite left with no
        passes loses its record entirely.
        """
        now = utc_now() if now is None else ensure_utc(now)
        removed = 0
        for norad_id, record in self.load_all().items():
            if record.stationary is not None:
                continue
            remaining = [p for p in record.passes if p.end_time > now]
            dropped = len(record.passes) - len(remaining)
            if not dropped:
                continue
            removed += dropped
            if remaining:
                self.persist(norad_id, remaining, record.tle_epoch,
                             name=record.name, computed_at=record.computed_at)
            else:
                self.clear(norad_id)
        if removed:
            logger.info("Pruned %d expired passes", removed)
        return removed
