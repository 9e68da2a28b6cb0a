from datetime import datetime, timezone

import pytest
import requests

from calc_cache import CalculationCache
from propagator import ObserverLocation, OrbitalElementSet, TleSource

ISS_LINE1 = "1 25544U 98067A   24127.82853009  .00015698  00000+0  27310-3 0  9995"
ISS_LINE2 = "2 25544  51.6393 160.4574 0003580 140.6673 205.7250 15.50957674452123"

ISS_OLD_LINE1 = "1 25544U 98067A   19343.69339541  .00001764  00000-0  38792-4 0  9991"
ISS_OLD_LINE2 = "2 25544  51.6439 211.2001 0007417  17.6667  85.6398 15.50103472202482"

GEO_LINE1 = "1 43700U 18090A   24127.50000000  .00000150  00000+0  00000+0 0  9997"
GEO_LINE2 = "2 43700   0.0150  90.0000 0001500 270.0000 180.0000  1.00272000 20357"

# ISS element set epoch, 2024-05-06 19:53 UTC
ISS_EPOCH = datetime(2024, 5, 6, 19, 53, 5, tzinfo=timezone.utc)


@pytest.fixture
def iss():
    return OrbitalElementSet.from_lines(ISS_LINE1, ISS_LINE2, TleSource.PROVIDER_A, "ISS (ZARYA)")


@pytest.fixture
def iss_old():
    return OrbitalElementSet.from_lines(ISS_OLD_LINE1, ISS_OLD_LINE2, TleSource.PROVIDER_A, "ISS (ZARYA)")


@pytest.fixture
def geo():
    return OrbitalElementSet.from_lines(GEO_LINE1, GEO_LINE2, TleSource.MANUAL, "QO-100")


@pytest.fixture
def observer():
    return ObserverLocation(44.958341, 20.416665, 0.0)


@pytest.fixture
def start_time():
    return datetime(2024, 5, 7, 0, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def cache():
    return CalculationCache()


class FakeResponse:
    def __init__(self, status_code=200, text="", json_data=None, headers=None):
        self.status_code = status_code
        self.text = text
        self._json = json_data
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Stands in for ``requests.Session``; replies are queued per call."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def queue(self, reply):
        self.replies.append(reply)

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        if not self.replies:
            raise requests.ConnectionError("no reply queued")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def fake_session():
    return FakeSession()


class FakeClock:
    """Settable clock for tracker tests."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta
