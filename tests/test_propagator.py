from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from conftest import GEO_LINE2, ISS_EPOCH, ISS_LINE1, ISS_LINE2
from errors import InvalidObserverLocation, InvalidOrbitalElements, PropagationFailed
from propagator import (
    ObserverLocation,
    OrbitalElementSet,
    TleSource,
    compute_batch,
    compute_look_angle,
    look_angle_from_satrec,
    look_angles,
    orbital_altitude_km,
    parse_satrec,
    sub_satellite_point,
    tle_checksum,
    tle_epoch,
    topocentric_track,
)


def _bad_elements(norad_id=99999):
    return OrbitalElementSet(
        norad_id=norad_id,
        line1="1 99999U garbage",
        line2="2 99999 garbage",
        epoch=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


# ---------------------------------------------------------------------------
# Element sets
# ---------------------------------------------------------------------------

def test_from_lines_derives_id_and_epoch(iss):
    assert iss.norad_id == 25544
    assert iss.source is TleSource.PROVIDER_A
    assert iss.name == "ISS (ZARYA)"
    assert abs((iss.epoch - ISS_EPOCH).total_seconds()) < 1.0


def test_checksum_matches_last_column():
    assert tle_checksum(ISS_LINE1) == int(ISS_LINE1[-1])
    assert tle_checksum(ISS_LINE2) == int(ISS_LINE2[-1])


def test_tle_epoch():
    assert tle_epoch(ISS_LINE1).date() == ISS_EPOCH.date()


@pytest.mark.parametrize("line1, line2", [
    (ISS_LINE1[:-1] + "0", ISS_LINE2),          # checksum
    (ISS_LINE1[:-2], ISS_LINE2),                # length
    (ISS_LINE1, ISS_LINE1),                     # line number
    (ISS_LINE1, GEO_LINE2),                     # catalog number
])
def test_corrupted_tle_rejected(line1, line2):
    with pytest.raises(InvalidOrbitalElements):
        OrbitalElementSet.from_lines(line1, line2)


def test_corrupted_tle_fails_look_angle(observer):
    corrupted = OrbitalElementSet(
        norad_id=25544,
        line1=ISS_LINE1[:-1] + "0",
        line2=ISS_LINE2,
        epoch=ISS_EPOCH,
    )
    with pytest.raises(InvalidOrbitalElements):
        compute_look_angle(corrupted, observer, ISS_EPOCH)


def test_element_set_dict_round_trip(iss):
    assert OrbitalElementSet.from_dict(iss.to_dict()) == iss


# ---------------------------------------------------------------------------
# Observer
# ---------------------------------------------------------------------------

def test_observer_derives_grid_square():
    assert ObserverLocation(48.1466, 11.6083).grid_square == "JN58td"


def test_observer_from_grid_square_uses_centre():
    obs = ObserverLocation.from_grid_square("JN58td", altitude_meters=520.0)
    assert obs.latitude == pytest.approx(48.145833, abs=1e-5)
    assert obs.longitude == pytest.approx(11.625, abs=1e-5)
    assert obs.altitude_km == pytest.approx(0.52)
    assert obs.grid_square == "JN58td"


@pytest.mark.parametrize("lat, lon, alt", [
    (91.0, 0.0, 0.0),
    (0.0, 181.0, 0.0),
    (float("nan"), 0.0, 0.0),
    (0.0, 0.0, float("inf")),
])
def test_invalid_observer(lat, lon, alt):
    with pytest.raises(InvalidObserverLocation):
        ObserverLocation(lat, lon, alt)


# ---------------------------------------------------------------------------
# Look angles
# ---------------------------------------------------------------------------

def test_look_angle_ranges_and_rounding(iss, observer, start_time):
    for i in range(200):
        look = compute_look_angle(iss, observer, start_time + timedelta(minutes=7 * i))
        assert 0.0 <= look.azimuth_deg < 360.0
        assert -90.0 <= look.elevation_deg <= 90.0
        assert look.range_km > 0.0
        assert round(look.azimuth_deg, 2) == look.azimuth_deg
        assert round(look.elevation_deg, 2) == look.elevation_deg
        assert look.is_visible == (look.elevation_deg > 0)


def test_iss_range_is_plausible(iss, observer, start_time):
    look = compute_look_angle(iss, observer, start_time)
    # Between directly overhead and the far side of the Earth
    assert 350.0 < look.range_km < 13_500.0


def test_vectorised_matches_single(iss, observer, start_time):
    satrec = parse_satrec(iss)
    times = [start_time + timedelta(minutes=m) for m in range(0, 120, 13)]
    az, el, rng = look_angles(satrec, observer, times)
    for i, t in enumerate(times):
        single = look_angle_from_satrec(satrec, observer, t)
        assert single.elevation_deg == pytest.approx(el[i], abs=0.006)
        assert single.range_km == pytest.approx(rng[i], abs=0.006)


def test_topocentric_track_sub_satellite_points(iss, observer, start_time):
    satrec = parse_satrec(iss)
    times = [start_time + timedelta(seconds=s) for s in range(0, 60, 10)]
    az, el, rng, geo = topocentric_track(satrec, observer, times)
    assert geo.shape == (len(times), 3)
    assert np.all(np.abs(geo[:, 0]) <= 52.0)
    assert np.all((geo[:, 2] > 350.0) & (geo[:, 2] < 450.0))


def test_sub_satellite_point(iss):
    lat, lon, alt = sub_satellite_point(parse_satrec(iss), ISS_EPOCH)
    assert abs(lat) <= 52.0
    assert -180.0 <= lon <= 180.0
    assert 350.0 < alt < 450.0


def test_propagation_failure_raises(observer):
    class FailingSatrec:
        satnum = 12345

        def sgp4(self, jd, fr):
            return 6, (0.0, 0.0, 0.0), (0.0, 0.0, 0.0)

    with pytest.raises(PropagationFailed) as exc_info:
        look_angle_from_satrec(FailingSatrec(), observer, ISS_EPOCH)
    assert exc_info.value.error_code == 6
    assert exc_info.value.kind == "PropagationFailed"


def test_compute_batch_isolates_failures(iss, geo, observer, start_time):
    results, failures = compute_batch([iss, _bad_elements(), geo], observer, start_time)
    assert set(results) == {25544, 43700}
    assert failures == {99999: "InvalidOrbitalElements"}


def test_orbital_altitude(iss, geo):
    assert orbital_altitude_km(iss.line2) == pytest.approx(415.0, abs=30.0)
    assert orbital_altitude_km(geo.line2) == pytest.approx(35_786.0, abs=50.0)
