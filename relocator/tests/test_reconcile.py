import re
from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import T0
from relocator.catalog import (
    Catalog,
    CatalogEvent,
    CatalogPhase,
    CatalogStation,
    EventRelocInfo,
    PhaseRelocInfo,
)
from relocator.models import AUTOMATIC, MANUAL, Arrival, Origin, OriginQuality, Pick
from relocator.profiles import CrossCorrelation, Profile, RelocationConfig
from relocator.reconcile import build_relocated_origin, format_comment, generate_public_id
from relocator.region import RectangularRegion

NOW = T0 + timedelta(minutes=2)

# stations due north, east and south of the epicentre at (0, 0), one degree away
STATIONS = {
    "XX.N.": CatalogStation("XX.N.", 1.0, 0.0, 0.0, "XX", "N", ""),
    "XX.E.": CatalogStation("XX.E.", 0.0, 1.0, 0.0, "XX", "E", ""),
    "XX.S.": CatalogStation("XX.S.", -1.0, 0.0, 0.0, "XX", "S", ""),
}

PROFILE = Profile(
    name="test",
    region=RectangularRegion(),
    config=RelocationConfig(xcorr=CrossCorrelation(0.5, 0.5, 0.3, 0.5)),
    earth_model_id="iasp91",
    method_id="RELOCATOR_DD",
)


def _pick(sta, seconds, chan="HHZ"):
    return Pick(f"Pick/{sta}", T0 + timedelta(seconds=seconds), "XX", sta, "", chan, "P")


def _phase(sta, seconds, relocated=True, weight=1.0, manual=False, phase_type="P", station=None):
    return CatalogPhase(
        event_id=1,
        station_id=station or f"XX.{sta}.",
        time=T0 + timedelta(seconds=seconds),
        type=phase_type,
        network_code="XX",
        station_code=sta,
        location_code="",
        channel_code="HHZ",
        is_manual=manual,
        weight=weight,
        reloc_info=PhaseRelocInfo(is_relocated=relocated, weight=0.75, residual=0.04),
    )


def _relocated(phases, longitude=0.0):
    catalog = Catalog(stations=STATIONS)
    catalog.events[1] = CatalogEvent(
        id=1,
        time=T0,
        latitude=0.0,
        longitude=longitude,
        depth=10.0,
        rms=0.08,
        reloc_info=EventRelocInfo(
            is_relocated=True,
            lat_uncertainty=0.5,
            lon_uncertainty=0.25,
            depth_uncertainty=1.0,
            num_cc_p=4,
            num_cc_s=2,
            num_ct_p=3,
            num_ct_s=0,
            rms_residual_cc=0.012,
            rms_residual_ct=0.08,
        ),
    )
    catalog.phases = list(phases)
    return catalog


def _request(picks, weights=None, quality=None):
    arrivals = [
        Arrival(pick_id=p.public_id, phase="P", weight=(weights or {}).get(p.sta, 1.0), time_correction=0.01)
        for p in picks
    ]
    return Origin(
        public_id="Origin/request",
        time=T0,
        latitude=0.1,
        longitude=0.1,
        arrivals=arrivals,
        quality=quality,
    )


def _build(relocated, request, picks, **kwargs):
    lookup = {p.public_id: p for p in picks}
    return build_relocated_origin(relocated, PROFILE, request, lookup.get, NOW, **kwargs)


def test_every_arrival_matched_and_relocated():
    picks = [_pick("N", 5), _pick("E", 6), _pick("S", 7)]
    relocated = _relocated([_phase("N", 5), _phase("E", 6), _phase("S", 7)])

    result = _build(relocated, _request(picks), picks, agency_id="SED", author="relocator")

    origin = result.origin
    assert result.new_picks == []
    assert [a.pick_id for a in origin.arrivals] == ["Pick/N", "Pick/E", "Pick/S"]
    assert all(a.time_used for a in origin.arrivals)
    assert all(a.weight == 0.75 and a.time_residual == 0.04 for a in origin.arrivals)
    assert all(a.time_correction == 0.01 for a in origin.arrivals)
    assert [a.azimuth for a in origin.arrivals] == pytest.approx([0.0, 90.0, 180.0], abs=1e-6)
    assert all(a.distance == pytest.approx(1.0) for a in origin.arrivals)

    quality = origin.quality
    assert quality.associated_phase_count == 3
    assert quality.used_phase_count == 3
    assert quality.associated_station_count == 3
    assert quality.used_station_count == 3
    assert quality.standard_error == 0.08
    assert quality.mean_distance == pytest.approx(1.0)
    assert quality.minimum_distance == pytest.approx(1.0)
    assert quality.maximum_distance == pytest.approx(1.0)
    assert quality.azimuthal_gap == pytest.approx(180.0)
    assert quality.secondary_azimuthal_gap == pytest.approx(270.0)

    assert origin.method_id == "RELOCATOR_DD"
    assert origin.earth_model_id == "iasp91"
    assert origin.evaluation_mode == AUTOMATIC
    assert origin.latitude_uncertainty == 0.5
    assert origin.longitude_uncertainty == 0.25
    assert origin.depth_uncertainty == 1.0
    assert origin.creation_info.agency_id == "SED"
    assert origin.creation_info.creation_time == NOW
    assert origin.comments == [format_comment(relocated.events[1])]


def test_engine_added_phase_becomes_new_pick():
    picks = [_pick("N", 5), _pick("E", 6)]
    relocated = _relocated([_phase("N", 5), _phase("E", 6), _phase("S", 9, manual=True, phase_type="Pg")])

    result = _build(relocated, _request(picks), picks, public_id_pattern="Pick/@id@")

    assert len(result.new_picks) == 1
    new_pick = result.new_picks[0]
    assert new_pick.sta == "S"
    assert new_pick.time == T0 + timedelta(seconds=9)
    assert new_pick.phase_hint == "Pg"
    assert new_pick.evaluation_mode == MANUAL
    assert new_pick.public_id != result.origin.public_id

    arrival = result.origin.arrivals[-1]
    assert arrival.pick_id == new_pick.public_id
    assert arrival.phase == "Pg"
    assert arrival.time_used
    assert result.origin.quality.associated_phase_count == 3


def test_unmatched_arrival_is_kept_unused():
    picks = [_pick("N", 5), _pick("E", 6), _pick("S", 7)]
    # engine dropped S and kept E without relocating it
    relocated = _relocated([_phase("N", 5), _phase("E", 6, relocated=False, weight=0.5)])

    result = _build(relocated, _request(picks, weights={"E": 0.9}), picks)

    north, east, south = result.origin.arrivals
    assert north.time_used
    assert not east.time_used
    assert east.weight == 0.9
    assert east.time_residual == 0.0
    assert not south.time_used
    assert south.weight == 0.0
    assert south.distance is None
    assert result.new_picks == []

    quality = result.origin.quality
    assert quality.associated_phase_count == 3
    assert quality.used_phase_count == 1
    assert quality.used_station_count == 1
    assert quality.azimuthal_gap == 360.0


def test_match_requires_exact_channel_and_time():
    picks = [_pick("N", 5, chan="HHN")]
    relocated = _relocated([_phase("N", 5)])

    result = _build(relocated, _request(picks), picks)

    assert result.origin.arrivals[0].weight == 0.0
    assert len(result.new_picks) == 1


def test_missing_pick_skips_arrival():
    picks = [_pick("N", 5), _pick("E", 6)]
    relocated = _relocated([_phase("N", 5), _phase("E", 6)])

    result = _build(relocated, _request(picks), picks[:1])

    assert [a.pick_id for a in result.origin.arrivals[:1]] == ["Pick/N"]
    # the E phase is unmatched and therefore synthesized
    assert len(result.new_picks) == 1
    assert len(result.origin.arrivals) == 2


def test_phase_with_unknown_station_is_ignored():
    picks = [_pick("N", 5)]
    relocated = _relocated([_phase("N", 5, station="XX.GONE."), _phase("E", 6, station="XX.GONE.")])

    result = _build(relocated, _request(picks), picks)

    assert len(result.origin.arrivals) == 1
    assert result.origin.arrivals[0].weight == 0.0
    assert result.new_picks == []


def test_zero_used_phases_has_no_statistics():
    picks = [_pick("N", 5), _pick("E", 6)]
    relocated = _relocated([_phase("N", 5, relocated=False), _phase("E", 6, relocated=False)])

    quality = _build(relocated, _request(picks), picks).origin.quality

    assert quality.used_phase_count == 0
    assert quality.associated_phase_count == 2
    assert quality.mean_distance is None
    assert quality.minimum_distance is None
    assert quality.maximum_distance is None
    assert quality.azimuthal_gap is None
    assert quality.secondary_azimuthal_gap is None


def test_associated_station_count_from_request_quality():
    picks = [_pick("N", 5)]
    relocated = _relocated([_phase("N", 5)])
    request = _request(picks, quality=OriginQuality(associated_station_count=17))

    quality = _build(relocated, request, picks).origin.quality

    assert quality.associated_station_count == 17
    assert quality.used_station_count == 1


def test_each_phase_matches_only_once():
    pick = _pick("N", 5)
    request = _request([pick])
    request = replace(request, arrivals=request.arrivals * 2)
    relocated = _relocated([_phase("N", 5)])

    result = _build(relocated, request, [pick])

    first, second = result.origin.arrivals
    assert first.time_used
    assert not second.time_used


def test_longitude_is_normalized():
    relocated = _relocated([], longitude=190.0)
    origin = _build(relocated, None, []).origin
    assert origin.longitude == pytest.approx(-170.0)
    assert origin.arrivals == []


def test_catalog_must_hold_one_event():
    with pytest.raises(ValueError):
        build_relocated_origin(Catalog(), PROFILE, None, lambda _id: None, NOW)


def test_generate_public_id():
    assert generate_public_id("RELOCATOR.@time/%Y%m%d@.@id@", NOW).startswith("RELOCATOR.20260301.")
    assert re.fullmatch(r"Origin/\d{14}\.\d{6}\.[0-9a-f]{12}", generate_public_id("", NOW))
    assert generate_public_id("fixed", NOW) == "fixed"
    assert generate_public_id("@id@", NOW) != generate_public_id("@id@", NOW)


def test_format_comment():
    comment = format_comment(_relocated([]).events[1])
    assert comment.splitlines() == [
        "Cross-correlated P phases 4, S phases 2. Rms residual 0.012 [sec]",
        "Catalog P phases 3, S phases 0. Rms residual 0.08 [sec]",
        "Error [km]: East-west 0.250, north-south 0.500, depth 1.000",
    ]
