from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from relocator.catalog import Catalog, CatalogStation, EventRelocInfo, PhaseRelocInfo, station_id
from relocator.models import Arrival, CreationInfo, Origin, OriginQuality, Pick, Station
from relocator.profiles import CrossCorrelation, Profile, RelocationConfig
from relocator.region import CircularRegion

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

STATIONS = {
    ("CH", "AAA", ""): Station("CH", "AAA", "", 46.5, 10.0, 1200.0),
    ("CH", "BBB", ""): Station("CH", "BBB", "", 46.0, 10.7, 900.0),
    ("CH", "CCC", ""): Station("CH", "CCC", "", 45.5, 9.5, 450.0),
}


class FakeDataSource:
    def __init__(self, origins=(), picks=(), events=(), stations=None):
        self.origins = {o.public_id: o for o in origins}
        self.picks = {p.public_id: p for p in picks}
        self.events = {e.public_id: e for e in events}
        self.stations = dict(STATIONS if stations is None else stations)

    def get_origin(self, public_id):
        return self.origins.get(public_id)

    def get_event(self, public_id):
        return self.events.get(public_id)

    def get_pick(self, public_id):
        return self.picks.get(public_id)

    def get_station(self, net, sta, loc):
        return self.stations.get((net, sta, loc))


class FakeEngine:
    """Moves the event 0.01 degrees north and marks every phase relocated."""

    def __init__(self, catalog, config, working_dir, **options):
        self.catalog = catalog
        self.config = config
        self.working_dir = working_dir
        self.options = options
        self.error = None
        self.requests = []
        self.catalog_runs = []
        self.preloaded = 0
        self.cleaned = 0

    def relocate_single_event(self, single_event):
        self.requests.append(single_event)
        if self.error is not None:
            raise self.error
        event = next(iter(single_event.events.values()))
        phases = [
            replace(phase, reloc_info=PhaseRelocInfo(is_relocated=True, weight=0.8, residual=0.05))
            for phase in single_event.phases_of(event.id)
        ]
        relocated = Catalog(stations=single_event.stations)
        relocated.add_event(
            replace(
                event,
                latitude=event.latitude + 0.01,
                rms=0.12,
                reloc_info=EventRelocInfo(
                    is_relocated=True,
                    lat_uncertainty=0.4,
                    lon_uncertainty=0.3,
                    depth_uncertainty=0.9,
                    num_ct_p=len(phases),
                    rms_residual_ct=0.12,
                ),
            ),
            phases,
        )
        return relocated

    def relocate_catalog(self, force, use_external_associator):
        self.catalog_runs.append((force, use_external_associator))
        return self.catalog.copy()

    def preload_data(self):
        self.preloaded += 1

    def clean_unused_resources(self):
        self.cleaned += 1

    def set_catalog(self, catalog):
        self.catalog = catalog


def fake_engine(catalog, config, working_dir, **options):
    return FakeEngine(catalog, config, working_dir, **options)


class FakeEngineFactory:
    def __init__(self):
        self.engines = []
        self.error = None

    def __call__(self, catalog, config, working_dir, **options):
        engine = FakeEngine(catalog, config, working_dir, **options)
        engine.error = self.error
        self.engines.append(engine)
        return engine


def make_picks(prefix: str = "Pick/1") -> list[Pick]:
    return [
        Pick(
            public_id=f"{prefix}.{sta}",
            time=T0 + timedelta(seconds=5 + i),
            net=net,
            sta=sta,
            loc=loc,
            chan="HHZ",
            phase_hint="P",
        )
        for i, (net, sta, loc) in enumerate(STATIONS)
    ]


def make_origin(picks: list[Pick], public_id: str = "Origin/1", **overrides) -> Origin:
    fields = dict(
        public_id=public_id,
        time=T0,
        latitude=46.0,
        longitude=10.0,
        depth=8.0,
        method_id="LOCSAT",
        creation_info=CreationInfo(agency_id="SED", author="scautoloc", creation_time=T0 + timedelta(seconds=30)),
        arrivals=[Arrival(pick_id=pick.public_id, phase="P", weight=1.0) for pick in picks],
        quality=OriginQuality(standard_error=0.3),
    )
    fields.update(overrides)
    return Origin(**fields)


@pytest.fixture
def engine_factory() -> FakeEngineFactory:
    return FakeEngineFactory()


@pytest.fixture
def background_files(tmp_path):
    catalog = Catalog(
        stations={
            station_id(*key): CatalogStation(
                id=station_id(*key),
                latitude=st.lat,
                longitude=st.lon,
                elevation=st.elev_m,
                network_code=st.net,
                station_code=st.sta,
                location_code=st.loc,
            )
            for key, st in STATIONS.items()
        }
    )
    paths = {
        "event_file": str(tmp_path / "event.csv"),
        "phase_file": str(tmp_path / "phase.csv"),
        "station_file": str(tmp_path / "station.csv"),
    }
    catalog.write_files(paths["event_file"], paths["phase_file"], paths["station_file"])
    return paths


@pytest.fixture
def profile(background_files) -> Profile:
    return Profile(
        name="alps",
        region=CircularRegion(46.0, 10.0, 300.0, empty=False),
        config=RelocationConfig(xcorr=CrossCorrelation(0.5, 0.5, 0.3, 0.5)),
        earth_model_id="iasp91",
        method_id="RELOCATOR_DD",
        **background_files,
    )
