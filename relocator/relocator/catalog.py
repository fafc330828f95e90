from __future__ import annotations

import copy
import csv
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Protocol

from .models import MANUAL, Event, Origin, Pick, Station

logger = logging.getLogger(__name__)

ID_COLUMN = "public_id"

STATION_FIELDS = [
    "id",
    "latitude",
    "longitude",
    "elevation",
    "networkCode",
    "stationCode",
    "locationCode",
]
EVENT_FIELDS = [
    "id",
    "isotime",
    "latitude",
    "longitude",
    "depth",
    "magnitude",
    "rms",
    "originId",
    "relocated",
    "latUncertainty",
    "lonUncertainty",
    "depthUncertainty",
    "numCCp",
    "numCCs",
    "numCTp",
    "numCTs",
    "residualCC",
    "residualCT",
]
PHASE_FIELDS = [
    "eventId",
    "stationId",
    "isotime",
    "lowerUncertainty",
    "upperUncertainty",
    "type",
    "networkCode",
    "stationCode",
    "locationCode",
    "channelCode",
    "evalMode",
    "weight",
    "relocated",
    "finalWeight",
    "residual",
]


class DataSource(Protocol):
    def get_origin(self, public_id: str) -> Optional[Origin]: ...

    def get_event(self, public_id: str) -> Optional[Event]: ...

    def get_pick(self, public_id: str) -> Optional[Pick]: ...

    def get_station(self, net: str, sta: str, loc: str) -> Optional[Station]: ...


@dataclass(frozen=True)
class CatalogStation:
    id: str
    latitude: float
    longitude: float
    elevation: float
    network_code: str
    station_code: str
    location_code: str


@dataclass(frozen=True)
class EventRelocInfo:
    is_relocated: bool = False
    lat_uncertainty: float = 0.0
    lon_uncertainty: float = 0.0
    depth_uncertainty: float = 0.0
    num_cc_p: int = 0
    num_cc_s: int = 0
    num_ct_p: int = 0
    num_ct_s: int = 0
    rms_residual_cc: float = 0.0
    rms_residual_ct: float = 0.0


@dataclass(frozen=True)
class CatalogEvent:
    id: int
    time: datetime
    latitude: float
    longitude: float
    depth: float
    magnitude: float = 0.0
    rms: float = 0.0
    origin_id: str = ""
    reloc_info: EventRelocInfo = field(default_factory=EventRelocInfo)


@dataclass(frozen=True)
class PhaseRelocInfo:
    is_relocated: bool = False
    weight: float = 0.0
    residual: float = 0.0


@dataclass(frozen=True)
class CatalogPhase:
    event_id: int
    station_id: str
    time: datetime
    type: str
    network_code: str
    station_code: str
    location_code: str
    channel_code: str
    is_manual: bool = False
    weight: float = 1.0
    lower_uncertainty: float = 0.0
    upper_uncertainty: float = 0.0
    reloc_info: PhaseRelocInfo = field(default_factory=PhaseRelocInfo)


def station_id(net: str, sta: str, loc: str) -> str:
    return f"{net}.{sta}.{loc}"


class Catalog:
    """Stations, events and phases exchanged with the relocation engine."""

    def __init__(
        self,
        stations: dict[str, CatalogStation] | None = None,
        events: dict[int, CatalogEvent] | None = None,
        phases: list[CatalogPhase] | None = None,
    ):
        self.stations: dict[str, CatalogStation] = dict(stations or {})
        self.events: dict[int, CatalogEvent] = dict(events or {})
        self.phases: list[CatalogPhase] = list(phases or [])

    def copy(self) -> "Catalog":
        return Catalog(copy.copy(self.stations), copy.copy(self.events), list(self.phases))

    def phases_of(self, event_id: int) -> list[CatalogPhase]:
        return [phase for phase in self.phases if phase.event_id == event_id]

    def next_event_id(self) -> int:
        return max(self.events, default=0) + 1

    def add_event(self, event: CatalogEvent, phases: Iterable[CatalogPhase] = ()) -> int:
        event_id = self.next_event_id()
        self.events[event_id] = replace(event, id=event_id)
        for phase in phases:
            self.phases.append(replace(phase, event_id=event_id))
        return event_id

    def add_origins(self, origins: Iterable[Origin], data_source: DataSource) -> list[int]:
        """Append origins with their picks, resolving stations from inventory."""
        added: list[int] = []
        for origin in origins:
            if origin.latitude is None or origin.longitude is None:
                logger.warning("Skipping origin without coordinates: origin_id=%s", origin.public_id)
                continue
            event = CatalogEvent(
                id=0,
                time=origin.time,
                latitude=float(origin.latitude),
                longitude=float(origin.longitude),
                depth=float(origin.depth or 0.0),
                rms=float(origin.quality.standard_error or 0.0) if origin.quality else 0.0,
                origin_id=origin.public_id,
            )
            phases: list[CatalogPhase] = []
            for arrival in origin.arrivals:
                pick = data_source.get_pick(arrival.pick_id)
                if pick is None:
                    logger.warning(
                        "Cannot find pick referenced by origin: origin_id=%s pick_id=%s",
                        origin.public_id,
                        arrival.pick_id,
                    )
                    continue
                sid = station_id(pick.net, pick.sta, pick.loc)
                if sid not in self.stations:
                    station = data_source.get_station(pick.net, pick.sta, pick.loc)
                    if station is None:
                        logger.warning(
                            "Skipping pick with missing station metadata: pick_id=%s station=%s",
                            pick.public_id,
                            sid,
                        )
                        continue
                    self.stations[sid] = CatalogStation(
                        id=sid,
                        latitude=station.lat,
                        longitude=station.lon,
                        elevation=station.elev_m,
                        network_code=station.net,
                        station_code=station.sta,
                        location_code=station.loc,
                    )
                phases.append(
                    CatalogPhase(
                        event_id=0,
                        station_id=sid,
                        time=pick.time,
                        type=arrival.phase or pick.phase_hint,
                        network_code=pick.net,
                        station_code=pick.sta,
                        location_code=pick.loc,
                        channel_code=pick.chan,
                        is_manual=pick.evaluation_mode == MANUAL,
                        weight=1.0 if arrival.weight is None else float(arrival.weight),
                    )
                )
            added.append(self.add_event(event, phases))
        return added

    def add_ids(self, public_ids: Iterable[str], data_source: DataSource) -> list[int]:
        """Append origins given by origin or event public ids.

        Event ids resolve to the event's preferred origin.
        """
        origins: list[Origin] = []
        for public_id in public_ids:
            origin = data_source.get_origin(public_id)
            if origin is None:
                event = data_source.get_event(public_id)
                if event is not None and event.preferred_origin_id:
                    origin = data_source.get_origin(event.preferred_origin_id)
            if origin is None:
                logger.warning("Cannot find origin or event: public_id=%s", public_id)
                continue
            origins.append(origin)
        return self.add_origins(origins, data_source)

    @classmethod
    def from_files(cls, station_file: str, event_file: str, phase_file: str) -> "Catalog":
        catalog = cls()
        for row in _read_rows(station_file):
            station = CatalogStation(
                id=row["id"],
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
                elevation=float(row.get("elevation") or 0.0),
                network_code=row["networkCode"],
                station_code=row["stationCode"],
                location_code=row.get("locationCode") or "",
            )
            catalog.stations[station.id] = station
        for row in _read_rows(event_file):
            event = CatalogEvent(
                id=int(row["id"]),
                time=parse_time(row["isotime"]),
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
                depth=float(row["depth"]),
                magnitude=float(row.get("magnitude") or 0.0),
                rms=float(row.get("rms") or 0.0),
                origin_id=row.get("originId") or "",
                reloc_info=EventRelocInfo(
                    is_relocated=_parse_bool(row.get("relocated")),
                    lat_uncertainty=float(row.get("latUncertainty") or 0.0),
                    lon_uncertainty=float(row.get("lonUncertainty") or 0.0),
                    depth_uncertainty=float(row.get("depthUncertainty") or 0.0),
                    num_cc_p=int(row.get("numCCp") or 0),
                    num_cc_s=int(row.get("numCCs") or 0),
                    num_ct_p=int(row.get("numCTp") or 0),
                    num_ct_s=int(row.get("numCTs") or 0),
                    rms_residual_cc=float(row.get("residualCC") or 0.0),
                    rms_residual_ct=float(row.get("residualCT") or 0.0),
                ),
            )
            catalog.events[event.id] = event
        for row in _read_rows(phase_file):
            catalog.phases.append(
                CatalogPhase(
                    event_id=int(row["eventId"]),
                    station_id=row["stationId"],
                    time=parse_time(row["isotime"]),
                    type=row["type"],
                    network_code=row["networkCode"],
                    station_code=row["stationCode"],
                    location_code=row.get("locationCode") or "",
                    channel_code=row.get("channelCode") or "",
                    is_manual=(row.get("evalMode") or "").lower() == MANUAL,
                    weight=float(row.get("weight") or 1.0),
                    lower_uncertainty=float(row.get("lowerUncertainty") or 0.0),
                    upper_uncertainty=float(row.get("upperUncertainty") or 0.0),
                    reloc_info=PhaseRelocInfo(
                        is_relocated=_parse_bool(row.get("relocated")),
                        weight=float(row.get("finalWeight") or 0.0),
                        residual=float(row.get("residual") or 0.0),
                    ),
                )
            )
        logger.info(
            "Loaded catalog files: stations=%d events=%d phases=%d",
            len(catalog.stations),
            len(catalog.events),
            len(catalog.phases),
        )
        return catalog

    def write_files(
        self,
        event_file: str = "event.csv",
        phase_file: str = "phase.csv",
        station_file: str = "station.csv",
    ) -> None:
        with open(station_file, "w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(STATION_FIELDS)
            for st in self.stations.values():
                writer.writerow(
                    [
                        st.id,
                        st.latitude,
                        st.longitude,
                        st.elevation,
                        st.network_code,
                        st.station_code,
                        st.location_code,
                    ]
                )
        with open(event_file, "w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(EVENT_FIELDS)
            for ev in sorted(self.events.values(), key=lambda item: item.id):
                info = ev.reloc_info
                writer.writerow(
                    [
                        ev.id,
                        format_time(ev.time),
                        ev.latitude,
                        ev.longitude,
                        ev.depth,
                        ev.magnitude,
                        ev.rms,
                        ev.origin_id,
                        str(info.is_relocated).lower(),
                        info.lat_uncertainty,
                        info.lon_uncertainty,
                        info.depth_uncertainty,
                        info.num_cc_p,
                        info.num_cc_s,
                        info.num_ct_p,
                        info.num_ct_s,
                        info.rms_residual_cc,
                        info.rms_residual_ct,
                    ]
                )
        with open(phase_file, "w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(PHASE_FIELDS)
            for ph in self.phases:
                writer.writerow(
                    [
                        ph.event_id,
                        ph.station_id,
                        format_time(ph.time),
                        ph.lower_uncertainty,
                        ph.upper_uncertainty,
                        ph.type,
                        ph.network_code,
                        ph.station_code,
                        ph.location_code,
                        ph.channel_code,
                        MANUAL if ph.is_manual else "automatic",
                        ph.weight,
                        str(ph.reloc_info.is_relocated).lower(),
                        ph.reloc_info.weight,
                        ph.reloc_info.residual,
                    ]
                )
        logger.info(
            "Wrote catalog files: %s %s %s (events=%d phases=%d)",
            event_file,
            phase_file,
            station_file,
            len(self.events),
            len(self.phases),
        )


def is_id_file(path: str) -> bool:
    """True when the CSV file lists public ids instead of catalog events."""
    with open(path, newline="", encoding="utf-8") as handle:
        header = next(csv.reader(handle), [])
    return ID_COLUMN in [column.strip() for column in header]


def read_id_file(path: str) -> list[str]:
    return [row[ID_COLUMN].strip() for row in _read_rows(path) if row.get(ID_COLUMN, "").strip()]


def append_id(path: str, public_id: str) -> None:
    target = Path(path)
    new_file = not target.exists()
    with target.open("a", newline="", encoding="utf-8") as handle:
        if new_file:
            handle.write(f"{ID_COLUMN}\n")
        handle.write(f"{public_id}\n")


def parse_time(value: str) -> datetime:
    ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_time(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_bool(value: str | None) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes")


def _read_rows(path: str) -> list[dict[str, str]]:
    with open(path, newline="", encoding="utf-8") as handle:
        return list(csv.DictReader(handle))
