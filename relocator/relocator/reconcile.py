"""Turn a relocated single-event catalog into a complete origin.

The engine only returns the relocated hypocentre and its phases. The request
origin's arrivals are merged back onto those phases, phases the engine added
on its own become new picks, and the quality block is recomputed from the
merged arrival set.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .catalog import Catalog, CatalogEvent, CatalogPhase, CatalogStation
from .geometry import azimuthal_gaps, delazi, normalize_azimuth, normalize_longitude
from .models import (
    AUTOMATIC,
    MANUAL,
    Arrival,
    CreationInfo,
    Origin,
    OriginQuality,
    Pick,
)
from .profiles import METHOD_PREFIX, Profile

logger = logging.getLogger(__name__)

_TIME_TOKEN = re.compile(r"@time/([^@]*)@")


@dataclass(frozen=True)
class RelocatedOrigin:
    origin: Origin
    new_picks: List[Pick]


@dataclass(frozen=True)
class _Contribution:
    station_id: str
    distance: float
    azimuth: float
    used: bool


def generate_public_id(pattern: str, now: datetime, kind: str = "Origin") -> str:
    """Expand ``@time/<strftime>@`` and ``@id@`` tokens of a public id pattern."""
    if not pattern:
        return f"{kind}/{now.strftime('%Y%m%d%H%M%S.%f')}.{uuid.uuid4().hex[:12]}"
    public_id = _TIME_TOKEN.sub(lambda match: now.strftime(match.group(1)), pattern)
    return public_id.replace("@id@", uuid.uuid4().hex[:12])


def format_comment(event: CatalogEvent) -> str:
    info = event.reloc_info
    return (
        f"Cross-correlated P phases {info.num_cc_p}, S phases {info.num_cc_s}. "
        f"Rms residual {info.rms_residual_cc:.3f} [sec]\n"
        f"Catalog P phases {info.num_ct_p}, S phases {info.num_ct_s}. "
        f"Rms residual {info.rms_residual_ct:.2f} [sec]\n"
        f"Error [km]: East-west {info.lon_uncertainty:.3f}, "
        f"north-south {info.lat_uncertainty:.3f}, depth {info.depth_uncertainty:.3f}"
    )


def _matches(phase: CatalogPhase, pick: Pick) -> bool:
    return (
        phase.time == pick.time
        and phase.network_code == pick.net
        and phase.station_code == pick.sta
        and phase.location_code == pick.loc
        and phase.channel_code == pick.chan
    )


def _station_of(catalog: Catalog, phase: CatalogPhase) -> Optional[CatalogStation]:
    station = catalog.stations.get(phase.station_id)
    if station is None:
        logger.warning(
            "Cannot find station id '%s' referenced by phase %s.%s.%s.%s at %s; "
            "cannot add arrival to relocated origin",
            phase.station_id,
            phase.network_code,
            phase.station_code,
            phase.location_code,
            phase.channel_code,
            phase.time.isoformat(),
        )
    return station


def build_relocated_origin(
    relocated: Catalog,
    profile: Optional[Profile],
    request: Optional[Origin],
    get_pick: Callable[[str], Optional[Pick]],
    now: datetime,
    agency_id: str = "",
    author: str = "",
    public_id_pattern: str = "",
) -> RelocatedOrigin:
    if len(relocated.events) != 1:
        raise ValueError(
            f"relocated catalog must hold exactly one event, got {len(relocated.events)}"
        )
    event = next(iter(relocated.events.values()))
    info = event.reloc_info
    creation = CreationInfo(agency_id=agency_id, author=author, creation_time=now)

    phases = relocated.phases_of(event.id)
    matched = [False] * len(phases)
    arrivals: List[Arrival] = []
    contributions: List[_Contribution] = []

    # pass 1: arrivals of the request origin
    for orig_arr in request.arrivals if request is not None else []:
        pick = get_pick(orig_arr.pick_id)
        if pick is None:
            logger.warning(
                "Cannot find pick id %s; cannot add arrival to relocated origin",
                orig_arr.pick_id,
            )
            continue

        new_arr = Arrival(
            pick_id=orig_arr.pick_id,
            phase=orig_arr.phase,
            weight=0.0,
            time_correction=orig_arr.time_correction,
            time_used=False,
            creation_info=creation,
        )
        for idx, phase in enumerate(phases):
            if matched[idx] or not _matches(phase, pick):
                continue
            station = _station_of(relocated, phase)
            if station is None:
                continue
            distance, az = delazi(event.latitude, event.longitude, station.latitude, station.longitude)
            az = normalize_azimuth(az)
            relocated_phase = phase.reloc_info.is_relocated
            original_weight = orig_arr.weight if orig_arr.weight is not None else phase.weight
            new_arr = Arrival(
                pick_id=orig_arr.pick_id,
                phase=orig_arr.phase,
                weight=phase.reloc_info.weight if relocated_phase else original_weight,
                time_correction=orig_arr.time_correction,
                time_residual=phase.reloc_info.residual if relocated_phase else 0.0,
                azimuth=az,
                distance=distance,
                time_used=relocated_phase,
                creation_info=creation,
            )
            matched[idx] = True
            contributions.append(_Contribution(phase.station_id, distance, az, relocated_phase))
            break
        arrivals.append(new_arr)

    # pass 2: phases the request did not know about
    new_picks: List[Pick] = []
    for idx, phase in enumerate(phases):
        if matched[idx]:
            continue
        station = _station_of(relocated, phase)
        if station is None:
            continue
        pick = Pick(
            public_id=generate_public_id(public_id_pattern, now, kind="Pick"),
            time=phase.time,
            net=phase.network_code,
            sta=phase.station_code,
            loc=phase.location_code,
            chan=phase.channel_code,
            phase_hint=phase.type,
            evaluation_mode=MANUAL if phase.is_manual else AUTOMATIC,
            creation_info=creation,
        )
        new_picks.append(pick)

        distance, az = delazi(event.latitude, event.longitude, station.latitude, station.longitude)
        az = normalize_azimuth(az)
        relocated_phase = phase.reloc_info.is_relocated
        arrivals.append(
            Arrival(
                pick_id=pick.public_id,
                phase=phase.type,
                weight=phase.reloc_info.weight if relocated_phase else phase.weight,
                time_residual=phase.reloc_info.residual if relocated_phase else 0.0,
                azimuth=az,
                distance=distance,
                time_used=relocated_phase,
                creation_info=creation,
            )
        )
        contributions.append(_Contribution(phase.station_id, distance, az, relocated_phase))

    quality = _quality(arrivals, contributions, request, event)

    origin = Origin(
        public_id=generate_public_id(public_id_pattern, now),
        time=event.time,
        latitude=event.latitude,
        longitude=normalize_longitude(event.longitude),
        depth=event.depth,
        latitude_uncertainty=info.lat_uncertainty,
        longitude_uncertainty=info.lon_uncertainty,
        depth_uncertainty=info.depth_uncertainty,
        evaluation_mode=AUTOMATIC,
        method_id=profile.method_id if profile is not None else METHOD_PREFIX,
        earth_model_id=profile.earth_model_id if profile is not None else "",
        creation_info=creation,
        arrivals=arrivals,
        quality=quality,
        comments=[format_comment(event)],
    )
    logger.info(
        "Reconciled origin %s: arrivals=%d used=%d new_picks=%d",
        origin.public_id,
        quality.associated_phase_count,
        quality.used_phase_count,
        len(new_picks),
    )
    return RelocatedOrigin(origin=origin, new_picks=new_picks)


def _quality(
    arrivals: List[Arrival],
    contributions: List[_Contribution],
    request: Optional[Origin],
    event: CatalogEvent,
) -> OriginQuality:
    used = [c for c in contributions if c.used]
    associated_stations = {c.station_id for c in contributions}
    used_stations = {c.station_id for c in used}

    associated_station_count = len(associated_stations)
    if request is not None and request.quality is not None:
        if request.quality.associated_station_count is not None:
            associated_station_count = request.quality.associated_station_count

    used_phase_count = sum(1 for arr in arrivals if arr.time_used)
    if used_phase_count == 0:
        # nothing was used: counts only, no distance or gap statistics
        return OriginQuality(
            associated_phase_count=len(arrivals),
            used_phase_count=0,
            associated_station_count=associated_station_count,
            used_station_count=0,
            standard_error=event.rms,
        )

    distances = [c.distance for c in used if c.distance > 0]
    primary, secondary = azimuthal_gaps([c.azimuth for c in used])
    return OriginQuality(
        associated_phase_count=len(arrivals),
        used_phase_count=used_phase_count,
        associated_station_count=associated_station_count,
        used_station_count=len(used_stations),
        standard_error=event.rms,
        mean_distance=sum(distances) / len(distances) if distances else None,
        minimum_distance=min(distances) if distances else None,
        maximum_distance=max(distances) if distances else None,
        azimuthal_gap=primary,
        secondary_azimuthal_gap=secondary,
    )
