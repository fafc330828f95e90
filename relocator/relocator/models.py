from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

AUTOMATIC = "automatic"
MANUAL = "manual"


@dataclass(frozen=True)
class Station:
    net: str
    sta: str
    loc: str
    lat: float
    lon: float
    elev_m: float = 0.0

    @property
    def station_key(self) -> tuple[str, str, str]:
        return (self.net, self.sta, self.loc)


@dataclass(frozen=True)
class CreationInfo:
    agency_id: str = ""
    author: str = ""
    creation_time: datetime | None = None
    modification_time: datetime | None = None


@dataclass(frozen=True)
class Pick:
    public_id: str
    time: datetime
    net: str
    sta: str
    loc: str
    chan: str
    phase_hint: str = ""
    evaluation_mode: str = AUTOMATIC
    creation_info: CreationInfo = field(default_factory=CreationInfo)

    @property
    def station_key(self) -> tuple[str, str, str]:
        return (self.net, self.sta, self.loc)


@dataclass(frozen=True)
class Arrival:
    pick_id: str
    phase: str
    weight: float | None = None
    time_correction: float | None = None
    time_residual: float | None = None
    azimuth: float | None = None
    distance: float | None = None
    time_used: bool = False
    creation_info: CreationInfo | None = None


@dataclass(frozen=True)
class OriginQuality:
    associated_phase_count: int | None = None
    used_phase_count: int | None = None
    associated_station_count: int | None = None
    used_station_count: int | None = None
    standard_error: float | None = None
    mean_distance: float | None = None
    minimum_distance: float | None = None
    maximum_distance: float | None = None
    azimuthal_gap: float | None = None
    secondary_azimuthal_gap: float | None = None


@dataclass(frozen=True)
class Origin:
    public_id: str
    time: datetime
    latitude: float | None
    longitude: float | None
    depth: float | None = None
    time_uncertainty: float | None = None
    latitude_uncertainty: float | None = None
    longitude_uncertainty: float | None = None
    depth_uncertainty: float | None = None
    evaluation_mode: str = AUTOMATIC
    method_id: str = ""
    earth_model_id: str = ""
    epicenter_fixed: bool | None = None
    creation_info: CreationInfo = field(default_factory=CreationInfo)
    arrivals: list[Arrival] = field(default_factory=list)
    quality: OriginQuality | None = None
    comments: list[str] = field(default_factory=list)

    @property
    def modification_time(self) -> datetime | None:
        info = self.creation_info
        return info.modification_time or info.creation_time


@dataclass(frozen=True)
class Event:
    public_id: str
    preferred_origin_id: str = ""
    creation_info: CreationInfo = field(default_factory=CreationInfo)


@dataclass(frozen=True)
class JournalEntry:
    object_id: str
    action: str
    parameters: str
    created: datetime
    sender: str = ""


@dataclass(frozen=True)
class Outcome:
    """Result of executing one scheduled process.

    ``skipped`` and ``failed`` outcomes end the process; a ``completed``
    outcome keeps it alive for its remaining run times.
    """

    status: str
    reason: str = ""
    error: BaseException | None = None
    output: Any = None

    SKIPPED = "skipped"
    FAILED = "failed"
    COMPLETED = "completed"

    @classmethod
    def skipped(cls, reason: str) -> "Outcome":
        return cls(status=cls.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, error: BaseException | str) -> "Outcome":
        if isinstance(error, BaseException):
            return cls(status=cls.FAILED, reason=str(error), error=error)
        return cls(status=cls.FAILED, reason=error)

    @classmethod
    def completed(cls, output: Any = None) -> "Outcome":
        return cls(status=cls.COMPLETED, output=output)

    @property
    def is_completed(self) -> bool:
        return self.status == self.COMPLETED
