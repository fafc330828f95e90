from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

from .region import Region

logger = logging.getLogger(__name__)

METHOD_PREFIX = "RELOCATOR"


@dataclass(frozen=True)
class PairSelection:
    """Neighbour and differential-time selection thresholds."""

    min_weight: float = 0.0
    min_es_to_ie_ratio: float = 0.0
    min_es_dist: float = 0.0
    max_es_dist: float = -1.0
    max_ie_dist: float = -1.0
    min_num_neigh: int = 1
    max_num_neigh: int = -1
    min_dt_per_evt: int = 1


@dataclass(frozen=True)
class CrossCorrelation:
    time_before_pick: float
    time_after_pick: float
    max_delay: float
    min_coef: float


@dataclass(frozen=True)
class WaveformFiltering:
    filter_fmin: float = 0.0
    filter_fmax: float = 0.0
    filter_order: int = 3
    resample_freq: float = 0.0


@dataclass(frozen=True)
class SnrGate:
    min_snr: float = 0.0
    noise_start: float = 0.0
    noise_end: float = 0.0
    signal_start: float = 0.0
    signal_end: float = 0.0


@dataclass(frozen=True)
class RelocationConfig:
    xcorr: CrossCorrelation
    valid_p_phases: tuple[str, ...] = ("P", "Pg", "Pn", "P1")
    valid_s_phases: tuple[str, ...] = ("S", "Sg", "Sn", "S1")
    dtct: PairSelection = field(default_factory=PairSelection)
    dtcc: PairSelection = field(default_factory=PairSelection)
    wf_filter: WaveformFiltering = field(default_factory=WaveformFiltering)
    snr: SnrGate = field(default_factory=SnrGate)
    step1_ctrl_file: str = ""
    step2_ctrl_file: str = ""
    ph2dt_ctrl_file: str = ""
    record_stream_url: str = ""


@dataclass
class Profile:
    """Named relocation setup bound to a region.

    Load state is owned by the lifecycle manager; the profile only carries
    the flags so the registry and the schedule dump can report them.
    """

    name: str
    region: Region
    config: RelocationConfig
    earth_model_id: str = ""
    method_id: str = METHOD_PREFIX
    event_file: str = ""
    station_file: str = ""
    phase_file: str = ""
    event_id_file: str = ""
    incremental_catalog_file: str = ""
    loaded: bool = False
    last_usage: Optional[datetime] = None
    needs_cleanup: bool = False

    def inactive_seconds(self, now: datetime) -> float:
        if self.last_usage is None:
            return float("inf")
        return (now - self.last_usage).total_seconds()


def normalize_method_id(method_id: str) -> str:
    method_id = method_id or ""
    if method_id.upper().startswith(METHOD_PREFIX):
        return method_id
    return METHOD_PREFIX + method_id


class ProfileRegistry:
    """Profiles in configuration order; the first region match wins."""

    def __init__(self, profiles: Iterable[Profile] = ()):
        self._profiles: List[Profile] = []
        for profile in profiles:
            self.add(profile)

    def add(self, profile: Profile) -> None:
        if self.get(profile.name) is not None:
            raise ValueError(f"duplicate profile name: {profile.name}")
        self._profiles.append(profile)

    def __iter__(self) -> Iterator[Profile]:
        return iter(self._profiles)

    def __len__(self) -> int:
        return len(self._profiles)

    def get(self, name: str) -> Optional[Profile]:
        for profile in self._profiles:
            if profile.name == name:
                return profile
        return None

    def resolve(self, lat: float, lon: float, forced_name: str = "") -> Optional[Profile]:
        if forced_name:
            profile = self.get(forced_name)
            if profile is None:
                logger.warning("Forced profile not found: %s", forced_name)
            return profile

        for profile in self._profiles:
            if profile.region.contains(lat, lon):
                return profile
        return None
