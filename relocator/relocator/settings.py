from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml

from .catalog import is_id_file
from .errors import ConfigError
from .profiles import (
    CrossCorrelation,
    PairSelection,
    Profile,
    RelocationConfig,
    SnrGate,
    WaveformFiltering,
    normalize_method_id,
)
from .region import build_region

logger = logging.getLogger(__name__)

DEFAULT_BINDING_KEYS = ["pick.#", "location.#", "event.#", "relocate.#"]
DEFAULT_PUBLIC_ID_PATTERN = "RELOCATOR.@time/%Y%m%d%H%M%S.%f@.@id@"


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 5672
    user: str = "guest"
    password: str = "guest"
    vhost: str = "/"
    exchange: str = "seismic"
    queue: str = ""
    binding_keys: List[str] = field(default_factory=lambda: list(DEFAULT_BINDING_KEYS))
    prefetch: int = 50
    config_path: str = ""
    engine: str = ""
    active_profiles: List[str] = field(default_factory=list)
    working_directory: str = "/tmp/relocator"
    keep_working_files: bool = False
    only_preferred_origin: bool = False
    process_manual_origin: bool = True
    public_id_pattern: str = DEFAULT_PUBLIC_ID_PATTERN
    agency_id: str = ""
    author: str = "relocator"
    blocked_agencies: List[str] = field(default_factory=list)
    timer_seconds: float = 1.0
    wakeup_interval: int = 10
    log_crontab: bool = True
    delay_times: List[float] = field(default_factory=lambda: [0.0])
    profile_time_alive: float = -1.0
    cache_waveforms: bool = False
    expiry_hours: float = 1.0
    test_mode: bool = False
    force_processing: bool = False
    origin_ids: List[str] = field(default_factory=list)
    event_parameters: str = ""
    force_profile: str = ""
    relocate_catalog: str = ""
    dump_catalog: str = ""
    load_catalog: str = ""
    dump_config: bool = False
    log_level: str = "INFO"
    log_dir: str = "."
    processing_log: str = ""
    pg_host: str = "localhost"
    pg_port: int = 5432
    pg_user: str = "seis"
    pg_password: str = "seis"
    pg_dbname: str = "seismic"

    @property
    def offline(self) -> bool:
        """True for command paths that must not touch the message broker."""
        return bool(
            self.event_parameters
            or self.dump_catalog
            or self.load_catalog
            or self.relocate_catalog
            or (self.origin_ids and self.test_mode)
        )


def _str_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _float_list(value: str) -> List[float]:
    try:
        return [float(item) for item in _str_list(value)]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid number list: {value!r}") from exc


def parse_args(argv: Optional[List[str]] = None) -> Settings:
    parser = argparse.ArgumentParser(description="Double-difference relocation scheduler")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5672)
    parser.add_argument("--user", default="guest")
    parser.add_argument("--password", default="guest")
    parser.add_argument("--vhost", default="/")
    parser.add_argument("--exchange", default="seismic",
                        help="Topic exchange carrying picks, origins and events")
    parser.add_argument("--queue", default="",
                        help="Queue name; leave empty for an exclusive, auto-delete queue")
    parser.add_argument("--binding-key", action="append", dest="binding_keys",
                        help="Binding key to subscribe (topic syntax). Repeatable.",
                        default=None)
    parser.add_argument("--prefetch", type=int, default=50,
                        help="QoS prefetch count")
    parser.add_argument("--config", dest="config_path", default="",
                        help="YAML file with the profile definitions")
    parser.add_argument("--engine", default="",
                        help="Relocation engine factory as 'package.module:callable'")
    parser.add_argument("--active-profiles", type=_str_list, default=None,
                        help="Comma separated profiles to activate (overrides the config file)")
    parser.add_argument("--working-directory", default="/tmp/relocator")
    parser.add_argument("--keep-working-files", action="store_true")
    parser.add_argument("--only-preferred-origin", action="store_true",
                        help="Relocate only the preferred origin of events")
    parser.add_argument("--no-manual-origin", dest="process_manual_origin",
                        action="store_false", help="Skip manual origins")
    parser.add_argument("--public-id-pattern", default=DEFAULT_PUBLIC_ID_PATTERN)
    parser.add_argument("--agency-id", default="")
    parser.add_argument("--author", default="relocator")
    parser.add_argument("--blocked-agencies", type=_str_list, default=[],
                        help="Comma separated agency ids whose origins are ignored")
    parser.add_argument("--timer-seconds", type=float, default=1.0,
                        help="Housekeeping timer period")
    parser.add_argument("--wakeup-interval", type=int, default=10,
                        help="Timer ticks between two scheduler sweeps")
    parser.add_argument("--no-cron-logging", dest="log_crontab", action="store_false",
                        help="Do not write the schedule dump file")
    parser.add_argument("--delay-times", type=_float_list, default=[0.0],
                        help="Comma separated delays in seconds after which an origin is relocated")
    parser.add_argument("--profile-time-alive", type=float, default=-1.0,
                        help="Unload profiles idle for N seconds (negative: keep them loaded)")
    parser.add_argument("--cache-waveforms", action="store_true")
    parser.add_argument("--expiry", "-x", dest="expiry_hours", type=float, default=1.0,
                        help="Time span in hours after which cached objects expire")
    parser.add_argument("--test", dest="test_mode", action="store_true",
                        help="Test mode, no messages are sent")
    parser.add_argument("--force", dest="force_processing", action="store_true",
                        help="Process origins that would normally be skipped")
    parser.add_argument("--origin-id", "-O", dest="origin_ids", type=_str_list, default=[],
                        help="Relocate the origin (or comma separated origins) and exit")
    parser.add_argument("--ep", dest="event_parameters", default="",
                        help="JSON event parameters file for offline processing (implies --test)")
    parser.add_argument("--profile", dest="force_profile", default="",
                        help="Force a specific profile to be used")
    parser.add_argument("--reloc-catalog", dest="relocate_catalog", default="",
                        help="Relocate the catalog of the given profile and exit")
    parser.add_argument("--dump-catalog", default="",
                        help="Write catalog files from the given id file and exit")
    parser.add_argument("--load-catalog", default="",
                        help="Load the given profile and its waveforms, then exit")
    parser.add_argument("--dump-config", action="store_true",
                        help="Print the configuration and exit")
    parser.add_argument("--log-level", default="INFO",
                        help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--log-dir", default=".",
                        help="Directory for the schedule dump file")
    parser.add_argument("--processing-log", default="",
                        help="Daily rotated file for per-origin processing summaries")
    parser.add_argument("--pg-host", default="localhost")
    parser.add_argument("--pg-port", type=int, default=5432)
    parser.add_argument("--pg-user", default="seis")
    parser.add_argument("--pg-password", default="seis")
    parser.add_argument("--pg-db", default="seismic")
    args = parser.parse_args(argv)

    settings = Settings(
        host=args.host,
        port=args.port,
        user=args.user,
        password=args.password,
        vhost=args.vhost,
        exchange=args.exchange,
        queue=args.queue,
        binding_keys=args.binding_keys if args.binding_keys else list(DEFAULT_BINDING_KEYS),
        prefetch=args.prefetch,
        config_path=args.config_path,
        engine=args.engine,
        active_profiles=args.active_profiles or [],
        working_directory=args.working_directory,
        keep_working_files=args.keep_working_files,
        only_preferred_origin=args.only_preferred_origin,
        process_manual_origin=args.process_manual_origin,
        public_id_pattern=args.public_id_pattern,
        agency_id=args.agency_id,
        author=args.author,
        blocked_agencies=args.blocked_agencies,
        timer_seconds=args.timer_seconds,
        wakeup_interval=args.wakeup_interval,
        log_crontab=args.log_crontab,
        delay_times=args.delay_times,
        profile_time_alive=args.profile_time_alive,
        cache_waveforms=args.cache_waveforms,
        expiry_hours=args.expiry_hours,
        test_mode=args.test_mode,
        force_processing=args.force_processing,
        origin_ids=args.origin_ids,
        event_parameters=args.event_parameters,
        force_profile=args.force_profile,
        relocate_catalog=args.relocate_catalog,
        dump_catalog=args.dump_catalog,
        load_catalog=args.load_catalog,
        dump_config=args.dump_config,
        log_level=args.log_level.upper(),
        log_dir=args.log_dir,
        processing_log=args.processing_log,
        pg_host=args.pg_host,
        pg_port=args.pg_port,
        pg_user=args.pg_user,
        pg_password=args.pg_password,
        pg_dbname=args.pg_db,
    )
    if settings.offline:
        settings.test_mode = True
    return settings


def load_profiles(path: str, active: Optional[List[str]] = None) -> List[Profile]:
    """Read the profile YAML file and build the active profiles.

    Invalid profiles are logged and left out. Raises ConfigError when the
    file itself is unusable or when none of the active profiles is valid.
    """
    config_file = Path(path)
    try:
        payload = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read profile configuration {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("profile configuration must be a mapping")

    definitions = payload.get("profiles") or {}
    if not isinstance(definitions, dict):
        raise ConfigError("profiles must be a mapping of name -> definition")

    names = list(active) if active else list(payload.get("active_profiles") or [])
    base_dir = config_file.parent

    profiles: List[Profile] = []
    for name in names:
        definition = definitions.get(name)
        if not isinstance(definition, dict):
            logger.error("profile.%s: no definition found, profile disabled", name)
            continue
        try:
            profiles.append(build_profile(name, definition, base_dir))
        except ConfigError as exc:
            logger.error("profile.%s: %s, profile disabled", name, exc)

    if names and not profiles:
        raise ConfigError("no valid profile in the active profile list")
    logger.info("Loaded profiles: %s", ", ".join(p.name for p in profiles) or "<none>")
    return profiles


def build_profile(name: str, definition: dict[str, Any], base_dir: Path) -> Profile:
    region = build_region(definition.get("region_type", ""), definition.get("region"))

    catalog = _section(definition, "catalog")
    event_file = _path(catalog.get("event_file"), base_dir, "catalog.event_file", required=True)
    event_id_file = ""
    station_file = phase_file = ""
    if _has_id_header(event_file):
        event_id_file = event_file
        event_file = ""
    else:
        station_file = _path(catalog.get("station_file"), base_dir, "catalog.station_file", required=True)
        phase_file = _path(catalog.get("phase_file"), base_dir, "catalog.phase_file", required=True)
    incremental = _path(catalog.get("incremental_catalog_file"), base_dir,
                        "catalog.incremental_catalog_file", required=False, must_exist=False)

    dtcc = _section(definition, "dtcc")
    xcorr = _section(dtcc, "crosscorrelation")
    try:
        cross_correlation = CrossCorrelation(
            time_before_pick=_number(xcorr, "time_before_pick"),
            time_after_pick=_number(xcorr, "time_after_pick"),
            max_delay=_number(xcorr, "max_delay"),
            min_coef=_number(xcorr, "min_cc_coef"),
        )
    except KeyError as exc:
        raise ConfigError(f"invalid or missing cross correlation parameter {exc}") from exc

    filtering = _section(dtcc, "waveform_filtering")
    snr = _section(dtcc, "snr")
    min_snr = _number(snr, "min_snr", 0.0)
    try:
        snr_gate = SnrGate(
            min_snr=min_snr,
            noise_start=_number(snr, "noise_start"),
            noise_end=_number(snr, "noise_end"),
            signal_start=_number(snr, "signal_start"),
            signal_end=_number(snr, "signal_end"),
        )
    except KeyError as exc:
        if min_snr > 0:
            raise ConfigError(f"invalid or missing snr parameter {exc}") from exc
        snr_gate = SnrGate(min_snr=min_snr)

    engine = _section(definition, "engine")
    config = RelocationConfig(
        xcorr=cross_correlation,
        valid_p_phases=tuple(catalog.get("p_phases") or ("P", "Pg", "Pn", "P1")),
        valid_s_phases=tuple(catalog.get("s_phases") or ("S", "Sg", "Sn", "S1")),
        dtct=_pair_selection(_section(definition, "dtct")),
        dtcc=_pair_selection(dtcc),
        wf_filter=WaveformFiltering(
            filter_fmin=_number(filtering, "filter_fmin", 0.0),
            filter_fmax=_number(filtering, "filter_fmax", 0.0),
            filter_order=int(_number(filtering, "filter_order", 3)),
            resample_freq=_number(filtering, "resampling", 0.0),
        ),
        snr=snr_gate,
        step1_ctrl_file=_path(engine.get("step1_control_file"), base_dir, "engine.step1_control_file",
                              required=False),
        step2_ctrl_file=_path(engine.get("step2_control_file"), base_dir, "engine.step2_control_file",
                              required=False),
        ph2dt_ctrl_file=_path(engine.get("ph2dt_control_file"), base_dir, "engine.ph2dt_control_file",
                              required=False),
        record_stream_url=str(engine.get("record_stream_url") or ""),
    )

    return Profile(
        name=name,
        region=region,
        config=config,
        earth_model_id=str(definition.get("earth_model_id") or ""),
        method_id=normalize_method_id(str(definition.get("method_id") or "")),
        event_file=event_file,
        station_file=station_file,
        phase_file=phase_file,
        event_id_file=event_id_file,
        incremental_catalog_file=incremental,
    )


def _section(parent: dict[str, Any], key: str) -> dict[str, Any]:
    value = parent.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _number(section: dict[str, Any], key: str, default: Optional[float] = None) -> float:
    if key not in section or section[key] is None:
        if default is None:
            raise KeyError(key)
        return default
    try:
        return float(section[key])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid numeric value for {key}: {section[key]!r}") from exc


def _pair_selection(section: dict[str, Any]) -> PairSelection:
    defaults = PairSelection()
    return PairSelection(
        min_weight=_number(section, "min_weight", defaults.min_weight),
        min_es_to_ie_ratio=_number(section, "min_es_to_ie_ratio", defaults.min_es_to_ie_ratio),
        min_es_dist=_number(section, "min_es_dist", defaults.min_es_dist),
        max_es_dist=_number(section, "max_es_dist", defaults.max_es_dist),
        max_ie_dist=_number(section, "max_ie_dist", defaults.max_ie_dist),
        min_num_neigh=int(_number(section, "min_num_neigh", defaults.min_num_neigh)),
        max_num_neigh=int(_number(section, "max_num_neigh", defaults.max_num_neigh)),
        min_dt_per_evt=int(_number(section, "min_dt_per_evt", defaults.min_dt_per_evt)),
    )


def _path(value: Any, base_dir: Path, key: str, required: bool, must_exist: bool = True) -> str:
    if not value:
        if required:
            raise ConfigError(f"missing {key}")
        return ""
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    if must_exist and not path.exists():
        raise ConfigError(f"{key} not found: {path}")
    return str(path)


def _has_id_header(path: str) -> bool:
    try:
        return is_id_file(path)
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc
