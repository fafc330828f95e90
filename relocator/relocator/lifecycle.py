from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Dict, Optional

from .catalog import Catalog, DataSource, append_id, read_id_file
from .engine import EngineFactory, RelocationEngine
from .errors import ProfileNotLoadedError
from .models import Origin
from .profiles import Profile, ProfileRegistry

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 600.0


class ProfileLifecycleManager:
    """Loads, evicts and cleans the relocation engines backing each profile.

    Engines are owned here, keyed by profile name. A profile is ``loaded``
    exactly when an engine is registered for it.
    """

    def __init__(
        self,
        registry: ProfileRegistry,
        engine_factory: EngineFactory,
        data_source: DataSource,
        working_directory: str,
        time_alive_seconds: float = -1.0,
        cleanup_working_dir: bool = True,
        cache_waveforms: bool = False,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
    ):
        self.registry = registry
        self.engine_factory = engine_factory
        self.data_source = data_source
        self.working_directory = working_directory
        self.time_alive_seconds = time_alive_seconds
        self.cleanup_working_dir = cleanup_working_dir
        self.cache_waveforms = cache_waveforms
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._engines: Dict[str, RelocationEngine] = {}

    def engine(self, profile: Profile) -> Optional[RelocationEngine]:
        return self._engines.get(profile.name)

    def housekeep(self, now: datetime) -> None:
        for profile in self.registry:
            if self.time_alive_seconds < 0:
                if not profile.loaded:
                    try:
                        self.load(profile, now, preload=True)
                    except Exception:
                        logger.exception("Cannot load profile %s", profile.name)
                        continue
            elif profile.loaded and profile.inactive_seconds(now) > self.time_alive_seconds:
                logger.info(
                    "Profile %s inactive for more than %.1f seconds",
                    profile.name,
                    self.time_alive_seconds,
                )
                self.unload(profile, now)

            if (
                profile.needs_cleanup
                and profile.inactive_seconds(now) > self.cleanup_interval_seconds
            ):
                engine = self._engines.get(profile.name)
                if engine is not None:
                    logger.info("Cleaning unused resources of profile %s", profile.name)
                    engine.clean_unused_resources()
                profile.needs_cleanup = False

    def load(
        self,
        profile: Profile,
        now: datetime,
        preload: bool = False,
        cache_waveforms: Optional[bool] = None,
    ) -> RelocationEngine:
        engine = self._engines.get(profile.name)
        if profile.loaded and engine is not None:
            return engine

        logger.info("Loading profile %s", profile.name)
        if profile.event_id_file:
            background = Catalog()
            background.add_ids(read_id_file(profile.event_id_file), self.data_source)
        else:
            background = Catalog.from_files(profile.station_file, profile.event_file, profile.phase_file)

        if profile.incremental_catalog_file and os.path.isfile(profile.incremental_catalog_file):
            added = background.add_ids(read_id_file(profile.incremental_catalog_file), self.data_source)
            logger.info(
                "Added incremental catalog entries: profile=%s events=%d",
                profile.name,
                len(added),
            )

        engine = self.engine_factory(
            background,
            profile.config,
            os.path.join(self.working_directory, profile.name),
            cleanup_working_dir=self.cleanup_working_dir,
            use_catalog_disk_cache=self.cache_waveforms if cache_waveforms is None else cache_waveforms,
            use_single_event_disk_cache=bool(profile.incremental_catalog_file),
        )
        self._engines[profile.name] = engine
        profile.loaded = True
        profile.last_usage = now

        if preload:
            engine.preload_data()
        return engine

    def unload(self, profile: Profile, now: datetime) -> None:
        logger.info("Unloading profile %s", profile.name)
        self._engines.pop(profile.name, None)
        profile.loaded = False
        profile.needs_cleanup = False
        profile.last_usage = now

    def _loaded_engine(self, profile: Profile, what: str) -> RelocationEngine:
        engine = self._engines.get(profile.name)
        if not profile.loaded or engine is None:
            raise ProfileNotLoadedError(f"Cannot relocate {what}, profile {profile.name} not loaded")
        return engine

    def relocate_single_event(self, profile: Profile, origin: Origin, now: datetime) -> Catalog:
        engine = self._loaded_engine(profile, "origin")
        profile.last_usage = now
        profile.needs_cleanup = True

        # reuse the background stations to spare inventory lookups
        request = Catalog(stations=engine.catalog.stations)
        request.add_origins([origin], self.data_source)
        return engine.relocate_single_event(request)

    def relocate_catalog(self, profile: Profile, force: bool, now: datetime) -> Catalog:
        engine = self._loaded_engine(profile, "catalog")
        profile.last_usage = now
        profile.needs_cleanup = True
        return engine.relocate_catalog(force, bool(profile.config.ph2dt_ctrl_file))

    def add_incremental_catalog_entry(self, profile: Profile, origin: Origin) -> bool:
        if not profile.incremental_catalog_file:
            return False

        logger.info(
            "Adding origin %s to incremental catalog (profile %s file %s)",
            origin.public_id,
            profile.name,
            profile.incremental_catalog_file,
        )
        append_id(profile.incremental_catalog_file, origin.public_id)

        # keep the engine and its cached waveforms, just extend its catalog
        engine = self._engines.get(profile.name)
        if engine is not None:
            catalog = engine.catalog.copy()
            catalog.add_origins([origin], self.data_source)
            engine.set_catalog(catalog)
        return True
