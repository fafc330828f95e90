from __future__ import annotations

import json
import logging
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from .cache import ObjectCache
from .catalog import Catalog, DataSource, read_id_file
from .errors import ProfileNotLoadedError
from .gate import JOURNAL_ACTION, JOURNAL_ACTION_COMPLETED, JournalSource, is_completed
from .lifecycle import ProfileLifecycleManager
from .messaging import (
    JOURNAL_ROUTING_KEY,
    LOCATION_ROUTING_KEY,
    Publisher,
    RelocationRequest,
    encode_journal_entry,
    encode_origin,
    encode_response,
    origin_from_dict,
    origin_to_dict,
    pick_from_dict,
    pick_to_dict,
)
from .models import MANUAL, Event, JournalEntry, Origin, Outcome, Pick
from .profiles import METHOD_PREFIX, Profile, ProfileRegistry
from .reconcile import RelocatedOrigin, build_relocated_origin
from .scheduler import JobScheduler, Process
from .settings import Settings

logger = logging.getLogger(__name__)
processing_logger = logging.getLogger("relocator.processing")

SCHEDULE_FILE = "relocator.sched"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class RelocationService:
    """Single-threaded dispatch path: notifications in, relocated origins out."""

    def __init__(
        self,
        settings: Settings,
        registry: ProfileRegistry,
        lifecycle: ProfileLifecycleManager,
        cache: ObjectCache,
        data_source: DataSource,
        journal: Optional[JournalSource] = None,
        publisher: Optional[Publisher] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.lifecycle = lifecycle
        self.cache = cache
        self.data_source = data_source
        self.journal = journal
        self.publisher = publisher
        self.scheduler = JobScheduler(settings.delay_times)
        self.relocated: List[RelocatedOrigin] = []
        self._cron_counter = settings.wakeup_interval
        self._sender = f"{settings.author}@{socket.gethostname()}"

    @property
    def schedule_path(self) -> str:
        return os.path.join(self.settings.log_dir, SCHEDULE_FILE)

    def handle_object(self, obj: Any, now: datetime) -> None:
        if isinstance(obj, Pick):
            self.cache.feed(obj, now)
            return
        if isinstance(obj, (Origin, Event)):
            self.add_process(obj, now)
            return
        logger.debug("Ignoring unsupported object %r", obj)

    def add_process(self, obj: Origin | Event, now: datetime) -> Process:
        self.cache.feed(obj, now)
        proc = self.scheduler.notify(obj, now)
        self.handle_timeout(now)
        return proc

    def run_immediately(self) -> None:
        """Relocate the next notified objects without waiting for the timer."""
        self.scheduler.delay_times = [0.0]
        self._cron_counter = 0

    def handle_timeout(self, now: datetime) -> None:
        self.lifecycle.housekeep(now)
        self.run_new_jobs(now)

    def run_new_jobs(self, now: datetime) -> int:
        self._cron_counter -= 1
        if self._cron_counter > 0:
            return 0
        self._cron_counter = self.settings.wakeup_interval

        executed = self.scheduler.tick(now, self.execute)
        if self.settings.log_crontab:
            self.write_schedule(now)
        return executed

    def write_schedule(self, now: datetime) -> None:
        try:
            Path(self.schedule_path).write_text(self.scheduler.dump_schedule(now), encoding="utf-8")
        except OSError:
            logger.exception("Failed to write schedule file %s", self.schedule_path)

    def remove_schedule(self) -> None:
        try:
            os.unlink(self.schedule_path)
        except FileNotFoundError:
            pass

    def execute(self, proc: Process, now: datetime) -> Outcome:
        """Run one process. Only ``ProfileNotLoadedError`` escapes."""
        try:
            return self._execute(proc, now)
        except ProfileNotLoadedError:
            raise
        except Exception as exc:
            logger.exception("Process [%s] failed", proc.public_id)
            return Outcome.failed(exc)

    def _execute(self, proc: Process, now: datetime) -> Outcome:
        logger.debug("Starting process [%s]", proc.public_id)
        obj = proc.obj
        origin = obj if isinstance(obj, Origin) else None

        if origin is not None and origin.evaluation_mode == MANUAL:
            if not self.settings.process_manual_origin and not self.settings.force_processing:
                logger.debug("Skip manual origin %s", origin.public_id)
                return Outcome.skipped("manual origin")
        elif self.settings.only_preferred_origin:
            if origin is None:
                if isinstance(obj, Event):
                    origin = self.cache.get(Origin, obj.preferred_origin_id, now)
            elif not self.settings.force_processing:
                logger.debug("Processing only preferred origin: skipping origin %s", origin.public_id)
                return Outcome.skipped("not a preferred origin")

        if origin is None:
            logger.debug("Nothing to do for process [%s]", proc.public_id)
            return Outcome.skipped("no origin to process")

        return self.process_origin(origin, now, recompute=proc.run_count > 0)

    def process_origin(
        self,
        origin: Origin,
        now: datetime,
        recompute: bool = False,
        publish: bool = True,
        forced_profile: str = "",
    ) -> Outcome:
        logger.debug("Process origin %s", origin.public_id)
        force = self.settings.force_processing

        if origin.method_id.upper().startswith(METHOD_PREFIX) and not force:
            logger.debug("Origin %s was generated by this service, skip it", origin.public_id)
            return Outcome.skipped("origin produced by this service")

        agency = origin.creation_info.agency_id
        if agency in self.settings.blocked_agencies and not force:
            logger.debug("%s: origin's agency '%s' is blocked", origin.public_id, agency)
            return Outcome.skipped("blocked agency")

        if force:
            logger.debug("Force processing, journal ignored")
        elif recompute:
            logger.debug("Recomputing %s, journal ignored", origin.public_id)
        else:
            try:
                completed = is_completed(self.journal, origin)
            except Exception as exc:
                logger.exception("%s: journal lookup failed", origin.public_id)
                return Outcome.failed(exc)
            if completed:
                return Outcome.skipped("already processed")

        if origin.latitude is None or origin.longitude is None:
            logger.warning("Ignoring origin %s with unset lat/lon", origin.public_id)
            return Outcome.skipped("origin without coordinates")

        profile = self.registry.resolve(
            origin.latitude,
            origin.longitude,
            forced_profile or self.settings.force_profile,
        )
        if profile is None:
            logger.debug(
                "No profile found for location (lat:%s lon:%s), ignoring origin %s",
                origin.latitude,
                origin.longitude,
                origin.public_id,
            )
            return Outcome.skipped("no matching profile")

        logger.info("Relocating origin %s using profile %s", origin.public_id, profile.name)
        processing_logger.info("Relocating origin %s using profile %s", origin.public_id, profile.name)

        try:
            result = self.relocate(origin, profile, now)
        except ProfileNotLoadedError:
            raise
        except Exception as exc:
            logger.exception("Cannot relocate origin %s", origin.public_id)
            processing_logger.info("Relocation of origin %s failed: %s", origin.public_id, exc)
            return Outcome.failed(exc)

        processing_logger.info(
            "Origin %s relocated as %s: lat=%.5f lon=%.5f depth=%.3f used_phases=%s",
            origin.public_id,
            result.origin.public_id,
            result.origin.latitude,
            result.origin.longitude,
            result.origin.depth or 0.0,
            result.origin.quality.used_phase_count if result.origin.quality else 0,
        )
        if publish:
            if not self.send(result):
                logger.error("%s: sending of derived origin failed", origin.public_id)
            logger.info("Origin %s has been relocated", origin.public_id)
            self.write_journal(origin.public_id, now)
        return Outcome.completed(result)

    def relocate(self, origin: Origin, profile: Profile, now: datetime) -> RelocatedOrigin:
        self.lifecycle.load(profile, now)
        relocated = self.lifecycle.relocate_single_event(profile, origin, now)
        result = build_relocated_origin(
            relocated,
            profile,
            origin,
            lambda pick_id: self.cache.get(Pick, pick_id, now),
            now,
            agency_id=self.settings.agency_id,
            author=self.settings.author,
            public_id_pattern=self.settings.public_id_pattern,
        )
        for pick in result.new_picks:
            self.cache.feed(pick, now)
        self.cache.feed(result.origin, now)
        self.lifecycle.add_incremental_catalog_entry(profile, result.origin)
        return result

    def send(self, result: RelocatedOrigin) -> bool:
        self.relocated.append(result)
        if self.settings.test_mode:
            return True
        if self.publisher is None:
            return False
        return self.publisher.send(LOCATION_ROUTING_KEY, encode_origin(result.origin, result.new_picks))

    def write_journal(self, object_id: str, now: datetime) -> bool:
        if self.settings.test_mode or self.publisher is None:
            return False
        entry = JournalEntry(
            object_id=object_id,
            action=JOURNAL_ACTION,
            parameters=JOURNAL_ACTION_COMPLETED,
            created=now,
            sender=self._sender,
        )
        return self.publisher.send(JOURNAL_ROUTING_KEY, encode_journal_entry(entry))

    def handle_request(self, request: RelocationRequest, now: datetime) -> bytes:
        """Relocate one origin on demand and answer with the result or an error."""
        origin = self.cache.get(Origin, request.origin_id, now)
        result: Optional[RelocatedOrigin] = None
        if origin is None:
            error = f"origin {request.origin_id} not found"
        else:
            outcome = self.process_origin(
                origin,
                now,
                recompute=True,
                publish=False,
                forced_profile=request.profile,
            )
            error = "" if outcome.is_completed else f"{outcome.status}: {outcome.reason}"
            if outcome.is_completed:
                result = outcome.output

        response = encode_response(
            request,
            result.origin if result else None,
            result.new_picks if result else [],
            error=error,
        )
        if request.reply_to and self.publisher is not None:
            self.publisher.send(request.reply_to, response)
        return response

    def relocate_origin_ids(self, origin_ids: List[str], now: datetime) -> int:
        self.settings.only_preferred_origin = False
        submitted = 0
        for origin_id in origin_ids:
            origin = self.cache.get(Origin, origin_id, now)
            if origin is None:
                logger.error("Origin %s not found", origin_id)
                continue
            self.run_immediately()
            self.add_process(origin, now)
            submitted += 1
        return submitted

    def process_event_parameters(self, path: str, now: datetime) -> dict:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        for item in payload.get("picks") or []:
            self.cache.feed(pick_from_dict(item), now)
        origins = [origin_from_dict(item) for item in payload.get("origins") or []]
        for origin in origins:
            self.run_immediately()
            self.add_process(origin, now)

        output = dict(payload)
        output["picks"] = list(payload.get("picks") or []) + [
            pick_to_dict(pick) for result in self.relocated for pick in result.new_picks
        ]
        output["origins"] = list(payload.get("origins") or []) + [
            origin_to_dict(result.origin) for result in self.relocated
        ]
        return output

    def dump_catalog(self, id_file: str, out_dir: str = ".") -> Catalog:
        catalog = Catalog()
        catalog.add_ids(read_id_file(id_file), self.data_source)
        _write_triplet(catalog, out_dir)
        return catalog

    def load_catalog(self, profile_name: str, now: datetime) -> bool:
        profile = self.registry.get(profile_name)
        if profile is None:
            logger.error("Unknown profile %s", profile_name)
            return False
        self.lifecycle.load(profile, now, preload=True, cache_waveforms=True)
        self.lifecycle.unload(profile, now)
        return True

    def relocate_catalog(self, profile_name: str, now: datetime, out_dir: str = ".") -> Optional[Catalog]:
        profile = self.registry.get(profile_name)
        if profile is None:
            logger.error("Unknown profile %s", profile_name)
            return None
        self.lifecycle.load(profile, now)
        try:
            relocated = self.lifecycle.relocate_catalog(profile, self.settings.force_processing, now)
        finally:
            self.lifecycle.unload(profile, now)
        _write_triplet(relocated, out_dir)
        return relocated


def _write_triplet(catalog: Catalog, out_dir: str) -> None:
    catalog.write_files(
        os.path.join(out_dir, "event.csv"),
        os.path.join(out_dir, "phase.csv"),
        os.path.join(out_dir, "station.csv"),
    )
