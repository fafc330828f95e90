from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, is_dataclass
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from typing import Any, List, Optional

import pika
import yaml

from relocator.cache import CacheDataSource, ObjectCache
from relocator.db import QueryService, connect as db_connect
from relocator.engine import EngineFactory, load_engine_factory
from relocator.errors import ConfigError, EngineLoadError, ProfileNotLoadedError
from relocator.lifecycle import ProfileLifecycleManager
from relocator.messaging import (
    MessageError,
    Publisher,
    RelocationRequest,
    configure_channel,
    decode_message,
)
from relocator.profiles import Profile, ProfileRegistry
from relocator.service import RelocationService, processing_logger, utc_now
from relocator.settings import Settings, load_profiles, parse_args

logger = logging.getLogger("relocator.main")


def connection_params(settings: Settings) -> pika.ConnectionParameters:
    credentials = pika.PlainCredentials(settings.user, settings.password)
    return pika.ConnectionParameters(
        host=settings.host,
        port=settings.port,
        virtual_host=settings.vhost,
        credentials=credentials,
        heartbeat=30,
        blocked_connection_timeout=120,
    )


def configure_processing_log(settings: Settings) -> Optional[logging.Handler]:
    if not settings.processing_log:
        return None
    handler = TimedRotatingFileHandler(
        settings.processing_log,
        when="midnight",
        backupCount=30,
        utc=True,
    )
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    processing_logger.addHandler(handler)
    processing_logger.setLevel(logging.INFO)
    processing_logger.propagate = False
    return handler


def _plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return _plain(asdict(value))
    if isinstance(value, dict):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def dump_config(settings: Settings, profiles: List[Profile]) -> str:
    config = _plain(settings)
    for key in ("password", "pg_password"):
        config[key] = "***"
    payload = {
        "settings": config,
        "profiles": {profile.name: _plain(profile) for profile in profiles},
    }
    return yaml.safe_dump(payload, sort_keys=False)


def _missing_engine(*_args, **_kwargs):
    raise EngineLoadError("no relocation engine configured, use --engine")


def build_service(
    settings: Settings,
    profiles: List[Profile],
    conn=None,
    engine_factory: EngineFactory = _missing_engine,
    publisher: Optional[Publisher] = None,
) -> RelocationService:
    query = QueryService(conn) if conn is not None else None
    cache = ObjectCache(settings.expiry_hours * 3600.0, loader=query.load if query else None)
    stations = query.fetch_stations() if query else {}
    logger.info("Loaded stations: count=%d", len(stations))
    data_source = CacheDataSource(cache, stations, utc_now)

    time_alive = settings.profile_time_alive
    if settings.offline and time_alive < 0:
        # offline runs load profiles on first use and keep them
        time_alive = float("inf")

    registry = ProfileRegistry(profiles)
    lifecycle = ProfileLifecycleManager(
        registry,
        engine_factory,
        data_source,
        settings.working_directory,
        time_alive_seconds=time_alive,
        cleanup_working_dir=not settings.keep_working_files,
        cache_waveforms=settings.cache_waveforms,
    )
    return RelocationService(
        settings,
        registry,
        lifecycle,
        cache,
        data_source,
        journal=query,
        publisher=publisher,
    )


def run_offline(service: RelocationService, settings: Settings, now: datetime) -> Optional[dict]:
    if settings.dump_catalog:
        service.dump_catalog(settings.dump_catalog)
    elif settings.load_catalog:
        service.load_catalog(settings.load_catalog, now)
    elif settings.relocate_catalog:
        service.relocate_catalog(settings.relocate_catalog, now)
    elif settings.origin_ids:
        service.relocate_origin_ids(settings.origin_ids, now)
    elif settings.event_parameters:
        output = service.process_event_parameters(settings.event_parameters, now)
        print(json.dumps(output, indent=2))
        return output
    return None


def handle_delivery(service: RelocationService, channel, method, body: bytes, now: datetime) -> None:
    try:
        obj = decode_message(body)
    except MessageError:
        logger.exception("Failed to decode message from routing key %s", method.routing_key)
        channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        return

    try:
        if isinstance(obj, RelocationRequest):
            service.handle_request(obj, now)
        else:
            service.handle_object(obj, now)
    except ProfileNotLoadedError:
        raise
    except Exception:
        logger.exception("Failed to handle message from routing key %s", method.routing_key)
    channel.basic_ack(delivery_tag=method.delivery_tag)


def run_timer(service: RelocationService, now: datetime) -> None:
    try:
        service.handle_timeout(now)
    except ProfileNotLoadedError:
        raise
    except Exception:
        logger.exception("Timer run failed")


def consume(service: RelocationService, settings: Settings) -> None:
    with pika.BlockingConnection(connection_params(settings)) as connection:
        channel = connection.channel()
        queue_name = configure_channel(channel, settings)
        if not settings.test_mode:
            service.publisher = Publisher(channel, settings.exchange)
        logger.info("Consuming from exchange='%s' queue='%s' bindings=%s prefetch=%d",
                    settings.exchange, queue_name, settings.binding_keys, settings.prefetch)

        next_timer = time.monotonic() + settings.timer_seconds
        try:
            for method, _properties, body in channel.consume(
                queue_name, inactivity_timeout=settings.timer_seconds
            ):
                if method is not None:
                    handle_delivery(service, channel, method, body, utc_now())
                if time.monotonic() >= next_timer:
                    run_timer(service, utc_now())
                    next_timer = time.monotonic() + settings.timer_seconds
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping consumer")
            channel.cancel()
        finally:
            service.remove_schedule()


def relocate_and_publish(service: RelocationService, settings: Settings) -> None:
    with pika.BlockingConnection(connection_params(settings)) as connection:
        channel = connection.channel()
        channel.exchange_declare(exchange=settings.exchange, exchange_type="topic", durable=True)
        service.publisher = Publisher(channel, settings.exchange)
        service.relocate_origin_ids(settings.origin_ids, utc_now())


def main() -> None:
    settings = parse_args()
    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    configure_processing_log(settings)
    logger.debug("Settings: %s", settings)

    try:
        profiles = load_profiles(settings.config_path, settings.active_profiles) if settings.config_path else []
    except ConfigError:
        logger.exception("Invalid profile configuration")
        return

    if settings.dump_config:
        print(dump_config(settings, profiles))
        return

    engine_factory: EngineFactory = _missing_engine
    if not settings.dump_catalog:
        if not settings.engine:
            logger.error("A relocation engine is required, use --engine module:factory")
            return
        try:
            engine_factory = load_engine_factory(settings.engine)
        except EngineLoadError:
            logger.exception("Failed to load relocation engine %s", settings.engine)
            return

    conn = None
    try:
        conn = db_connect(settings)
    except Exception:
        if not settings.event_parameters:
            logger.exception("Failed to connect to PostgreSQL")
            return
        logger.warning("No database connection, using the event parameters file only")

    try:
        service = build_service(settings, profiles, conn, engine_factory)
        if settings.offline:
            run_offline(service, settings, utc_now())
        elif settings.origin_ids:
            relocate_and_publish(service, settings)
        else:
            logger.info("Starting relocator service with %d profile(s)", len(profiles))
            consume(service, settings)
    finally:
        if conn is not None:
            conn.close()


if __name__ == "__main__":
    main()
