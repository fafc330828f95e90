from __future__ import annotations

import logging
from typing import Iterator, Optional

from .models import (
    Arrival,
    CreationInfo,
    Event,
    JournalEntry,
    Origin,
    OriginQuality,
    Pick,
    Station,
)
from .settings import Settings

logger = logging.getLogger(__name__)


def connect(settings: Settings):
    import psycopg2

    conn = psycopg2.connect(
        host=settings.pg_host,
        port=settings.pg_port,
        user=settings.pg_user,
        password=settings.pg_password,
        dbname=settings.pg_dbname,
    )
    conn.autocommit = True
    return conn


def fetch_stations(conn) -> dict[tuple[str, str, str], Station]:
    with conn.cursor() as cur:
        cur.execute("SELECT net, sta, loc, lat, lon, elev_m FROM stations")
        rows = cur.fetchall()

    out: dict[tuple[str, str, str], Station] = {}
    for net, sta, loc, lat, lon, elev_m in rows:
        station = Station(net=net, sta=sta, loc=loc, lat=lat, lon=lon, elev_m=elev_m)
        out[station.station_key] = station
    return out


def fetch_pick(conn, public_id: str) -> Optional[Pick]:
    query = """
        SELECT public_id, ts, net, sta, loc, chan, phase_hint, evaluation_mode,
               agency_id, author, created_at
        FROM picks
        WHERE public_id = %s
    """
    with conn.cursor() as cur:
        cur.execute(query, (public_id,))
        row = cur.fetchone()
    if row is None:
        return None
    return Pick(
        public_id=row[0],
        time=row[1],
        net=row[2],
        sta=row[3],
        loc=row[4] or "",
        chan=row[5],
        phase_hint=row[6] or "",
        evaluation_mode=row[7] or "automatic",
        creation_info=CreationInfo(agency_id=row[8] or "", author=row[9] or "", creation_time=row[10]),
    )


def fetch_origin(conn, public_id: str) -> Optional[Origin]:
    origin_query = """
        SELECT public_id, origin_ts, lat, lon, depth_km, evaluation_mode,
               method_id, earth_model_id, agency_id, author, created_at,
               modified_at, associated_station_count, standard_error
        FROM origins
        WHERE public_id = %s
    """
    arrival_query = """
        SELECT pick_public_id, phase, weight, time_correction,
               residual_seconds, azimuth_deg, distance_deg, time_used
        FROM origin_arrivals
        WHERE origin_public_id = %s
        ORDER BY id ASC
    """
    with conn.cursor() as cur:
        cur.execute(origin_query, (public_id,))
        row = cur.fetchone()
        if row is None:
            return None
        cur.execute(arrival_query, (public_id,))
        arrival_rows = cur.fetchall()

    arrivals = [
        Arrival(
            pick_id=a[0],
            phase=a[1],
            weight=a[2],
            time_correction=a[3],
            time_residual=a[4],
            azimuth=a[5],
            distance=a[6],
            time_used=bool(a[7]),
        )
        for a in arrival_rows
    ]
    quality = None
    if row[12] is not None or row[13] is not None:
        quality = OriginQuality(associated_station_count=row[12], standard_error=row[13])
    return Origin(
        public_id=row[0],
        time=row[1],
        latitude=row[2],
        longitude=row[3],
        depth=row[4],
        evaluation_mode=row[5] or "automatic",
        method_id=row[6] or "",
        earth_model_id=row[7] or "",
        creation_info=CreationInfo(
            agency_id=row[8] or "",
            author=row[9] or "",
            creation_time=row[10],
            modification_time=row[11],
        ),
        arrivals=arrivals,
        quality=quality,
    )


def fetch_event(conn, public_id: str) -> Optional[Event]:
    query = """
        SELECT public_id, preferred_origin_id, created_at, modified_at
        FROM events
        WHERE public_id = %s
    """
    with conn.cursor() as cur:
        cur.execute(query, (public_id,))
        row = cur.fetchone()
    if row is None:
        return None
    return Event(
        public_id=row[0],
        preferred_origin_id=row[1] or "",
        creation_info=CreationInfo(creation_time=row[2], modification_time=row[3]),
    )


def fetch_journal_entries(conn, object_id: str, action: str) -> list[JournalEntry]:
    query = """
        SELECT object_id, action, parameters, created_at, sender
        FROM journal
        WHERE object_id = %s
          AND action = %s
        ORDER BY created_at ASC
    """
    with conn.cursor() as cur:
        cur.execute(query, (object_id, action))
        rows = cur.fetchall()
    return [
        JournalEntry(
            object_id=r[0],
            action=r[1],
            parameters=r[2] or "",
            created=r[3],
            sender=r[4] or "",
        )
        for r in rows
    ]


class QueryService:
    """Key based lookups bound to one PostgreSQL connection."""

    def __init__(self, conn):
        self.conn = conn

    def journal_entries(self, object_id: str, action: str) -> Iterator[JournalEntry]:
        return iter(fetch_journal_entries(self.conn, object_id, action))

    def get_origin(self, public_id: str) -> Optional[Origin]:
        return fetch_origin(self.conn, public_id)

    def get_pick(self, public_id: str) -> Optional[Pick]:
        return fetch_pick(self.conn, public_id)

    def get_event(self, public_id: str) -> Optional[Event]:
        return fetch_event(self.conn, public_id)

    def fetch_stations(self) -> dict[tuple[str, str, str], Station]:
        return fetch_stations(self.conn)

    def load(self, kind: type, public_id: str):
        """Loader hook for the object cache."""
        try:
            if kind is Pick:
                return self.get_pick(public_id)
            if kind is Origin:
                return self.get_origin(public_id)
            if kind is Event:
                return self.get_event(public_id)
        except Exception:
            logger.exception("Lookup failed: kind=%s public_id=%s", kind.__name__, public_id)
            return None
        logger.warning("Unsupported lookup kind: %s", kind)
        return None
