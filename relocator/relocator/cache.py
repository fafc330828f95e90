from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple, Type, TypeVar

from .models import Event, Origin, Pick, Station

logger = logging.getLogger(__name__)

T = TypeVar("T")

Loader = Callable[[type, str], Optional[object]]


class ObjectCache:
    """In-memory store of picks, origins and events keyed by public id.

    Entries expire ``expiry_seconds`` after they were last fed. A miss is
    resolved through ``loader`` (usually the query service) and the result
    is cached.
    """

    def __init__(self, expiry_seconds: float, loader: Loader | None = None):
        self.expiry_seconds = expiry_seconds
        self.loader = loader
        self._objects: Dict[Tuple[type, str], Tuple[object, datetime]] = {}

    def __len__(self) -> int:
        return len(self._objects)

    def feed(self, obj: object, now: datetime) -> None:
        public_id = getattr(obj, "public_id", None)
        if not public_id:
            logger.warning("Ignoring object without public id: %r", obj)
            return
        self._objects[(type(obj), public_id)] = (obj, now)
        self.trim(now)

    def trim(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self.expiry_seconds)
        expired = [key for key, (_obj, stamp) in self._objects.items() if stamp < cutoff]
        for key in expired:
            del self._objects[key]
        if expired:
            logger.debug("Expired %d cached objects", len(expired))
        return len(expired)

    def get(self, kind: Type[T], public_id: str, now: datetime) -> Optional[T]:
        if not public_id:
            return None
        entry = self._objects.get((kind, public_id))
        if entry is not None:
            obj, stamp = entry
            if stamp >= now - timedelta(seconds=self.expiry_seconds):
                return obj  # type: ignore[return-value]
            del self._objects[(kind, public_id)]

        if self.loader is None:
            return None
        obj = self.loader(kind, public_id)
        if obj is not None:
            self.feed(obj, now)
        return obj  # type: ignore[return-value]


class CacheDataSource:
    """Object lookups for catalog building, backed by the cache and inventory."""

    def __init__(
        self,
        cache: ObjectCache,
        stations: Dict[Tuple[str, str, str], Station],
        clock: Callable[[], datetime],
    ):
        self.cache = cache
        self.stations = stations
        self.clock = clock

    def get_origin(self, public_id: str) -> Optional[Origin]:
        return self.cache.get(Origin, public_id, self.clock())

    def get_event(self, public_id: str) -> Optional[Event]:
        return self.cache.get(Event, public_id, self.clock())

    def get_pick(self, public_id: str) -> Optional[Pick]:
        return self.cache.get(Pick, public_id, self.clock())

    def get_station(self, net: str, sta: str, loc: str) -> Optional[Station]:
        return self.stations.get((net, sta, loc))
