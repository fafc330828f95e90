from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

import pika
from pika.exceptions import AMQPError

from .models import (
    AUTOMATIC,
    Arrival,
    CreationInfo,
    Event,
    JournalEntry,
    Origin,
    OriginQuality,
    Pick,
)
from .settings import Settings

logger = logging.getLogger(__name__)

LOCATION_ROUTING_KEY = "location"
JOURNAL_ROUTING_KEY = "event"
CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class RelocationRequest:
    origin_id: str
    request_id: str = ""
    reply_to: str = ""
    profile: str = ""


Notification = Union[Pick, Origin, Event, RelocationRequest]


class MessageError(ValueError):
    """Raised when an inbound message cannot be decoded."""


def configure_channel(channel, settings: Settings) -> str:
    channel.basic_qos(prefetch_count=settings.prefetch)
    channel.exchange_declare(exchange=settings.exchange,
                             exchange_type="topic",
                             durable=True)

    exclusive = settings.queue == ""
    result = channel.queue_declare(queue=settings.queue,
                                   durable=not exclusive,
                                   exclusive=exclusive,
                                   auto_delete=exclusive)
    queue_name = result.method.queue

    for key in settings.binding_keys:
        channel.queue_bind(exchange=settings.exchange,
                           queue=queue_name,
                           routing_key=key)
    return queue_name


class Publisher:
    def __init__(self, channel, exchange: str):
        self.channel = channel
        self.exchange = exchange

    def send(self, routing_key: str, payload: bytes) -> bool:
        try:
            self.channel.basic_publish(
                exchange=self.exchange,
                routing_key=routing_key,
                body=payload,
                properties=pika.BasicProperties(content_type=CONTENT_TYPE),
            )
        except AMQPError:
            logger.exception("Failed to publish message to routing key %s", routing_key)
            return False
        return True


def decode_message(body: bytes) -> Notification:
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MessageError(f"invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise MessageError("message payload must be an object")

    kind = payload.get("type")
    try:
        if kind == "pick":
            return pick_from_dict(payload["pick"])
        if kind == "origin":
            return origin_from_dict(payload["origin"])
        if kind == "event":
            return event_from_dict(payload["event"])
        if kind == "relocate_request":
            return RelocationRequest(
                origin_id=str(payload["origin_id"]),
                request_id=str(payload.get("request_id") or ""),
                reply_to=str(payload.get("reply_to") or ""),
                profile=str(payload.get("profile") or ""),
            )
    except (KeyError, TypeError, ValueError) as exc:
        raise MessageError(f"malformed {kind} message: {exc!r}") from exc
    raise MessageError(f"unsupported message type: {kind!r}")


def encode_origin(origin: Origin, picks: list[Pick]) -> bytes:
    payload = {
        "type": "origin",
        "origin": origin_to_dict(origin),
        "picks": [pick_to_dict(pick) for pick in picks],
    }
    return json.dumps(payload).encode("utf-8")


def encode_journal_entry(entry: JournalEntry) -> bytes:
    payload = {
        "type": "journal",
        "journal": {
            "object_id": entry.object_id,
            "action": entry.action,
            "parameters": entry.parameters,
            "created": _time_out(entry.created),
            "sender": entry.sender,
        },
    }
    return json.dumps(payload).encode("utf-8")


def encode_response(
    request: RelocationRequest,
    origin: Optional[Origin],
    picks: list[Pick],
    error: str = "",
) -> bytes:
    payload: dict[str, Any] = {
        "type": "relocate_response",
        "request_id": request.request_id,
        "origin_id": request.origin_id,
        "error": error,
        "origin": origin_to_dict(origin) if origin is not None else None,
        "picks": [pick_to_dict(pick) for pick in picks],
    }
    return json.dumps(payload).encode("utf-8")


def _time_in(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _time_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def creation_info_from_dict(data: Optional[dict]) -> CreationInfo:
    data = data or {}
    return CreationInfo(
        agency_id=str(data.get("agency_id") or ""),
        author=str(data.get("author") or ""),
        creation_time=_time_in(data.get("creation_time")),
        modification_time=_time_in(data.get("modification_time")),
    )


def creation_info_to_dict(info: Optional[CreationInfo]) -> Optional[dict]:
    if info is None:
        return None
    return {
        "agency_id": info.agency_id,
        "author": info.author,
        "creation_time": _time_out(info.creation_time),
        "modification_time": _time_out(info.modification_time),
    }


def pick_from_dict(data: dict) -> Pick:
    return Pick(
        public_id=str(data["public_id"]),
        time=_time_in(data["time"]),
        net=str(data["net"]),
        sta=str(data["sta"]),
        loc=str(data.get("loc") or ""),
        chan=str(data.get("chan") or ""),
        phase_hint=str(data.get("phase_hint") or ""),
        evaluation_mode=str(data.get("evaluation_mode") or AUTOMATIC),
        creation_info=creation_info_from_dict(data.get("creation_info")),
    )


def pick_to_dict(pick: Pick) -> dict:
    return {
        "public_id": pick.public_id,
        "time": _time_out(pick.time),
        "net": pick.net,
        "sta": pick.sta,
        "loc": pick.loc,
        "chan": pick.chan,
        "phase_hint": pick.phase_hint,
        "evaluation_mode": pick.evaluation_mode,
        "creation_info": creation_info_to_dict(pick.creation_info),
    }


def arrival_from_dict(data: dict) -> Arrival:
    return Arrival(
        pick_id=str(data["pick_id"]),
        phase=str(data.get("phase") or ""),
        weight=_optional_float(data.get("weight")),
        time_correction=_optional_float(data.get("time_correction")),
        time_residual=_optional_float(data.get("time_residual")),
        azimuth=_optional_float(data.get("azimuth")),
        distance=_optional_float(data.get("distance")),
        time_used=bool(data.get("time_used", False)),
    )


def arrival_to_dict(arrival: Arrival) -> dict:
    return {
        "pick_id": arrival.pick_id,
        "phase": arrival.phase,
        "weight": arrival.weight,
        "time_correction": arrival.time_correction,
        "time_residual": arrival.time_residual,
        "azimuth": arrival.azimuth,
        "distance": arrival.distance,
        "time_used": arrival.time_used,
        "creation_info": creation_info_to_dict(arrival.creation_info),
    }


def quality_from_dict(data: Optional[dict]) -> Optional[OriginQuality]:
    if not data:
        return None
    return OriginQuality(
        associated_phase_count=_optional_int(data.get("associated_phase_count")),
        used_phase_count=_optional_int(data.get("used_phase_count")),
        associated_station_count=_optional_int(data.get("associated_station_count")),
        used_station_count=_optional_int(data.get("used_station_count")),
        standard_error=_optional_float(data.get("standard_error")),
        mean_distance=_optional_float(data.get("mean_distance")),
        minimum_distance=_optional_float(data.get("minimum_distance")),
        maximum_distance=_optional_float(data.get("maximum_distance")),
        azimuthal_gap=_optional_float(data.get("azimuthal_gap")),
        secondary_azimuthal_gap=_optional_float(data.get("secondary_azimuthal_gap")),
    )


def quality_to_dict(quality: Optional[OriginQuality]) -> Optional[dict]:
    if quality is None:
        return None
    return {
        "associated_phase_count": quality.associated_phase_count,
        "used_phase_count": quality.used_phase_count,
        "associated_station_count": quality.associated_station_count,
        "used_station_count": quality.used_station_count,
        "standard_error": quality.standard_error,
        "mean_distance": quality.mean_distance,
        "minimum_distance": quality.minimum_distance,
        "maximum_distance": quality.maximum_distance,
        "azimuthal_gap": quality.azimuthal_gap,
        "secondary_azimuthal_gap": quality.secondary_azimuthal_gap,
    }


def origin_from_dict(data: dict) -> Origin:
    return Origin(
        public_id=str(data["public_id"]),
        time=_time_in(data["time"]),
        latitude=_optional_float(data.get("latitude")),
        longitude=_optional_float(data.get("longitude")),
        depth=_optional_float(data.get("depth")),
        latitude_uncertainty=_optional_float(data.get("latitude_uncertainty")),
        longitude_uncertainty=_optional_float(data.get("longitude_uncertainty")),
        depth_uncertainty=_optional_float(data.get("depth_uncertainty")),
        evaluation_mode=str(data.get("evaluation_mode") or AUTOMATIC),
        method_id=str(data.get("method_id") or ""),
        earth_model_id=str(data.get("earth_model_id") or ""),
        creation_info=creation_info_from_dict(data.get("creation_info")),
        arrivals=[arrival_from_dict(item) for item in data.get("arrivals") or []],
        quality=quality_from_dict(data.get("quality")),
        comments=[str(item) for item in data.get("comments") or []],
    )


def origin_to_dict(origin: Origin) -> dict:
    return {
        "public_id": origin.public_id,
        "time": _time_out(origin.time),
        "latitude": origin.latitude,
        "longitude": origin.longitude,
        "depth": origin.depth,
        "latitude_uncertainty": origin.latitude_uncertainty,
        "longitude_uncertainty": origin.longitude_uncertainty,
        "depth_uncertainty": origin.depth_uncertainty,
        "evaluation_mode": origin.evaluation_mode,
        "method_id": origin.method_id,
        "earth_model_id": origin.earth_model_id,
        "creation_info": creation_info_to_dict(origin.creation_info),
        "arrivals": [arrival_to_dict(arrival) for arrival in origin.arrivals],
        "quality": quality_to_dict(origin.quality),
        "comments": list(origin.comments),
    }


def event_from_dict(data: dict) -> Event:
    return Event(
        public_id=str(data["public_id"]),
        preferred_origin_id=str(data.get("preferred_origin_id") or ""),
        creation_info=creation_info_from_dict(data.get("creation_info")),
    )
