import json
from types import SimpleNamespace

import pytest
from conftest import T0, make_origin, make_picks
from pika.exceptions import AMQPError
from relocator.messaging import (
    MessageError,
    Publisher,
    RelocationRequest,
    configure_channel,
    decode_message,
    encode_journal_entry,
    encode_origin,
    encode_response,
    origin_from_dict,
    origin_to_dict,
)
from relocator.models import Event, JournalEntry, Origin, OriginQuality, Pick
from relocator.settings import Settings


class _FakeChannel:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []
        self.published = []

    def basic_qos(self, **kwargs):
        self.calls.append(("basic_qos", kwargs))

    def exchange_declare(self, **kwargs):
        self.calls.append(("exchange_declare", kwargs))

    def queue_declare(self, **kwargs):
        self.calls.append(("queue_declare", kwargs))
        return SimpleNamespace(method=SimpleNamespace(queue=kwargs["queue"] or "amq.gen-123"))

    def queue_bind(self, **kwargs):
        self.calls.append(("queue_bind", kwargs))

    def basic_publish(self, **kwargs):
        if self.fail:
            raise AMQPError("channel closed")
        self.published.append(kwargs)


def _body(payload):
    return json.dumps(payload).encode("utf-8")


def test_configure_channel_uses_exclusive_queue_by_default():
    channel = _FakeChannel()
    settings = Settings(binding_keys=["location.#", "event.#"])

    queue_name = configure_channel(channel, settings)

    assert queue_name == "amq.gen-123"
    declare = dict(channel.calls)["queue_declare"]
    assert declare["exclusive"] is True
    assert declare["durable"] is False
    binds = [kwargs["routing_key"] for name, kwargs in channel.calls if name == "queue_bind"]
    assert binds == ["location.#", "event.#"]


def test_configure_channel_named_queue_is_durable():
    channel = _FakeChannel()
    queue_name = configure_channel(channel, Settings(queue="relocator"))
    assert queue_name == "relocator"
    assert dict(channel.calls)["queue_declare"]["durable"] is True


def test_publisher_send():
    channel = _FakeChannel()
    assert Publisher(channel, "seismic").send("location", b"{}")
    published = channel.published[0]
    assert published["exchange"] == "seismic"
    assert published["routing_key"] == "location"
    assert published["properties"].content_type == "application/json"


def test_publisher_send_failure_returns_false():
    assert not Publisher(_FakeChannel(fail=True), "seismic").send("location", b"{}")


def test_decode_pick():
    pick = decode_message(
        _body(
            {
                "type": "pick",
                "pick": {
                    "public_id": "Pick/1",
                    "time": "2026-03-01T12:00:05Z",
                    "net": "CH",
                    "sta": "AAA",
                    "chan": "HHZ",
                    "phase_hint": "P",
                },
            }
        )
    )
    assert isinstance(pick, Pick)
    assert pick.loc == ""
    assert pick.time.tzinfo is not None
    assert pick.evaluation_mode == "automatic"


def test_decode_origin_and_event():
    origin = make_origin(make_picks(), quality=OriginQuality(associated_station_count=5, standard_error=0.3))
    decoded = decode_message(_body({"type": "origin", "origin": origin_to_dict(origin)}))
    assert isinstance(decoded, Origin)
    assert decoded.public_id == origin.public_id
    assert decoded.time == T0
    assert decoded.creation_info == origin.creation_info
    assert [a.pick_id for a in decoded.arrivals] == [a.pick_id for a in origin.arrivals]
    assert decoded.quality.associated_station_count == 5

    event = decode_message(_body({"type": "event", "event": {"public_id": "Event/1", "preferred_origin_id": "Origin/1"}}))
    assert event == Event("Event/1", "Origin/1")


def test_decode_relocation_request():
    request = decode_message(
        _body({"type": "relocate_request", "origin_id": "Origin/1", "request_id": "r1", "reply_to": "relocate.reply"})
    )
    assert request == RelocationRequest("Origin/1", "r1", "relocate.reply", "")


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b"\xff\xfe",
        b"[1, 2]",
        _body({"type": "magnitude"}),
        _body({"type": "pick", "pick": {"public_id": "Pick/1"}}),
        _body({"type": "origin", "origin": {"public_id": "Origin/1", "time": "yesterday"}}),
        _body({"type": "relocate_request"}),
    ],
)
def test_decode_rejects_bad_messages(body):
    with pytest.raises(MessageError):
        decode_message(body)


def test_encode_origin_includes_new_picks():
    picks = make_picks()
    payload = json.loads(encode_origin(make_origin(picks), picks[:1]))
    assert payload["type"] == "origin"
    assert payload["origin"]["public_id"] == "Origin/1"
    assert payload["origin"]["time"] == "2026-03-01T12:00:00+00:00"
    assert [p["public_id"] for p in payload["picks"]] == [picks[0].public_id]
    assert origin_from_dict(payload["origin"]).arrivals[0].weight == 1.0


def test_encode_journal_entry():
    payload = json.loads(encode_journal_entry(JournalEntry("Origin/1", "RELOCATOR", "completed", T0, "relocator@host")))
    assert payload == {
        "type": "journal",
        "journal": {
            "object_id": "Origin/1",
            "action": "RELOCATOR",
            "parameters": "completed",
            "created": "2026-03-01T12:00:00+00:00",
            "sender": "relocator@host",
        },
    }


def test_encode_response_with_error():
    payload = json.loads(encode_response(RelocationRequest("Origin/1", "r1"), None, [], error="no matching profile"))
    assert payload["error"] == "no matching profile"
    assert payload["origin"] is None
    assert payload["request_id"] == "r1"
