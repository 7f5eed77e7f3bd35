"""
Tests for MqttBridge routing, the MQTT message sink and the subCounter mirror

The bridge is never connected: publications stay in out_queue and incoming
messages are fed straight into _on_message.
"""
from types import SimpleNamespace

import pytest

from cyclehub.ingest.rules.repositories import InMemoryCounterStore
from cyclehub.ingest.rules.types import CounterPatch
from cyclehub.services.message_sink import MirroredCounterStore, MqttMessageSink, MqttStatePublisher
from cyclehub.services.mqtt_bridge import MqttBridge, parse_payload

from tests.fakes import T0


@pytest.fixture
def bridge():
    return MqttBridge({"host": "127.0.0.1", "port": 1883, "base_topic": "plant"})


def _drain(bridge):
    out = []
    while not bridge.out_queue.empty():
        out.append(bridge.out_queue.get_nowait())
    return out


def _msg(topic, payload):
    return SimpleNamespace(topic=topic, payload=payload.encode("utf-8"))


# ---------------------------------------------------------------------------
# parse_payload
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw, value, ack, src", [
    (b"12", 12, None, None),
    (b"abc", "abc", None, None),
    (b'{"value": "0", "ack": false, "from": "ui"}', "0", False, "ui"),
    (b'{"val": 3, "ack": true}', 3, True, None),
    (b'{"ack": "yes"}', None, None, None),
])
def test_parse_payload(raw, value, ack, src):
    parsed = parse_payload(raw)
    assert parsed["value"] == value
    assert parsed["ack"] is ack
    assert parsed["from"] == src


def test_parse_payload_keeps_extra_keys():
    parsed = parse_payload('{"type": "close", "actor": "bob"}')
    assert parsed["type"] == "close"
    assert parsed["actor"] == "bob"


# ---------------------------------------------------------------------------
# MqttBridge
# ---------------------------------------------------------------------------

def test_topics_are_prefixed_with_base(bridge):
    assert bridge.base == "/plant"
    assert bridge.topic("messages/x/upsert") == "/plant/messages/x/upsert"
    assert bridge.topic("/abs/topic") == "/abs/topic"
    assert bridge.state_topic("a.b") == "/plant/states/a.b"
    assert bridge.message_topic("ref.1", "close") == "/plant/messages/ref.1/close"


def test_publish_goes_through_queue(bridge):
    bridge.publish("states/x", {"value": 1}, retain=True)
    assert _drain(bridge) == [("/plant/states/x", {"value": 1}, True)]


def test_sync_states_routes_explicit_and_default_topics(bridge):
    seen = []

    def on_state(sid, value, ack, src):
        seen.append((sid, value, ack, src))
        return True

    bridge.sync_states(
        ["dev.counter", "cyclehub.0.cycle.dev.counter.subCounter"],
        on_state,
        explicit={"/devices/dev/controls/counter": "dev.counter"},
    )
    assert set(bridge.subscribed_topics()) == {
        "/devices/dev/controls/counter",
        "/plant/states/cyclehub.0.cycle.dev.counter.subCounter",
    }

    bridge._on_message(None, None, _msg("/devices/dev/controls/counter", "41"))
    bridge._on_message(None, None, _msg(
        "/plant/states/cyclehub.0.cycle.dev.counter.subCounter",
        '{"value": 0, "ack": false, "from": "admin"}',
    ))
    bridge._on_message(None, None, _msg("/plant/states/other", "1"))

    assert seen == [
        ("dev.counter", 41, None, None),
        ("cyclehub.0.cycle.dev.counter.subCounter", 0, False, "admin"),
    ]


def test_sync_states_drops_stale_subscriptions(bridge):
    bridge.register_on_topic("messages/+/action", lambda t, p: True)
    bridge.sync_states(["a", "b"], lambda *a: True)
    bridge.sync_states(["b"], lambda *a: True)
    assert set(bridge.subscribed_topics()) == {"/plant/messages/+/action", "/plant/states/b"}


def test_wildcard_handler_and_handler_errors(bridge):
    got = []

    def broken(topic, parsed):
        raise RuntimeError("bug")

    bridge.register_on_topic("messages/+/action", lambda t, p: got.append((t, p["type"])) or True)
    bridge.register_on_topic("messages/#", broken)
    bridge._on_message(None, None, _msg("/plant/messages/r.1/action", '{"type": "close"}'))

    assert got == [("/plant/messages/r.1/action", "close")]


# ---------------------------------------------------------------------------
# MqttMessageSink / MirroredCounterStore
# ---------------------------------------------------------------------------

def test_sink_publishes_message_commands(bridge):
    sink = MqttMessageSink(bridge)
    assert sink.on_upsert("r.1", {"metrics": {"m": {"val": 1, "unit": ""}}}) is True
    assert sink.on_metrics("r.1", {"set": {}}) is True
    assert sink.on_close("r.1") is True
    assert sink.complete_after_cause_eliminated("r.1", reason="external-reset", at=T0, actor="bob") is True
    assert sink.on_close("") is False

    out = _drain(bridge)
    assert [t for t, _, _ in out] == [
        "/plant/messages/r.1/upsert",
        "/plant/messages/r.1/metrics",
        "/plant/messages/r.1/close",
        "/plant/messages/r.1/complete",
    ]
    upsert = out[0][1]
    assert upsert["ref"] == "r.1"
    assert upsert["metrics"]["m"]["val"] == 1
    assert "timestamp" in upsert["metadata"]

    complete = out[3][1]
    assert complete["reason"] == "external-reset"
    assert complete["actor"] == "bob"
    assert complete["at"] == int(T0.timestamp() * 1000)


def test_mirror_publishes_sub_counter_with_ack(bridge):
    inner = InMemoryCounterStore()
    store = MirroredCounterStore(inner, bridge)

    store.set_state("cyclehub.0.cycle.x", CounterPatch(last_counter=5))
    assert _drain(bridge) == []

    store.set_state("cyclehub.0.cycle.x", CounterPatch(sub_counter=3))
    (topic, payload, retain), = _drain(bridge)
    assert topic == "/plant/states/cyclehub.0.cycle.x.subCounter"
    assert payload["value"] == 3
    assert payload["ack"] is True
    assert retain is True

    assert store.get_state("cyclehub.0.cycle.x").last_counter == 5
    assert inner.get_state("cyclehub.0.cycle.x").sub_counter == 3


def test_state_publisher_writes_retained_acked_states(bridge):
    pub = MqttStatePublisher(bridge)
    assert pub.publish_states("cyclehub.0.cycle.x", {"due": True, "remainingCount": 0}) is True
    assert pub.publish_states("", {"due": False}) is False

    out = _drain(bridge)
    assert [t for t, _, _ in out] == [
        "/plant/states/cyclehub.0.cycle.x.due",
        "/plant/states/cyclehub.0.cycle.x.remainingCount",
    ]
    assert all(retain is True for _, _, retain in out)
    assert out[0][1]["value"] is True
    assert out[0][1]["ack"] is True
