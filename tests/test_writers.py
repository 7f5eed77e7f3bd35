"""
Tests for writer resolution and built-in presets
"""
from cyclehub.ingest.rules.types import (
    CYCLE_PRESET_KEY,
    DEFAULT_PRESET_KEY,
    FALLBACK_PRESET_ID,
    PRESET_SCHEMA,
)
from cyclehub.ingest.rules.writers import (
    DEFAULT_CYCLE_PRESET,
    WriterSet,
    make_fallback_preset,
    resolve_writer,
)

from tests.fakes import RecordingWriter


def _ws(preset_id):
    return WriterSet.from_writer(RecordingWriter(), preset_id)


def test_exact_key_wins():
    writers = {CYCLE_PRESET_KEY: _ws("cycle"), DEFAULT_PRESET_KEY: _ws("default"), FALLBACK_PRESET_ID: _ws("fb")}
    assert resolve_writer(writers, CYCLE_PRESET_KEY).preset_id == "cycle"


def test_custom_key_falls_back_to_default_then_fallback():
    writers = {DEFAULT_PRESET_KEY: _ws("default"), FALLBACK_PRESET_ID: _ws("fb")}
    assert resolve_writer(writers, "SaltId").preset_id == "default"
    assert resolve_writer({FALLBACK_PRESET_ID: _ws("fb")}, "SaltId").preset_id == "fb"


def test_blank_key_means_cycle_key():
    assert resolve_writer({CYCLE_PRESET_KEY: _ws("cycle")}, "  ").preset_id == "cycle"


def test_nothing_configured():
    assert resolve_writer({}, CYCLE_PRESET_KEY) is None
    assert resolve_writer(None) is None


def test_writer_set_delegates_to_writer():
    w = RecordingWriter()
    ws = WriterSet.from_writer(w)
    assert ws.on_upsert("ref", {"metrics": {}}) is True
    assert ws.on_close("ref") is True
    assert w.upserts == [("ref", {"metrics": {}})]
    assert w.closes == ["ref"]


def test_presets():
    assert DEFAULT_CYCLE_PRESET.preset_id == "cycle_default_task"
    assert DEFAULT_CYCLE_PRESET.message["kind"] == "task"

    fb = make_fallback_preset("dev.counter")
    assert fb.preset_id == FALLBACK_PRESET_ID
    assert fb.schema == PRESET_SCHEMA
    assert "dev.counter" in fb.message["text"]
