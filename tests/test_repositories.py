"""
Tests for counter stores, the completion journal and static metadata
"""
from datetime import datetime, timedelta, timezone

import pytest

from cyclehub.db.session import init_db, make_engine, make_session_factory
from cyclehub.db.models import Base
from cyclehub.ingest.rules.repositories import (
    InMemoryCounterStore,
    InMemoryMessageStore,
    SqlCounterStore,
    StaticMetaProvider,
)
from cyclehub.ingest.rules.types import CounterPatch, CounterState, ObjectMeta


T1 = datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)


@pytest.fixture
def sql_store(tmp_path):
    session_factory = init_db(f"sqlite:///{tmp_path / 'sub' / 'cycles.db'}")
    return SqlCounterStore(session_factory)


def test_in_memory_missing_key_is_none():
    assert InMemoryCounterStore().get_state("k") is None


def test_in_memory_partial_patch_keeps_other_fields():
    store = InMemoryCounterStore({"k": CounterState(last_counter=10, sub_counter=3, last_reset_at=T1)})
    store.set_state("k", CounterPatch(sub_counter=4))

    st = store.get_state("k")
    assert st.last_counter == 10
    assert st.sub_counter == 4
    assert st.last_reset_at == T1


def test_in_memory_returns_copies():
    store = InMemoryCounterStore()
    store.set_state("k", CounterPatch(last_counter=1, sub_counter=0, last_reset_at=T1))
    st = store.get_state("k")
    st.sub_counter = 99
    assert store.get_state("k").sub_counter == 0


def test_in_memory_keys_are_independent():
    store = InMemoryCounterStore()
    store.set_state("a", CounterPatch(sub_counter=1))
    store.set_state("b", CounterPatch(sub_counter=2))
    assert store.get_state("a").sub_counter == 1
    assert store.get_state("b").sub_counter == 2
    assert store.get_state("missing") is None


def test_patch_supplied_skips_none_but_keeps_zero():
    patch = CounterPatch(sub_counter=0.0)
    assert patch.supplied() == {"sub_counter": 0.0}
    assert not patch.is_empty()
    assert CounterPatch().is_empty()


def test_sql_store_round_trip(sql_store):
    assert sql_store.get_state("cyclehub.0.cycle.x") is None

    sql_store.set_state("cyclehub.0.cycle.x", CounterPatch(sub_counter=0.0, last_reset_at=T1))
    sql_store.set_state("cyclehub.0.cycle.x", CounterPatch(last_counter=12.5))

    st = sql_store.get_state("cyclehub.0.cycle.x")
    assert st.last_counter == 12.5
    assert st.sub_counter == 0
    assert st.last_reset_at == T1
    assert st.last_reset_at.tzinfo is not None


def test_sql_store_partial_update_does_not_touch_reset_time(sql_store):
    sql_store.set_state("k", CounterPatch(last_counter=1, sub_counter=0, last_reset_at=T1))
    sql_store.set_state("k", CounterPatch(last_counter=3, sub_counter=2))

    st = sql_store.get_state("k")
    assert (st.last_counter, st.sub_counter) == (3, 2)
    assert st.last_reset_at == T1


def test_sql_store_missing_key(sql_store):
    sql_store.set_state("k", CounterPatch(sub_counter=1, last_reset_at=T1))
    assert sql_store.get_state("other") is None


def test_sql_store_empty_patch_creates_nothing(sql_store):
    sql_store.set_state("k", CounterPatch())
    assert sql_store.get_state("k") is None


def test_make_engine_for_explicit_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'x.db'}")
    Base.metadata.create_all(bind=engine)
    store = SqlCounterStore(make_session_factory(engine))
    store.set_state("k", CounterPatch(last_counter=5))
    assert store.get_state("k").last_counter == 5


def test_message_store_journal_newest_first():
    ms = InMemoryMessageStore(max_entries=2)
    for i in range(3):
        assert ms.complete_after_cause_eliminated(f"ref{i}", reason="external-reset", at=T1 + timedelta(seconds=i))

    recent = ms.list_recent()
    assert [e.ref for e in recent] == ["ref2", "ref1"]
    assert ms.list_recent(ref="ref1")[0].reason == "external-reset"
    assert ms.list_recent(ref="ref0") == []


def test_static_meta_provider():
    meta = StaticMetaProvider({"a": ObjectMeta(name="A", unit="h")})
    assert meta.get_meta("a").unit == "h"
    assert meta.get_meta("b") is None

    meta.replace_all({"b": ObjectMeta(name="B")})
    assert meta.get_meta("b").name == "B"
    assert meta.get_meta("a") is None

    meta.replace_all({})
    assert meta.get_meta("b") is None
