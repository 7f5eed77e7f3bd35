"""
Pytest configuration and shared fixtures
"""
import pytest

from cyclehub.ingest.rules.cycle import CycleRule
from cyclehub.ingest.rules.outbox import Outbox
from cyclehub.ingest.rules.repositories import InMemoryMessageStore
from cyclehub.ingest.rules.types import CYCLE_PRESET_KEY, CycleRuleConfig
from cyclehub.ingest.rules.writers import WriterSet

from tests.fakes import CountingMetaProvider, FakeClock, FlakyCounterStore, RecordingWriter


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "threads: test starts background threads (tick loop)"
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def outbox():
    ob = Outbox(name="test-outbox")
    yield ob
    ob.stop()


@pytest.fixture
def writer():
    return RecordingWriter()


@pytest.fixture
def message_store():
    return InMemoryMessageStore()


@pytest.fixture
def meta():
    return CountingMetaProvider()


@pytest.fixture
def store():
    return FlakyCounterStore()


@pytest.fixture
def make_rule(store, writer, message_store, meta, outbox, clock):
    """Фабрика CycleRule с тестовыми зависимостями; по умолчанию ждёт загрузку."""

    def _make(
        target_id="dev.counter", period=5, wait=True, counter_store=None, writers=None, state_publisher=None, **cfg
    ):
        config = CycleRuleConfig(target_id=target_id, period=period, **cfg)
        rule = CycleRule(
            config=config,
            counter_store=counter_store or store,
            outbox=outbox,
            writers=writers if writers is not None else {CYCLE_PRESET_KEY: WriterSet.from_writer(writer)},
            message_store=message_store,
            meta_provider=meta,
            state_publisher=state_publisher,
            clock=clock,
        )
        if wait:
            assert rule.wait_ready(5)
            assert outbox.flush(5)
        return rule

    return _make
