# cyclehub/ingest/rules/__init__.py
"""
Движок правил-циклов cyclehub.

Состав:
  - types.py        → счётчики, конфиг цикла, метрики/действия сообщений
  - storage.py      → интерфейсы хранилищ и писателя сообщений
  - repositories.py → in-memory и SQL реализации
  - outbox.py       → фоновый исполнитель записи и вызовов писателя
  - writers.py      → выбор писателя по ключу пресета, пресеты по умолчанию
  - cycle.py        → экземпляр правила «цикл»
  - registry.py     → реестр экземпляров, маршрутизация, тик
"""
from .cycle import CycleRule
from .outbox import Outbox
from .registry import RuleRegistry
from .repositories import (
    InMemoryCounterStore,
    InMemoryMessageStore,
    SqlCounterStore,
    StaticMetaProvider,
)
from .storage import CounterStore, MessageStore, MessageWriter, MetaProvider
from .types import CounterPatch, CounterState, CycleRuleConfig, ObjectMeta
from .writers import WriterSet, resolve_writer

__all__ = [
    "CycleRule",
    "RuleRegistry",
    "Outbox",
    "CounterStore",
    "MessageStore",
    "MessageWriter",
    "MetaProvider",
    "InMemoryCounterStore",
    "InMemoryMessageStore",
    "SqlCounterStore",
    "StaticMetaProvider",
    "CounterPatch",
    "CounterState",
    "CycleRuleConfig",
    "ObjectMeta",
    "WriterSet",
    "resolve_writer",
]
