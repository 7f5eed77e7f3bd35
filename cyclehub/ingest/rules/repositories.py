# cyclehub/ingest/rules/repositories.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Deque, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from cyclehub.db.models import CycleCounter

from .storage import CounterStore, MessageStore, MetaProvider
from .types import CounterPatch, CounterState, ObjectMeta, utcnow


# ======================================================================
# 1. IN-MEMORY ХРАНИЛИЩЕ СЧЁТЧИКОВ
# ======================================================================

class InMemoryCounterStore(CounterStore):
    """
    Простейшее хранилище счётчиков в памяти.
    Подходит для:
      - unit-тестов,
      - запуска на стенде без БД.
    """

    def __init__(self, initial: Optional[Dict[str, CounterState]] = None) -> None:
        self._items: Dict[str, CounterState] = {}
        self._lock = RLock()
        for key, st in (initial or {}).items():
            self._items[key] = st.copy()

    def get_state(self, key: str) -> Optional[CounterState]:
        with self._lock:
            st = self._items.get(key)
            return st.copy() if st is not None else None

    def set_state(self, key: str, patch: CounterPatch) -> None:
        with self._lock:
            prev = self._items.get(key) or CounterState()
            self._items[key] = patch.apply_to(prev)


# ======================================================================
# 2. ХРАНИЛИЩЕ СЧЁТЧИКОВ В БД
# ======================================================================

def _as_utc(ts: Optional[datetime]) -> Optional[datetime]:
    # sqlite теряет tzinfo при чтении
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class SqlCounterStore(CounterStore):
    """
    Счётчики в таблице cycle_counters (SQLAlchemy).
    Одна строка на экземпляр правила, обновление: только переданных колонок.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def get_state(self, key: str) -> Optional[CounterState]:
        with self._session_factory() as s:
            row = s.get(CycleCounter, key)
            if row is None:
                return None
            return CounterState(
                last_counter=row.last_counter,
                sub_counter=float(row.sub_counter or 0.0),
                last_reset_at=_as_utc(row.last_reset_at) or utcnow(),
            )

    def set_state(self, key: str, patch: CounterPatch) -> None:
        values = patch.supplied()
        if not values:
            return
        with self._session_factory() as s:
            row = s.get(CycleCounter, key)
            if row is None:
                row = CycleCounter(key=key, sub_counter=0.0, last_reset_at=utcnow())
                s.add(row)
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = utcnow()
            s.commit()


# ======================================================================
# 3. IN-MEMORY ЖУРНАЛ «ПРИЧИНА УСТРАНЕНА»
# ======================================================================

@dataclass
class CompletionEntry:
    ref: str
    reason: str
    at: datetime
    actor: Optional[str] = None


class InMemoryMessageStore(MessageStore):
    """
    Хук хранилища сообщений, который просто складывает вызовы в журнал.
    Хранит последние N записей (по умолчанию 1000) в deque.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._entries: Deque[CompletionEntry] = deque(maxlen=max_entries)
        self._lock = RLock()

    def complete_after_cause_eliminated(
        self,
        ref: str,
        *,
        reason: str,
        at: datetime,
        actor: Optional[str] = None,
    ) -> bool:
        with self._lock:
            self._entries.appendleft(CompletionEntry(ref=ref, reason=reason, at=at, actor=actor))
        return True

    def list_recent(self, limit: int = 100, ref: Optional[str] = None) -> List[CompletionEntry]:
        with self._lock:
            if ref is None:
                return list(self._entries)[:limit]
            return [e for e in self._entries if e.ref == ref][:limit]


# ======================================================================
# 4. СТАТИЧЕСКИЕ МЕТАДАННЫЕ
# ======================================================================

class StaticMetaProvider(MetaProvider):
    """Имена/единицы из файла правил (или заданные руками)."""

    def __init__(self, items: Optional[Dict[str, ObjectMeta]] = None) -> None:
        self._items: Dict[str, ObjectMeta] = dict(items or {})
        self._lock = RLock()

    def get_meta(self, target_id: str) -> Optional[ObjectMeta]:
        with self._lock:
            return self._items.get(target_id)

    def replace_all(self, items: Dict[str, ObjectMeta]) -> None:
        with self._lock:
            self._items = dict(items)
