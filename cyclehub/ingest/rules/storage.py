# cyclehub/ingest/rules/storage.py
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from .types import CounterPatch, CounterState, ObjectMeta


# ======================================================================
# 1. ХРАНИЛИЩЕ СЧЁТЧИКОВ
# ======================================================================

class CounterStore(ABC):
    """
    Хранилище записей {lastCounter, subCounter, lastResetAt} по ключу экземпляра.
    Реализации могут быть:
      - in-memory (для тестов и стенда)
      - БД через SQLAlchemy
    Отсутствие записи означает «новый экземпляр».
    """

    @abstractmethod
    def get_state(self, key: str) -> Optional[CounterState]:
        """Вернёт сохранённое состояние или None."""
        raise NotImplementedError

    @abstractmethod
    def set_state(self, key: str, patch: CounterPatch) -> None:
        """Частичное обновление: перезаписываются только заданные поля."""
        raise NotImplementedError


# ======================================================================
# 2. ПИСАТЕЛЬ СООБЩЕНИЙ
# ======================================================================

class MessageWriter(ABC):
    """
    То, через что правило открывает/обновляет/закрывает своё сообщение.
    Все вызовы должны быть идемпотентны на стороне писателя:
    движок может вызвать их повторно после неудачи.
    Возврат False (или исключение) = «не получилось».
    """

    @abstractmethod
    def on_upsert(self, ref: str, info: Dict[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def on_metrics(self, ref: str, info: Dict[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def on_close(self, ref: str) -> bool:
        raise NotImplementedError


# ======================================================================
# 3. ХРАНИЛИЩЕ СООБЩЕНИЙ (только нужный нам хук)
# ======================================================================

class MessageStore(ABC):
    """
    Внешнее хранилище сообщений. Его собственный жизненный цикл
    (open/ack/close) нас не касается, нужен только хук «причина устранена».
    """

    @abstractmethod
    def complete_after_cause_eliminated(
        self,
        ref: str,
        *,
        reason: str,
        at: datetime,
        actor: Optional[str] = None,
    ) -> bool:
        raise NotImplementedError


# ======================================================================
# 4. МЕТАДАННЫЕ ОБЪЕКТОВ
# ======================================================================

class MetaProvider(ABC):
    """Имя/единица для сигнала. Может вернуть None, если ничего не знает."""

    @abstractmethod
    def get_meta(self, target_id: str) -> Optional[ObjectMeta]:
        raise NotImplementedError


# ======================================================================
# 5. ПРОИЗВОДНЫЕ СОСТОЯНИЯ
# ======================================================================

class StatePublisher(ABC):
    """
    Куда экземпляр отдаёт свои производные состояния
    (period, due, remainingCount, progressPct) для панелей и отладки.
    """

    @abstractmethod
    def publish_states(self, key: str, values: Dict[str, Any]) -> bool:
        raise NotImplementedError
