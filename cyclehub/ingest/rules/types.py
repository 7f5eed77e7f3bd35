# cyclehub/ingest/rules/types.py
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# === 1. БАЗОВЫЕ ENUM'Ы =======================================================

class RuleKind(Enum):
    """Вид правила. Пока реализован только цикл."""
    CYCLE = "cycle"


class RuleState(Enum):
    """Состояние экземпляра правила относительно сообщения."""
    IDLE = "idle"        # порог не достигнут, сообщения нет
    ACTIVE = "active"    # порог достигнут, сообщение открыто


class ActionType(Enum):
    """Действия над сообщением, которые приходят обратно из хранилища."""
    ACK = "ack"
    SNOOZE = "snooze"
    CLOSE = "close"


# служебные ключи
FALLBACK_PRESET_ID = "$fallback"
DEFAULT_PRESET_KEY = "DefaultId"
CYCLE_PRESET_KEY = "CycleId"
PRESET_SCHEMA = "cyclehub.MessagePreset.v1"

# имена полей в хранилище счётчиков
FIELD_LAST_COUNTER = "lastCounter"
FIELD_SUB_COUNTER = "subCounter"
FIELD_LAST_RESET_AT = "lastResetAt"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


# === 2. СЧЁТЧИКИ =============================================================

@dataclass
class CounterState:
    """
    Состояние накопителя одного экземпляра правила.

    last_counter : последнее увиденное «сырое» значение (None = базы ещё нет)
    sub_counter  : накопленный прирост с момента последнего сброса (>= 0)
    last_reset_at: когда был последний сброс (UTC)
    """
    last_counter: Optional[float] = None
    sub_counter: float = 0.0
    last_reset_at: datetime = field(default_factory=utcnow)

    def copy(self) -> "CounterState":
        return CounterState(
            last_counter=self.last_counter,
            sub_counter=self.sub_counter,
            last_reset_at=self.last_reset_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            FIELD_LAST_COUNTER: self.last_counter,
            FIELD_SUB_COUNTER: self.sub_counter,
            FIELD_LAST_RESET_AT: self.last_reset_at.isoformat(),
        }


@dataclass
class CounterPatch:
    """
    Частичное обновление записи в хранилище.
    Перезаписываются только заданные (не None) поля.
    """
    last_counter: Optional[float] = None
    sub_counter: Optional[float] = None
    last_reset_at: Optional[datetime] = None

    def supplied(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.supplied()

    def apply_to(self, state: CounterState) -> CounterState:
        out = state.copy()
        for name, value in self.supplied().items():
            setattr(out, name, value)
        return out


# === 3. КОНФИГ ПРАВИЛА =======================================================

@dataclass
class CycleRuleConfig:
    """
    Настройки одного цикла.

    period       : порог накопления (в единицах сигнала), > 0
    min_elapsed_s: доп. условие: с последнего сброса должно пройти не меньше N сек
    heartbeat_s  : как часто в активном состоянии повторять метрики по тику (0 = никогда)
    """
    target_id: str
    period: float
    min_elapsed_s: float = 0.0
    preset_key: str = CYCLE_PRESET_KEY
    preset_id: Optional[str] = None
    name: Optional[str] = None
    unit: Optional[str] = None
    enabled: bool = True
    heartbeat_s: float = 60.0
    description: Optional[str] = None


# === 4. СООБЩЕНИЯ ============================================================

@dataclass
class MetricValue:
    val: Any
    unit: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"val": self.val, "unit": self.unit}


@dataclass
class MessageAction:
    """Действие, которое предлагается пользователю в сообщении."""
    id: str
    type: ActionType
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "type": self.type.value}
        if self.payload:
            out["payload"] = dict(self.payload)
        return out


@dataclass
class Preset:
    """
    Уже разобранный и проверенный шаблон сообщения.
    Сам разбор шаблонов живёт снаружи, движок только читает готовое.
    """
    preset_id: str
    schema: str = PRESET_SCHEMA
    description: str = ""
    owned_by: Optional[str] = None
    message: Dict[str, Any] = field(default_factory=dict)
    policy: Dict[str, Any] = field(default_factory=dict)
    ui: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ObjectMeta:
    """Человекочитаемые имя и единица измерения для сигнала."""
    name: Optional[str] = None
    unit: Optional[str] = None


@dataclass
class RuleSnapshot:
    """Срез состояния экземпляра: для API и отладки."""
    kind: RuleKind
    target_id: str
    ref: str
    period: float
    min_elapsed_s: float
    state: RuleState
    ready: bool
    counters: CounterState
    due: bool
    remaining: float
    progress_pct: int
    elapsed_s: float
    preset_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target_id": self.target_id,
            "ref": self.ref,
            "period": self.period,
            "min_elapsed_s": self.min_elapsed_s,
            "state": self.state.value,
            "active": self.state == RuleState.ACTIVE,
            "ready": self.ready,
            "counters": self.counters.to_dict(),
            "due": self.due,
            "remaining": self.remaining,
            "progress_pct": self.progress_pct,
            "elapsed_s": self.elapsed_s,
            "preset_key": self.preset_key,
        }

