# cyclehub/ingest/rules/writers.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from .storage import MessageWriter
from .types import (
    CYCLE_PRESET_KEY,
    DEFAULT_PRESET_KEY,
    FALLBACK_PRESET_ID,
    PRESET_SCHEMA,
    Preset,
)


# ---- сигнатуры, которые ждёт правило ---------------------------------------

UpsertFunc = Callable[[str, Dict[str, Any]], bool]
MetricsFunc = Callable[[str, Dict[str, Any]], bool]
CloseFunc = Callable[[str], bool]


@dataclass(frozen=True)
class WriterSet:
    """
    Набор возможностей писателя для одного ключа пресета.
    Правилу не важно, кто за этим стоит: mqtt, хранилище или тестовая заглушка.
    """
    on_upsert: UpsertFunc
    on_metrics: MetricsFunc
    on_close: CloseFunc
    preset_id: Optional[str] = None

    @classmethod
    def from_writer(cls, writer: MessageWriter, preset_id: Optional[str] = None) -> "WriterSet":
        return cls(
            on_upsert=writer.on_upsert,
            on_metrics=writer.on_metrics,
            on_close=writer.on_close,
            preset_id=preset_id,
        )


def resolve_writer(
    writers: Optional[Mapping[str, WriterSet]],
    preset_key: Optional[str] = None,
) -> Optional[WriterSet]:
    """
    Порядок поиска:
      1) точный ключ пресета (по умолчанию CycleId)
      2) DefaultId
      3) служебный $fallback
    """
    if not writers:
        return None
    key = (preset_key or "").strip() or CYCLE_PRESET_KEY
    for candidate in (key, DEFAULT_PRESET_KEY, FALLBACK_PRESET_ID):
        ws = writers.get(candidate)
        if ws is not None:
            return ws
    return None


# === ПРЕСЕТЫ ПО УМОЛЧАНИЮ ===================================================

DEFAULT_CYCLE_PRESET = Preset(
    preset_id="cycle_default_task",
    schema=PRESET_SCHEMA,
    description="cycle (task)",
    owned_by="Cycle",
    message={
        "kind": "task",
        "level": 10,
        "title": "'{{m.state-name.val}}' due (cycle)",
        "text": (
            "Please do the task and close the message afterwards (reset).\n\n"
            "Since reset: {{m.cycle-subCounter}} / {{m.cycle-period}} {{m.cycle-subCounter.unit}}.\n"
            "Last reset: {{m.cycle-lastResetAt.val|datetime}}."
        ),
    },
    policy={"resetOnNormal": True},
)


def make_fallback_preset(target_id: str) -> Preset:
    """Внутренний пресет на случай, если нужный не настроен. Не редактируется."""
    return Preset(
        preset_id=FALLBACK_PRESET_ID,
        schema=PRESET_SCHEMA,
        description="Internal fallback preset",
        owned_by="internal",
        message={
            "kind": "status",
            "level": 40,
            "title": "Missing message preset",
            "text": f"A message preset is missing or not configured.\n{target_id or ''}",
        },
        policy={"resetOnNormal": False},
    )
