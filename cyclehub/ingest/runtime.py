# cyclehub/ingest/runtime.py
from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from cyclehub.ingest import IngestContext, build_context
from cyclehub.ingest.rules.registry import RuleRegistry

log = logging.getLogger("cycles")

# Глобальный синглтон
_LOCK = threading.Lock()
_CTX: Optional[IngestContext] = None


def ensure_started(*, settings: Any, mqtt_bridge: Any = None) -> IngestContext:
    """
    Гарантированно поднимает движок циклов один раз и возвращает контекст.
    Вызываем на старте приложения (после создания MqttBridge).
    """
    global _CTX
    with _LOCK:
        if _CTX is None:
            ctx = build_context(settings=settings, mqtt_bridge=mqtt_bridge)
            result = ctx.start()
            log.info("cycles engine started: %d rule(s)", len(result.get("added", [])))
            _CTX = ctx
        return _CTX


def install(ctx: Optional[IngestContext]) -> None:
    """Подставить готовый контекст (тесты, встраивание). None: снять без остановки."""
    global _CTX
    with _LOCK:
        _CTX = ctx


def context_instance() -> Optional[IngestContext]:
    return _CTX


def engine_instance() -> Optional[RuleRegistry]:
    """Вернёт реестр циклов (или None, если движок не поднят)."""
    ctx = _CTX
    return ctx.registry if ctx is not None else None


def stop_if_running() -> None:
    global _CTX
    with _LOCK:
        ctx, _CTX = _CTX, None
    if ctx is not None:
        ctx.stop()


def notify_state_change(
    state_id: str,
    value: Any,
    *,
    ack: Optional[bool] = None,
    from_: Optional[str] = None,
) -> bool:
    """
    Внешняя точка входа: «изменилось состояние state_id».
    Вернёт False, если движок не поднят или id никому не нужен.
    """
    if not state_id:
        return False
    reg = engine_instance()
    if reg is None:
        return False
    return reg.on_state_change(state_id, value, ack=ack, from_=from_)


def notify_action(ref: str, action_type: str) -> bool:
    """Внешняя точка входа для действий над сообщениями (close и т.п.)."""
    reg = engine_instance()
    if reg is None:
        return False
    return reg.on_action(ref, action_type)
