# cyclehub/services/message_sink.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cyclehub.ingest.rules.storage import CounterStore, MessageStore, MessageWriter, StatePublisher
from cyclehub.ingest.rules.types import CounterPatch, CounterState, to_epoch_ms

log = logging.getLogger("mqtt")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MqttMessageSink(MessageWriter, MessageStore):
    """
    Писатель сообщений поверх MqttBridge.
    Сам хранилищем сообщений не является: публикует команды в
      <base>/messages/<ref>/upsert | metrics | close | complete
    а настоящее хранилище (UI, журнал) их подхватывает.

    True = публикация поставлена в очередь моста.
    """

    def __init__(self, bridge, *, source: str = "cyclehub") -> None:
        self._bridge = bridge
        self._source = source

    def _send(self, ref: str, op: str, body: Dict[str, Any], *, retain: bool = False) -> bool:
        if not ref:
            return False
        payload = dict(body)
        payload["ref"] = ref
        payload["metadata"] = {"timestamp": _now_iso(), "source": self._source}
        try:
            self._bridge.publish(self._bridge.message_topic(ref, op), payload, retain=retain)
        except Exception as e:  # noqa: BLE001
            log.error("[messages] %s %s failed: %s", op, ref, e)
            return False
        return True

    # --- MessageWriter ---
    def on_upsert(self, ref: str, info: Dict[str, Any]) -> bool:
        return self._send(ref, "upsert", info)

    def on_metrics(self, ref: str, info: Dict[str, Any]) -> bool:
        return self._send(ref, "metrics", info)

    def on_close(self, ref: str) -> bool:
        return self._send(ref, "close", {})

    # --- MessageStore ---
    def complete_after_cause_eliminated(
        self,
        ref: str,
        *,
        reason: str,
        at: datetime,
        actor: Optional[str] = None,
    ) -> bool:
        return self._send(ref, "complete", {"reason": reason, "at": to_epoch_ms(at), "actor": actor})


class MirroredCounterStore(CounterStore):
    """
    Обёртка над хранилищем счётчиков: после записи sub_counter публикует
    зеркало <base>/states/<key>.subCounter (retain, ack=true).

    Наша же подписка получит это эхо с ack=true и проигнорирует его;
    внешний сброс приходит на тот же топик с ack=false.
    """

    def __init__(self, inner: CounterStore, bridge, *, source: str = "cyclehub") -> None:
        self._inner = inner
        self._bridge = bridge
        self._source = source

    def get_state(self, key: str) -> Optional[CounterState]:
        return self._inner.get_state(key)

    def set_state(self, key: str, patch: CounterPatch) -> None:
        self._inner.set_state(key, patch)
        if patch.sub_counter is None:
            return
        self._bridge.publish(
            self._bridge.state_topic(f"{key}.subCounter"),
            {"value": patch.sub_counter, "ack": True, "from": self._source},
            retain=True,
        )


class MqttStatePublisher(StatePublisher):
    """
    Производные состояния экземпляра рядом с зеркалом:
      <base>/states/<key>.period | .due | .remainingCount | .progressPct
    Всё с retain и ack=true, как и зеркало subCounter.
    """

    def __init__(self, bridge, *, source: str = "cyclehub") -> None:
        self._bridge = bridge
        self._source = source

    def publish_states(self, key: str, values: Dict[str, Any]) -> bool:
        if not key:
            return False
        for name, value in values.items():
            self._bridge.publish(
                self._bridge.state_topic(f"{key}.{name}"),
                {"value": value, "ack": True, "from": self._source},
                retain=True,
            )
        return True
