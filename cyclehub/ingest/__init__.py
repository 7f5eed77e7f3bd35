# cyclehub/ingest/__init__.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from cyclehub.ingest.rules.outbox import Outbox
from cyclehub.ingest.rules.registry import RuleRegistry
from cyclehub.ingest.rules.repositories import (
    InMemoryCounterStore,
    InMemoryMessageStore,
    SqlCounterStore,
    StaticMetaProvider,
)
from cyclehub.ingest.rules.storage import CounterStore, MessageStore, StatePublisher
from cyclehub.ingest.rules.types import CYCLE_PRESET_KEY, FALLBACK_PRESET_ID
from cyclehub.ingest.rules.writers import DEFAULT_CYCLE_PRESET, WriterSet
from cyclehub.ingest.rules_loader import CyclesFile, load_cycles_from_yaml

log = logging.getLogger("cycles")

ACTION_TOPIC = "messages/+/action"


class IngestContext:
    """
    Держим всё в одном месте:
    - реестр циклов (+ его outbox и тик)
    - хранилище счётчиков
    - писатель сообщений / хук хранилища сообщений
    - метаданные из файла правил
    - (опционально) MqttBridge: входящие состояния и действия
    """

    def __init__(
        self,
        *,
        counter_store: CounterStore,
        writers: Optional[Mapping[str, WriterSet]] = None,
        message_store: Optional[MessageStore] = None,
        state_publisher: Optional[StatePublisher] = None,
        cycles_path: str | Path = "data/cycles.yaml",
        mqtt_bridge: Any = None,
        mqtt_topics: Optional[Mapping[str, str]] = None,
        namespace: str = "cyclehub.0",
        tick_interval_s: float = 60.0,
        trace_events: bool = False,
    ) -> None:
        self.cycles_path = Path(cycles_path)
        self.meta = StaticMetaProvider()
        self.counter_store = counter_store
        self.message_store = message_store
        self.mqtt = mqtt_bridge
        self._mqtt_topics = dict(mqtt_topics or {})

        self.registry = RuleRegistry(
            counter_store=counter_store,
            writers=writers,
            message_store=message_store,
            meta_provider=self.meta,
            state_publisher=state_publisher,
            outbox=Outbox(),
            namespace=namespace,
            tick_interval_s=tick_interval_s,
            trace_events=trace_events,
        )

    # ------------------------------------------------------------------ #
    def start(self) -> Dict[str, List[str]]:
        self.registry.start()
        if self.mqtt is not None:
            self.mqtt.register_on_topic(ACTION_TOPIC, self._on_mqtt_action)
        return self.reload()

    def stop(self) -> None:
        if self.mqtt is not None:
            self.mqtt.unregister_on_topic(ACTION_TOPIC)
        self.registry.stop()

    def reload(self) -> Dict[str, List[str]]:
        """Перечитать data/cycles.yaml и применить. ValueError: файл кривой, ничего не меняем."""
        data = load_cycles_from_yaml(self.cycles_path)
        return self.apply(data)

    def apply(self, data: CyclesFile) -> Dict[str, List[str]]:
        self.meta.replace_all(data.meta)
        result = self.registry.sync(data.cycles)
        self._sync_subscriptions()
        return result

    # ------------------------------------------------------------------ #
    def _sync_subscriptions(self) -> None:
        if self.mqtt is None:
            return
        self.mqtt.sync_states(
            self.registry.required_state_ids(),
            self._on_mqtt_state,
            explicit=self._mqtt_topics,
        )

    def _on_mqtt_state(self, state_id: str, value: Any, ack: Optional[bool], from_: Optional[str]) -> bool:
        return self.registry.on_state_change(state_id, value, ack=ack, from_=from_)

    def _on_mqtt_action(self, topic: str, parsed: Dict[str, Any]) -> bool:
        # <base>/messages/<ref>/action
        parts = topic.rstrip("/").split("/")
        if len(parts) < 3 or parts[-1] != "action":
            return False
        ref = parts[-2]
        action_type = parsed.get("type") or parsed.get("value")
        return self.registry.on_action(ref, str(action_type or ""))


def build_context(
    *,
    settings: Any,
    mqtt_bridge: Any = None,
    counter_store: Optional[CounterStore] = None,
) -> IngestContext:
    """
    Собрать контекст по настройкам.
      - engine.storage: sql (по умолчанию) | memory
      - есть mqtt_bridge → сообщения, зеркало subCounter и производные состояния идут в mqtt
      - нет → завершения складываются в in-memory журнал, писателя нет
    """
    from cyclehub.services.message_sink import MirroredCounterStore, MqttMessageSink, MqttStatePublisher

    if counter_store is None:
        if settings.storage_kind == "memory":
            counter_store = InMemoryCounterStore()
        else:
            from cyclehub.db.session import init_db
            counter_store = SqlCounterStore(init_db(settings.db_url))

    writers: Dict[str, WriterSet] = {}
    message_store: MessageStore
    state_publisher: Optional[StatePublisher] = None
    if mqtt_bridge is not None:
        counter_store = MirroredCounterStore(counter_store, mqtt_bridge)
        sink = MqttMessageSink(mqtt_bridge)
        writers[CYCLE_PRESET_KEY] = WriterSet.from_writer(sink, DEFAULT_CYCLE_PRESET.preset_id)
        writers[FALLBACK_PRESET_ID] = WriterSet.from_writer(sink, FALLBACK_PRESET_ID)
        message_store = sink
        state_publisher = MqttStatePublisher(mqtt_bridge)
    else:
        log.warning("cycles: no mqtt bridge, messages will not be written")
        message_store = InMemoryMessageStore()

    return IngestContext(
        counter_store=counter_store,
        writers=writers,
        message_store=message_store,
        state_publisher=state_publisher,
        cycles_path=settings.cycles_path,
        mqtt_bridge=mqtt_bridge,
        mqtt_topics=(settings.mqtt or {}).get("topics") or {},
        namespace=settings.namespace,
        tick_interval_s=settings.tick_interval_s,
        trace_events=settings.trace_events,
    )
