# cyclehub/ingest/rules/registry.py
from __future__ import annotations

import logging
import threading
from datetime import datetime
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from .cycle import CycleRule
from .outbox import Outbox
from .storage import CounterStore, MessageStore, MetaProvider, StatePublisher
from .types import CycleRuleConfig, RuleSnapshot, utcnow
from .writers import WriterSet

log = logging.getLogger("cycles")


class RuleRegistry:
    """
    Реестр экземпляров правил (по одному циклу на target_id).

      - маршрутизирует изменения состояний в нужный экземпляр
        (по id счётчика или id зеркала subCounter)
      - маршрутизирует действия над сообщениями (по ref)
      - крутит тик-поток
      - держит общий Outbox для всех экземпляров
    """

    def __init__(
        self,
        *,
        counter_store: CounterStore,
        writers: Optional[Mapping[str, WriterSet]] = None,
        message_store: Optional[MessageStore] = None,
        meta_provider: Optional[MetaProvider] = None,
        state_publisher: Optional[StatePublisher] = None,
        outbox: Optional[Outbox] = None,
        namespace: str = "cyclehub.0",
        tick_interval_s: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
        trace_events: bool = False,
    ) -> None:
        self._counter_store = counter_store
        self._writers: Dict[str, WriterSet] = dict(writers or {})
        self._message_store = message_store
        self._meta_provider = meta_provider
        self._state_publisher = state_publisher
        self.outbox = outbox or Outbox()
        self._namespace = namespace
        self._tick_interval_s = float(tick_interval_s)
        self._clock = clock
        self._trace_events = trace_events

        self._rules: Dict[str, CycleRule] = {}
        self._by_state_id: Dict[str, CycleRule] = {}
        self._by_ref: Dict[str, CycleRule] = {}
        self._lock = RLock()

        self._tick_stop = threading.Event()
        self._tick_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ #
    # УПРАВЛЕНИЕ ПРАВИЛАМИ
    # ------------------------------------------------------------------ #
    def upsert(self, config: CycleRuleConfig) -> Optional[CycleRule]:
        """
        Создать/заменить экземпляр для config.target_id.
        Тот же конфиг → ничего не делаем. Выключенный → экземпляр снимаем.
        """
        if not config.enabled:
            self.remove(config.target_id, close_message=True)
            return None

        with self._lock:
            existing = self._rules.get(config.target_id)
            if existing is not None and existing.config == config:
                return existing
            inherit_active = False
            if existing is not None:
                # новая версия настроек: открытое сообщение новый экземпляр обновит или закроет сам
                self._unregister(existing)
                inherit_active = existing.dispose(close_message=False)
                log.info("Cycle %s: config changed, re-creating", config.target_id)

            rule = CycleRule(
                config=config,
                counter_store=self._counter_store,
                outbox=self.outbox,
                writers=self._writers,
                message_store=self._message_store,
                meta_provider=self._meta_provider,
                state_publisher=self._state_publisher,
                namespace=self._namespace,
                clock=self._clock,
                trace_events=self._trace_events,
                inherit_active=inherit_active,
            )
            self._register(rule)
            return rule

    def remove(self, target_id: str, *, close_message: bool = True) -> bool:
        with self._lock:
            rule = self._rules.get(target_id)
            if rule is None:
                return False
            self._unregister(rule)
        rule.dispose(close_message=close_message)
        log.info("Cycle %s: removed (close_message=%s)", target_id, close_message)
        return True

    def sync(self, configs: Iterable[CycleRuleConfig]) -> Dict[str, List[str]]:
        """
        Привести набор экземпляров к списку конфигов:
        лишние снимаем (с закрытием сообщения), новые создаём, изменённые пересоздаём.
        """
        wanted: Dict[str, CycleRuleConfig] = {}
        for cfg in configs:
            if cfg.enabled:
                wanted[cfg.target_id] = cfg

        result: Dict[str, List[str]] = {"added": [], "updated": [], "removed": [], "unchanged": []}

        with self._lock:
            current = dict(self._rules)

        for target_id in current:
            if target_id not in wanted:
                self.remove(target_id, close_message=True)
                result["removed"].append(target_id)

        for target_id, cfg in wanted.items():
            prev = current.get(target_id)
            rule = self.upsert(cfg)
            if prev is None:
                result["added"].append(target_id)
            elif rule is prev:
                result["unchanged"].append(target_id)
            else:
                result["updated"].append(target_id)

        log.info(
            "cycles sync: added=%d updated=%d removed=%d unchanged=%d",
            len(result["added"]), len(result["updated"]), len(result["removed"]), len(result["unchanged"]),
        )
        return result

    def get(self, target_id: str) -> Optional[CycleRule]:
        with self._lock:
            return self._rules.get(target_id)

    def list_rules(self) -> List[CycleRule]:
        with self._lock:
            return list(self._rules.values())

    def required_state_ids(self) -> Set[str]:
        with self._lock:
            return set(self._by_state_id.keys())

    # ------------------------------------------------------------------ #
    # ВХОДЯЩИЕ СОБЫТИЯ
    # ------------------------------------------------------------------ #
    def on_state_change(
        self,
        state_id: str,
        val: Any,
        *,
        ack: Optional[bool] = None,
        from_: Optional[str] = None,
    ) -> bool:
        """Вернёт True, если id кому-то интересен."""
        with self._lock:
            rule = self._by_state_id.get(state_id)
        if rule is None:
            return False
        rule.on_state_change(state_id, val, ack=ack, from_=from_)
        return True

    def on_action(self, ref: str, action_type: str) -> bool:
        with self._lock:
            rule = self._by_ref.get(ref)
        if rule is None:
            return False
        return rule.on_action(ref, action_type)

    def tick(self, now: Optional[datetime] = None) -> None:
        now = now or self._clock()
        for rule in self.list_rules():
            try:
                rule.on_tick(now)
            except Exception:  # noqa: BLE001
                log.exception("Cycle %s: tick failed", rule.target_id)

    # ------------------------------------------------------------------ #
    # ЖИЗНЕННЫЙ ЦИКЛ
    # ------------------------------------------------------------------ #
    def start(self) -> None:
        self.outbox.start()
        if self._tick_interval_s <= 0:
            return
        if self._tick_thread is not None and self._tick_thread.is_alive():
            return
        self._tick_stop.clear()
        self._tick_thread = threading.Thread(target=self._tick_loop, name="cycles-tick", daemon=True)
        self._tick_thread.start()
        log.info("cycles: tick thread started (every %.1fs)", self._tick_interval_s)

    def stop(self, timeout: float = 5.0) -> None:
        """Остановить тик, снять все экземпляры (сообщения не закрываем), дописать outbox."""
        self._tick_stop.set()
        th = self._tick_thread
        if th is not None:
            th.join(timeout=timeout)
            self._tick_thread = None

        with self._lock:
            rules = list(self._rules.values())
            self._rules.clear()
            self._by_state_id.clear()
            self._by_ref.clear()
        for rule in rules:
            rule.dispose(close_message=False)

        if not self.outbox.flush(timeout=timeout):
            log.warning("cycles: outbox not drained in %.1fs (%d pending)", timeout, self.outbox.pending)
        self.outbox.stop(timeout=timeout)

    def flush(self, timeout: Optional[float] = None) -> bool:
        return self.outbox.flush(timeout=timeout)

    def snapshot(self, now: Optional[datetime] = None) -> List[RuleSnapshot]:
        now = now or self._clock()
        return [rule.snapshot(now) for rule in sorted(self.list_rules(), key=lambda r: r.target_id)]

    # ------------------------------------------------------------------ #
    # ВНУТРЕННЕЕ
    # ------------------------------------------------------------------ #
    def _register(self, rule: CycleRule) -> None:
        self._rules[rule.target_id] = rule
        self._by_ref[rule.ref] = rule
        for sid in rule.required_state_ids():
            other = self._by_state_id.get(sid)
            if other is not None and other is not rule:
                log.warning("Cycle %s: state id '%s' already used by %s", rule.target_id, sid, other.target_id)
            self._by_state_id[sid] = rule

    def _unregister(self, rule: CycleRule) -> None:
        self._rules.pop(rule.target_id, None)
        self._by_ref.pop(rule.ref, None)
        for sid in rule.required_state_ids():
            if self._by_state_id.get(sid) is rule:
                self._by_state_id.pop(sid, None)

    def _tick_loop(self) -> None:
        while not self._tick_stop.wait(self._tick_interval_s):
            self.tick()
