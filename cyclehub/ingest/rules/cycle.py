# cyclehub/ingest/rules/cycle.py
from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import asdict
from datetime import datetime
from functools import partial
from threading import RLock
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Set

from .outbox import Outbox
from .storage import CounterStore, MessageStore, MetaProvider, StatePublisher
from .types import (
    ActionType,
    CounterPatch,
    CounterState,
    CycleRuleConfig,
    FALLBACK_PRESET_ID,
    MessageAction,
    MetricValue,
    RuleKind,
    RuleSnapshot,
    RuleState,
    to_epoch_ms,
    utcnow,
)
from .writers import WriterSet, make_fallback_preset, resolve_writer

log = logging.getLogger("cycles")

SNOOZE_4H_MS = 4 * 60 * 60 * 1000

REASON_EXTERNAL_RESET = "external-reset"

# производные состояния (period/due/remainingCount/progressPct) пишем не чаще раза в минуту
DERIVED_MIN_INTERVAL_S = 60.0


def to_number(value: Any) -> Optional[float]:
    """
    Привести значение с шины к числу.
    bool, NaN/inf и всё непарсящееся → None (событие отбрасываем).
    Строки вида "12" / "12,5" допускаем.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    elif isinstance(value, str):
        s = value.strip().replace(",", ".")
        if not s:
            return None
        try:
            num = float(s)
        except ValueError:
            return None
    else:
        return None
    return num if math.isfinite(num) else None


def _plain(num: float) -> Any:
    # 5.0 → 5, чтобы в метриках не было лишних ".0"
    return int(num) if float(num).is_integer() else num


def _fallback_name(target_id: str) -> str:
    parts = [p for p in str(target_id or "").split(".") if p]
    return parts[-1] if parts else str(target_id or "")


class CycleRule:
    """
    Цикл: накопитель прироста счётчика с порогом.

    Типичные примеры:
      - ТО каждые 2000 моточасов
      - досыпать соль в посудомойку после 150 циклов
      - сменить фильтр после 150 мм осадков

    Основная идея:
      - счётчику устройства не доверяем (он может сброситься),
        поэтому считаем свой sub_counter как сумму приростов:
          * значение выросло  → добавляем дельту
          * значение упало    → в sub_counter ничего, только новая база
      - как только sub_counter >= period (и прошло min_elapsed_s с последнего
        сброса, если задано) → открываем сообщение (on_upsert)
      - пока активны → обновляем метрики (on_metrics)

    Сброс бывает двух видов:
      - штатный: над сообщением выполнили close → on_action
      - внешний: кто-то записал subCounter = 0 (ack=False) в зеркало
        → сообщаем хранилищу «причина устранена» (только если были активны)

    Ненулевая запись в зеркало: больше текущего → подстройка (принимаем),
    меньше → отклоняем и возвращаем зеркалу наше значение.

    ВАЖНО:
      - первичная загрузка состояния идёт в outbox, события до её окончания
        копятся в буфере и проигрываются по порядку
      - запись в хранилище и вызовы писателя движок не ждёт
      - наружу не летит ни одно исключение
    """

    kind = RuleKind.CYCLE

    def __init__(
        self,
        *,
        config: CycleRuleConfig,
        counter_store: CounterStore,
        outbox: Outbox,
        writers: Optional[Mapping[str, WriterSet]] = None,
        message_store: Optional[MessageStore] = None,
        meta_provider: Optional[MetaProvider] = None,
        state_publisher: Optional[StatePublisher] = None,
        namespace: str = "cyclehub.0",
        clock: Callable[[], datetime] = utcnow,
        trace_events: bool = False,
        inherit_active: bool = False,
    ) -> None:
        period = to_number(config.period)
        if period is None or period <= 0:
            raise ValueError(f"CycleRule: invalid config for '{config.target_id}': requires period > 0")

        self.config = config
        self.target_id = config.target_id
        self._period = period
        self._min_elapsed_s = max(0.0, to_number(config.min_elapsed_s) or 0.0)
        self._heartbeat_s = max(0.0, to_number(config.heartbeat_s) or 0.0)

        self._store = counter_store
        self._outbox = outbox
        self._message_store = message_store
        self._meta_provider = meta_provider
        self._state_publisher = state_publisher
        self._clock = clock
        self._trace_events = trace_events

        self._writer = resolve_writer(writers, config.preset_key)
        if self._writer is None:
            log.warning("Cycle %s: no message writer for preset key '%s'", self.target_id, config.preset_key)

        # ключ экземпляра = ref сообщения; зеркало subCounter: отдельный id
        self._key = f"{namespace}.cycle.{self.target_id}"
        self._mirror_id = f"{self._key}.subCounter"

        # отображение (имя/единица); ищем лениво, только при активации
        self._name: Optional[str] = (config.name or "").strip() or None
        self._unit: str = (config.unit or "").strip()

        self._state = CounterState(last_reset_at=self._clock())
        self._active = False
        # None → не открывали; "inflight" → ушёл в outbox; "ok"; "failed" → повторить
        self._upsert_status: Optional[str] = None
        self._last_heartbeat_at: Optional[datetime] = None
        self._last_derived_at: Optional[datetime] = None
        # сообщение открыто предыдущей версией настроек (пересоздание в реестре)
        self._inherit_active = inherit_active
        self._unsaved: Set[str] = set()

        self._lock = RLock()
        self._ready = threading.Event()
        self._loading = True
        self._buffer: Deque[Callable[[], None]] = deque()
        self._disposed = False

        self._trace(f"start period={_plain(self._period)} min_elapsed_s={_plain(self._min_elapsed_s)}")

        submitted = self._outbox.submit(
            f"load {self._key}",
            partial(self._store.get_state, self._key),
            on_done=self._on_loaded,
        )
        if not submitted:
            self._on_loaded(False, RuntimeError("outbox is stopped"))

    # ------------------------------------------------------------------ #
    # СВОЙСТВА
    # ------------------------------------------------------------------ #
    @property
    def ref(self) -> str:
        return self._key

    @property
    def mirror_id(self) -> str:
        return self._mirror_id

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def is_disposed(self) -> bool:
        with self._lock:
            return self._disposed

    @property
    def state(self) -> CounterState:
        with self._lock:
            return self._state.copy()

    def required_state_ids(self) -> Set[str]:
        """Какие id нужно слушать: сам счётчик и наше зеркало subCounter."""
        return {self.target_id, self._mirror_id}

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    # ------------------------------------------------------------------ #
    # ПУБЛИЧНЫЙ API: входящие события
    # ------------------------------------------------------------------ #
    def on_state_change(
        self,
        state_id: str,
        val: Any,
        *,
        ack: Optional[bool] = None,
        from_: Optional[str] = None,
    ) -> None:
        """Маршрутизация по тому, какой id изменился."""
        if state_id == self.target_id:
            self.on_raw_value(val)
        elif state_id == self._mirror_id:
            self.on_override_write(val, ack=ack, from_=from_)

    def on_raw_value(self, val: Any) -> None:
        num = to_number(val)
        if num is None:
            log.debug("Cycle %s: drop invalid raw value %r", self.target_id, val)
            return
        self._dispatch(partial(self._apply_raw, num))

    def on_override_write(self, val: Any, *, ack: Optional[bool] = None, from_: Optional[str] = None) -> None:
        # наши собственные записи всегда с ack=True: это эхо, не интересно
        if ack is True:
            return
        num = to_number(val)
        if num is None or num < 0:
            log.debug("Cycle %s: drop invalid override %r", self.target_id, val)
            return
        self._dispatch(partial(self._apply_override, num, from_))

    def on_action(self, ref: str, action_type: str) -> bool:
        """
        Выполненное над сообщением действие. Реагируем только на close
        по СВОЕМУ ref. Вернёт True, если действие наше.
        """
        if not isinstance(ref, str) or ref != self._key:
            return False
        if str(action_type or "") != ActionType.CLOSE.value:
            return False
        self._dispatch(partial(self._apply_close_action))
        return True

    def on_tick(self, now: Optional[datetime] = None) -> None:
        """
        Периодический тик (расписание: забота вызывающего).
        В простое без достижения порога ничего не делает.
        """
        with self._lock:
            if self._disposed or self._loading:
                return
            now = now or self._clock()
            self._publish_derived(now, force=False)
            if not self._active:
                # порог есть, но ждём min_elapsed: время само может открыть сообщение
                if self._state.sub_counter >= self._period:
                    self._evaluate(now, changed=False, allow_retry=False)
                return
            if self._upsert_status == "failed":
                # сообщения ещё нет: метрики слать некуда, пробуем открыть заново
                self._evaluate(now, changed=False, allow_retry=True)
                return
            if self._heartbeat_s <= 0:
                return
            last = self._last_heartbeat_at
            if last is None or (now - last).total_seconds() >= self._heartbeat_s:
                self._patch_metrics(now)

    def dispose(self, *, close_message: bool = False) -> bool:
        """
        Остановить экземпляр. Повторный вызов: без эффекта.
        close_message=True → если сообщение открыто, попросить писателя закрыть его.
        После dispose ни один наш коллбек уже ничего не меняет.
        Вернёт True, если сообщение на момент остановки было открыто.
        """
        with self._lock:
            if self._disposed:
                return False
            self._disposed = True
            # не успели загрузиться: сообщение всё ещё принадлежит прошлой версии настроек
            was_active = self._active or (self._loading and self._inherit_active)
            self._buffer.clear()
            self._ready.set()

        self._trace(f"dispose close_message={close_message} active={was_active}")
        if close_message and was_active:
            self._submit_close()
        return was_active

    def snapshot(self, now: Optional[datetime] = None) -> RuleSnapshot:
        with self._lock:
            now = now or self._clock()
            st = self._state.copy()
            remaining = max(0.0, self._period - st.sub_counter)
            count_pct = min(1.0, max(0.0, st.sub_counter / self._period))
            return RuleSnapshot(
                kind=self.kind,
                target_id=self.target_id,
                ref=self._key,
                period=_plain(self._period),
                min_elapsed_s=_plain(self._min_elapsed_s),
                state=RuleState.ACTIVE if self._active else RuleState.IDLE,
                ready=not self._loading,
                counters=st,
                due=st.sub_counter >= self._period,
                remaining=_plain(remaining),
                progress_pct=int(count_pct * 100),
                elapsed_s=max(0.0, (now - st.last_reset_at).total_seconds()),
                preset_key=self.config.preset_key,
            )

    # ------------------------------------------------------------------ #
    # ОБРАБОТКА (всё под self._lock)
    # ------------------------------------------------------------------ #
    def _dispatch(self, fn: Callable[[], None]) -> None:
        with self._lock:
            if self._disposed:
                return
            if self._loading:
                self._buffer.append(fn)
                return
            try:
                fn()
            except Exception:  # noqa: BLE001
                log.exception("Cycle %s: event handling failed", self.target_id)

    def _apply_raw(self, current: float) -> None:
        st = self._state
        prev = st.last_counter
        if prev is None:
            # первая точка: только база, без писателя
            st.last_counter = current
            self._persist("last_counter")
            self._trace(f"baseline lastCounter={_plain(current)}")
            return

        changed = False
        if current > prev:
            st.sub_counter += current - prev
            changed = True
        elif current < prev:
            self._trace(f"rollback {_plain(prev)} -> {_plain(current)}, keep subCounter={_plain(st.sub_counter)}")

        st.last_counter = current
        if changed:
            self._persist("last_counter", "sub_counter")
        else:
            self._persist("last_counter")

        now = self._clock()
        self._publish_derived(now, force=True)
        self._evaluate(now, changed=changed, allow_retry=True)

    def _apply_override(self, value: float, from_: Optional[str]) -> None:
        now = self._clock()
        if value == 0:
            actor = (from_ or "").strip() or "external"
            was_active = self._active
            self._trace(f"external reset request by '{actor}' (active={was_active})")
            if was_active:
                self._complete_after_cause_eliminated(now, actor)
            self._reset(now, reason="external.subCounter")
            return

        st = self._state
        if value < st.sub_counter:
            # уменьшать subCounter можно только сбросом в 0: возвращаем зеркало к нашему значению
            log.info(
                "Cycle %s: reject external subCounter=%s from '%s', keep %s",
                self.target_id, _plain(value), from_ or "external", _plain(st.sub_counter),
            )
            self._persist("sub_counter")
            self._evaluate(now, changed=False, allow_retry=True)
            return

        # подстройка вверх принимается; запись зеркала с ack=true её подтверждает
        changed = value != st.sub_counter
        self._trace(f"external adjust subCounter {_plain(st.sub_counter)} -> {_plain(value)} by '{from_ or 'external'}'")
        st.sub_counter = value
        self._persist("sub_counter")
        self._publish_derived(now, force=True)
        self._evaluate(now, changed=changed, allow_retry=True)

    def _apply_close_action(self) -> None:
        self._trace("onAction close -> reset")
        self._reset(self._clock(), reason="action.close")

    def _reset(self, now: datetime, *, reason: str) -> None:
        # last_counter не трогаем: следующая дельта считается от реальной базы
        self._state.sub_counter = 0.0
        self._state.last_reset_at = now
        self._active = False
        self._upsert_status = None
        self._last_heartbeat_at = None
        self._persist("sub_counter", "last_reset_at")
        self._publish_derived(now, force=True)
        self._trace(f"reset reason='{reason}' at={now.isoformat()}")

    def _is_due(self, now: datetime) -> bool:
        if self._state.sub_counter < self._period:
            return False
        if self._min_elapsed_s > 0:
            elapsed = (now - self._state.last_reset_at).total_seconds()
            return elapsed >= self._min_elapsed_s
        return True

    def _evaluate(self, now: datetime, *, changed: bool, allow_retry: bool) -> None:
        if not self._active:
            if self._is_due(now):
                self._active = True
                self._resolve_meta()
                self._open(now)
            return

        if self._upsert_status == "failed" and allow_retry:
            self._open(now)
            return
        if changed:
            self._patch_metrics(now)

    # ------------------------------------------------------------------ #
    # СООБЩЕНИЕ
    # ------------------------------------------------------------------ #
    def _label(self) -> str:
        return self._name or _fallback_name(self.target_id)

    def _resolve_meta(self) -> None:
        """Имя/единица из метаданных. Только при активации, в простое: никогда."""
        if self._meta_provider is None:
            return
        if self.config.name and self.config.unit:
            return
        try:
            meta = self._meta_provider.get_meta(self.target_id)
        except Exception as exc:  # noqa: BLE001
            log.debug("Cycle %s: meta lookup failed: %s", self.target_id, exc)
            return
        if meta is None:
            return
        name = (meta.name or "").strip()
        unit = (meta.unit or "").strip()
        if name and not self.config.name:
            self._name = name
        if unit and not self.config.unit:
            self._unit = unit

    def _metrics(self) -> Dict[str, Dict[str, Any]]:
        st = self._state
        unit = self._unit or ""
        metrics = {
            "state-name": MetricValue(self._label(), ""),
            "cycle-subCounter": MetricValue(_plain(st.sub_counter), unit),
            "cycle-period": MetricValue(_plain(self._period), unit),
            "cycle-remaining": MetricValue(_plain(max(0.0, self._period - st.sub_counter)), unit),
            "cycle-lastResetAt": MetricValue(to_epoch_ms(st.last_reset_at), "ms"),
        }
        if self._min_elapsed_s > 0:
            metrics["cycle-minElapsed"] = MetricValue(int(self._min_elapsed_s * 1000), "ms")
        return {k: v.to_dict() for k, v in metrics.items()}

    @staticmethod
    def _actions() -> list:
        return [
            MessageAction("ack", ActionType.ACK).to_dict(),
            MessageAction("snooze-4h", ActionType.SNOOZE, {"forMs": SNOOZE_4H_MS}).to_dict(),
            MessageAction("close", ActionType.CLOSE).to_dict(),
        ]

    def _open(self, now: datetime) -> None:
        self._last_heartbeat_at = now
        if self._writer is None:
            self._upsert_status = None
            return
        info = {
            "metrics": self._metrics(),
            "actions": self._actions(),
            "now": to_epoch_ms(now),
            "start_at": to_epoch_ms(self._state.last_reset_at),
            "preset_id": self.config.preset_id or self._writer.preset_id,
        }
        if info["preset_id"] == FALLBACK_PRESET_ID:
            # внутренний пресет снаружи не настроен: отдаём его писателю целиком
            info["preset"] = asdict(make_fallback_preset(self.target_id))
        self._upsert_status = "inflight"
        self._trace(f"open subCounter={info['metrics']['cycle-subCounter']['val']}")
        submitted = self._outbox.submit(
            f"upsert {self._key}",
            partial(self._writer.on_upsert, self._key, info),
            on_done=self._on_upsert_done,
        )
        if not submitted:
            self._upsert_status = "failed"

    def _submit_close(self) -> None:
        if self._writer is None:
            return
        self._outbox.submit(
            f"close {self._key}",
            partial(self._writer.on_close, self._key),
            on_done=self._on_close_done,
        )

    def _publish_derived(self, now: datetime, *, force: bool) -> None:
        """
        Производные состояния экземпляра для панелей и отладки:
        period, due, remainingCount, progressPct. Без force не чаще DERIVED_MIN_INTERVAL_S.
        """
        if self._state_publisher is None:
            return
        last = self._last_derived_at
        if not force and last is not None and (now - last).total_seconds() < DERIVED_MIN_INTERVAL_S:
            return
        self._last_derived_at = now
        st = self._state
        values = {
            "period": _plain(self._period),
            "due": self._is_due(now),
            "remainingCount": int(max(0.0, self._period - st.sub_counter)),
            "progressPct": int(min(1.0, max(0.0, st.sub_counter / self._period)) * 100),
        }
        self._outbox.submit(
            f"derived {self._key}",
            partial(self._state_publisher.publish_states, self._key, values),
            on_done=partial(self._on_writer_done, "publish_states"),
        )

    def _patch_metrics(self, now: datetime) -> None:
        self._last_heartbeat_at = now
        if self._writer is None:
            return
        info = {"set": self._metrics(), "now": to_epoch_ms(now)}
        self._outbox.submit(
            f"metrics {self._key}",
            partial(self._writer.on_metrics, self._key, info),
            on_done=partial(self._on_writer_done, "on_metrics"),
        )

    def _complete_after_cause_eliminated(self, now: datetime, actor: str) -> None:
        store = self._message_store
        if store is None:
            log.debug("Cycle %s: no message store, skip cause elimination", self.target_id)
            return
        self._outbox.submit(
            f"complete {self._key}",
            partial(
                store.complete_after_cause_eliminated,
                self._key,
                reason=REASON_EXTERNAL_RESET,
                at=now,
                actor=actor,
            ),
            on_done=partial(self._on_writer_done, "complete_after_cause_eliminated"),
        )

    # ------------------------------------------------------------------ #
    # ПЕРСИСТЕНТНОСТЬ
    # ------------------------------------------------------------------ #
    def _persist(self, *names: str) -> None:
        """
        Записать поля в хранилище (не ждём). Неудачно записанные поля
        остаются в self._unsaved и уходят вместе со следующей мутацией.
        """
        self._unsaved.update(names)
        values = {n: getattr(self._state, n) for n in self._unsaved}
        patch = CounterPatch(**values)
        if patch.is_empty():
            return
        self._outbox.submit(
            f"persist {self._key}",
            partial(self._store.set_state, self._key, patch),
            on_done=partial(self._on_persist_done, patch.supplied()),
        )

    # ------------------------------------------------------------------ #
    # КОЛЛБЕКИ OUTBOX (поток outbox)
    # ------------------------------------------------------------------ #
    def _on_loaded(self, ok: bool, result: Any) -> None:
        with self._lock:
            if self._disposed:
                return

            fresh = True
            if not ok:
                log.warning("Cycle %s: state load failed (%s), starting fresh", self.target_id, result)
            elif isinstance(result, CounterState):
                fresh = False
                self._restore(result)

            if fresh:
                # зеркало subCounter и время старта должны существовать сразу
                self._persist("sub_counter", "last_reset_at")

            self._loading = False
            self._trace(
                f"loaded fresh={fresh} lastCounter={self._state.last_counter} "
                f"subCounter={_plain(self._state.sub_counter)} buffered={len(self._buffer)}"
            )

            # после рестарта порог мог уже быть достигнут: сообщение поднимаем заново
            now = self._clock()
            self._evaluate(now, changed=False, allow_retry=False)
            if self._inherit_active and not self._active:
                # прошлая версия настроек держала сообщение открытым, по новым порога нет
                self._trace("inherited message is no longer due -> close")
                self._submit_close()
            self._publish_derived(now, force=True)

            while self._buffer:
                fn = self._buffer.popleft()
                try:
                    fn()
                except Exception:  # noqa: BLE001
                    log.exception("Cycle %s: buffered event failed", self.target_id)

        self._ready.set()

    def _restore(self, loaded: CounterState) -> None:
        last = to_number(loaded.last_counter) if loaded.last_counter is not None else None
        sub = to_number(loaded.sub_counter)
        self._state.last_counter = last
        self._state.sub_counter = sub if sub is not None and sub >= 0 else 0.0
        if isinstance(loaded.last_reset_at, datetime):
            self._state.last_reset_at = loaded.last_reset_at
        else:
            self._persist("last_reset_at")

    def _on_persist_done(self, sent: Dict[str, Any], ok: bool, result: Any) -> None:
        with self._lock:
            if self._disposed:
                return
            if not ok:
                log.warning("Cycle %s: persist failed, will retry on next change: %s", self.target_id, result)
                return
            for name, value in sent.items():
                if getattr(self._state, name) == value:
                    self._unsaved.discard(name)

    def _on_upsert_done(self, ok: bool, result: Any) -> None:
        with self._lock:
            if self._disposed or self._upsert_status != "inflight":
                return
            if ok and result:
                self._upsert_status = "ok"
                return
            self._upsert_status = "failed"
        log.warning("Cycle %s: on_upsert rejected (%r), will retry on next event or tick", self.target_id, result)

    def _on_close_done(self, ok: bool, result: Any) -> None:
        # экземпляр к этому моменту обычно уже снят
        if not (ok and result):
            log.warning("Cycle %s: on_close rejected (%r)", self.target_id, result)

    def _on_writer_done(self, op: str, ok: bool, result: Any) -> None:
        if ok and result:
            return
        with self._lock:
            if self._disposed:
                return
        log.warning("Cycle %s: %s rejected (%r)", self.target_id, op, result)

    # ------------------------------------------------------------------ #
    # ВСПОМОГАТЕЛЬНЫЕ
    # ------------------------------------------------------------------ #
    def _trace(self, msg: str) -> None:
        if not self._trace_events:
            return
        tid = str(self.target_id)
        short = tid if len(tid) <= 40 else f"[...]{tid[-40:]}"
        log.debug("Cycle %s: %s", short, msg)
