# cyclehub/ingest/rules/outbox.py
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

log = logging.getLogger("cycles")

DoneCallback = Callable[[bool, Any], None]
# сигнатура: on_done(ok, result_or_exception)


@dataclass
class _Job:
    label: str
    fn: Callable[[], Any]
    on_done: Optional[DoneCallback] = None


_STOP = object()


class Outbox:
    """
    Очередь отложенных вызовов: запись счётчиков, вызовы писателя сообщений.

    Движок правил никогда не ждёт эти вызовы: кладёт задачу и идёт дальше.
    Задачи выполняются в одном фоновом потоке строго в порядке постановки.

    flush(): явная точка «дождаться, пока всё записалось»
    (для тестов и для аккуратного выключения).
    """

    def __init__(self, name: str = "cycles-outbox") -> None:
        self._name = name
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending = 0
        self._thread: Optional[threading.Thread] = None
        self._stopped = False

    # ------------------------------------------------------------------ #
    # ЖИЗНЕННЫЙ ЦИКЛ
    # ------------------------------------------------------------------ #
    def start(self) -> None:
        with self._lock:
            self._start_unlocked()

    def _start_unlocked(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopped = False
        self._thread = threading.Thread(target=self._worker_loop, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Доделать то, что уже в очереди, и остановить поток."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            th = self._thread
        if th is None:
            return
        self._queue.put(_STOP)
        th.join(timeout=timeout)
        if th.is_alive():
            log.warning("%s: worker did not stop in %.1fs", self._name, timeout)

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    # ------------------------------------------------------------------ #
    # ПОСТАНОВКА / ОЖИДАНИЕ
    # ------------------------------------------------------------------ #
    def submit(self, label: str, fn: Callable[[], Any], on_done: Optional[DoneCallback] = None) -> bool:
        """Положить задачу. False: outbox уже остановлен, задача отброшена."""
        with self._lock:
            if self._stopped:
                log.debug("%s: drop '%s' (stopped)", self._name, label)
                return False
            self._start_unlocked()
            self._pending += 1
        self._queue.put(_Job(label=label, fn=fn, on_done=on_done))
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Дождаться пустой очереди. True: дождались, False: вышел таймаут."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    # ------------------------------------------------------------------ #
    # ВНУТРЕННЕЕ
    # ------------------------------------------------------------------ #
    def _worker_loop(self) -> None:
        while True:
            job = self._queue.get()
            if job is _STOP:
                return
            try:
                self._run(job)
            finally:
                with self._idle:
                    self._pending -= 1
                    if self._pending == 0:
                        self._idle.notify_all()

    def _run(self, job: _Job) -> None:
        ok = True
        try:
            result: Any = job.fn()
        except Exception as exc:  # noqa: BLE001
            ok = False
            result = exc
            log.error("%s: '%s' failed: %s", self._name, job.label, exc)

        if job.on_done is None:
            return
        try:
            job.on_done(ok, result)
        except Exception:  # noqa: BLE001
            log.exception("%s: on_done for '%s' failed", self._name, job.label)
