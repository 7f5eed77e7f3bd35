# cyclehub/services/mqtt_bridge.py
from __future__ import annotations
import json, queue, threading
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, Iterable, Mapping
import paho.mqtt.client as mqtt

import logging

log = logging.getLogger("mqtt")

# handler(topic, parsed) -> bool; parsed = {"value": ..., "ack": ..., "from": ...}
TopicHandler = Callable[[str, Dict[str, Any]], bool]

_STOP = object()


def parse_payload(raw: bytes | str) -> Dict[str, Any]:
    """
    Принимаем как {"value": "1", "ack": false, "from": "ui"}, так и просто "1".
    """
    if isinstance(raw, bytes):
        s = raw.decode("utf-8", errors="ignore")
    else:
        s = str(raw)

    out: Dict[str, Any] = {"value": s, "ack": None, "from": None}
    try:
        j = json.loads(s)
    except ValueError:
        return out

    if isinstance(j, dict):
        if "value" in j:
            out["value"] = j["value"]
        elif "val" in j:
            out["value"] = j["val"]
        else:
            out["value"] = None
        ack = j.get("ack")
        out["ack"] = ack if isinstance(ack, bool) else None
        src = j.get("from")
        out["from"] = str(src) if src is not None else None
        # всё остальное (type, payload для действий): как есть
        for k, v in j.items():
            out.setdefault(k, v)
    else:
        out["value"] = j
    return out


class MqttBridge:
    def __init__(self, conf: dict):
        self.conf = conf
        self.client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=conf.get("client_id", ""),
            protocol=mqtt.MQTTv311,
        )

        self._handlers: Dict[str, TopicHandler] = {}  # subscription (может быть с +/#) -> handler
        self._lock = threading.RLock()

        def _on_connect(c, u, flags, rc, properties=None):
            log.info(f"[mqtt] connected rc={rc}")
            # после реконнекта: заново подпишемся на все темы
            with self._lock:
                subs = list(self._handlers.keys())
            for t in subs:
                try:
                    self.client.subscribe(t, qos=self.qos)
                except Exception as e:  # noqa: BLE001
                    log.warning(f"[mqtt] resubscribe failed for {t}: {e}")

        self.client.on_connect = _on_connect
        self.client.on_message = self._on_message  # см. метод ниже

        self.base = conf.get("base_topic", "/cyclehub").rstrip("/")
        if not self.base.startswith("/"): self.base = "/" + self.base
        self.qos = int(conf.get("qos", 0)); self.retain = bool(conf.get("retain", False))
        self.out_queue: "queue.Queue[Any]" = queue.Queue()
        self._publisher: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ #
    # ПОДКЛЮЧЕНИЕ
    # ------------------------------------------------------------------ #
    def connect(self):
        # не валим процесс, если брокер недоступен
        try:
            # асинхронное подключение + автоповтор внутри paho
            self.client.connect_async(self.conf["host"], int(self.conf.get("port", 1883)))
        except Exception as e:  # noqa: BLE001
            log.error(f"[mqtt] initial connect failed: {e}")
        self.client.loop_start()  # неблокирующий цикл
        self._publisher = threading.Thread(target=self._publisher_loop, name="mqtt-publisher", daemon=True)
        self._publisher.start()

    def close(self, timeout: float = 2.0) -> None:
        th = self._publisher
        if th is not None:
            self.out_queue.put(_STOP)
            th.join(timeout=timeout)
            self._publisher = None
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as e:  # noqa: BLE001
            log.debug(f"[mqtt] disconnect: {e}")

    # ------------------------------------------------------------------ #
    # ТОПИКИ
    # ------------------------------------------------------------------ #
    def topic(self, topic_like: str) -> str:
        """Относительный топик префиксуем base_topic."""
        if topic_like.startswith("/"):
            return topic_like
        return f"{self.base}/{topic_like}".replace("//", "/")

    def state_topic(self, state_id: str) -> str:
        return self.topic(f"states/{state_id}")

    def message_topic(self, ref: str, op: str) -> str:
        return self.topic(f"messages/{ref}/{op}")

    def publish(self, topic_like: str, payload: Any, retain: Optional[bool] = None) -> None:
        """Положить публикацию в очередь; отправит поток publisher."""
        topic = self.topic(topic_like)
        self.out_queue.put((topic, payload, self.retain if retain is None else bool(retain)))

    def register_on_topic(self, topic: str, handler: TopicHandler) -> None:
        """
        Регистрируем обработчик входящих сообщений.
        topic может быть относительным: тогда префиксуем base_topic.
        Допустимы маски mqtt (+ и #).
        """
        topic = self.topic(topic)
        with self._lock:
            self._handlers[topic] = handler
        try:
            self.client.subscribe(topic, qos=self.qos)
            log.info(f"[mqtt] subscribed: {topic}")
        except Exception as e:  # noqa: BLE001
            # если ещё не подключены: подпишемся в on_connect
            log.debug(f"[mqtt] subscribe deferred for {topic}: {e}")

    def unregister_on_topic(self, topic: str) -> None:
        topic = self.topic(topic)
        with self._lock:
            self._handlers.pop(topic, None)
        try:
            self.client.unsubscribe(topic)
            log.info(f"[mqtt] unsubscribed: {topic}")
        except Exception as e:  # noqa: BLE001
            log.debug(f"[mqtt] unsubscribe {topic}: {e}")

    def subscribed_topics(self) -> Iterable[str]:
        with self._lock:
            return list(self._handlers.keys())

    def sync_states(
        self,
        state_ids: Iterable[str],
        on_state: Callable[[str, Any, Optional[bool], Optional[str]], bool],
        explicit: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Подписаться ровно на нужные id состояний.
          explicit: {топик: id} из конфига (сырые счётчики устройств)
          остальные id слушаем на <base>/states/<id>
        """
        explicit = dict(explicit or {})
        by_id: Dict[str, str] = {}
        for t, sid in explicit.items():
            by_id.setdefault(sid, self.topic(t))

        wanted: Dict[str, str] = {}
        for sid in state_ids:
            wanted[by_id.get(sid) or self.state_topic(sid)] = sid

        with self._lock:
            current = {t for t, h in self._handlers.items() if getattr(h, "_state_route", False)}

        for t in current - set(wanted):
            self.unregister_on_topic(t)
        for t, sid in wanted.items():
            if t in current:
                continue
            self.register_on_topic(t, self._make_state_handler(sid, on_state))

    @staticmethod
    def _make_state_handler(state_id: str, on_state) -> TopicHandler:
        def _handler(topic: str, parsed: Dict[str, Any]) -> bool:
            return bool(on_state(state_id, parsed.get("value"), parsed.get("ack"), parsed.get("from")))
        _handler._state_route = True  # type: ignore[attr-defined]
        return _handler

    # ------------------------------------------------------------------ #
    # ВНУТРЕННЕЕ
    # ------------------------------------------------------------------ #
    def _on_message(self, client, userdata, msg):
        topic = msg.topic
        parsed = parse_payload(msg.payload)

        with self._lock:
            handlers = [h for sub, h in self._handlers.items() if mqtt.topic_matches_sub(sub, topic)]
        for handler in handlers:
            try:
                ok = handler(topic, parsed)
                log.debug(f"[mqtt] handler for {topic} returned {ok}")
            except Exception as e:  # noqa: BLE001
                log.error(f"[mqtt] handler error for {topic}: {e}")

    def _publisher_loop(self):
        while True:
            item = self.out_queue.get()
            if item is _STOP:
                return
            topic, payload, retain = item
            try:
                if isinstance(payload, (dict, list)):
                    data = json.dumps(payload, ensure_ascii=False, default=_json_default)
                elif payload is None:
                    data = ""
                else:
                    data = str(payload)
                self.client.publish(topic, data, qos=self.qos, retain=retain)
            except Exception as e:  # noqa: BLE001
                log.error(f"publish error: {e}")


def _json_default(o: Any) -> Any:
    if isinstance(o, datetime):
        if o.tzinfo is None:
            o = o.replace(tzinfo=timezone.utc)
        return o.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    raise TypeError(f"not JSON serializable: {type(o).__name__}")
