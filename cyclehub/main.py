# cyclehub/main.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Response

from cyclehub.core.config import settings

# Роутеры API
from cyclehub.ingest.api.cycles_api import router as cycles_router

# Сервисы
from cyclehub.services.mqtt_bridge import MqttBridge
from cyclehub.ingest.runtime import ensure_started, stop_if_running


# ─────────────────────────────────────────────────────────────────────────────
# Приложение
# ─────────────────────────────────────────────────────────────────────────────
app = FastAPI(title="cyclehub")

app.include_router(cycles_router)


@app.get("/api/health")
def health():
    return {"ok": True}


# ─────────────────────────────────────────────────────────────────────────────
# Старт сервисов на поднятии приложения
# ─────────────────────────────────────────────────────────────────────────────
mqtt_bridge: MqttBridge | None = None


@app.on_event("startup")
def _startup():
    # 1) грузим YAML
    settings.load_yaml_config()

    if settings.trace_events:
        logging.getLogger("cycles").setLevel(logging.DEBUG)

    # 2) поднимаем MQTT (если включён)
    global mqtt_bridge
    mqtt_conf = settings.mqtt
    if mqtt_conf and mqtt_conf.get("enabled", True):
        mqtt_bridge = MqttBridge(mqtt_conf)
        try:
            mqtt_bridge.connect()
        except Exception as e:  # noqa: BLE001
            logging.getLogger("web").error("mqtt connect error (non-fatal): %s", e)

    # 3) движок циклов: БД, правила, подписки, тик
    ensure_started(settings=settings, mqtt_bridge=mqtt_bridge)

    app.state.mqtt_bridge = mqtt_bridge
    logging.getLogger("web").info("cyclehub ready")


@app.on_event("shutdown")
def _shutdown():
    stop_if_running()
    if mqtt_bridge is not None:
        mqtt_bridge.close()


@app.get("/.well-known/appspecific/com.chrome.devtools.json")
def _chrome_devtools_probe():
    # Глушим «пинг» от Chrome DevTools, чтобы не мусорил в логах
    return Response(status_code=204)
