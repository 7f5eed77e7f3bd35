# cyclehub/core/validate_cfg.py
from __future__ import annotations
from typing import Dict, Any, Optional, Set

ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


def _as_int(v, name, min_: Optional[int] = None, max_: Optional[int] = None) -> int:
    if isinstance(v, bool):
        raise ValueError(f"{name}: ожидается целое, получено {v!r}")
    try:
        iv = int(v)
    except (TypeError, ValueError):
        raise ValueError(f"{name}: ожидается целое, получено {v!r}")
    if min_ is not None and iv < min_:
        raise ValueError(f"{name}: должно быть ≥ {min_} (получено {iv})")
    if max_ is not None and iv > max_:
        raise ValueError(f"{name}: должно быть ≤ {max_} (получено {iv})")
    return iv


def _as_float(v, name, min_: Optional[float] = None, strict_min: bool = False) -> float:
    if isinstance(v, bool):
        raise ValueError(f"{name}: ожидается число, получено {v!r}")
    try:
        fv = float(v)
    except (TypeError, ValueError):
        raise ValueError(f"{name}: ожидается число, получено {v!r}")
    if fv != fv or fv in (float("inf"), float("-inf")):
        raise ValueError(f"{name}: ожидается конечное число, получено {v!r}")
    if min_ is not None:
        if strict_min and fv <= min_:
            raise ValueError(f"{name}: должно быть > {min_} (получено {fv})")
        if not strict_min and fv < min_:
            raise ValueError(f"{name}: должно быть ≥ {min_} (получено {fv})")
    return fv


def _as_bool(v, name) -> bool:
    if isinstance(v, bool):
        return v
    # допускаем 'true'/'false'/1/0 из yaml
    if isinstance(v, (int, float)) and v in (0, 1):
        return bool(v)
    if isinstance(v, str) and v.lower() in ("true", "false"):
        return v.lower() == "true"
    raise ValueError(f"{name}: должен быть true/false")


def _as_opt_str(v, name) -> None:
    if v is not None and not isinstance(v, str):
        raise ValueError(f"{name}: должен быть строкой")


def validate_cfg(cfg: Dict[str, Any]) -> None:
    """Бросает ValueError с понятным текстом, если основной конфиг некорректен."""
    if not isinstance(cfg, dict):
        raise ValueError("корневой YAML должен быть объектом")

    # ─── mqtt ───
    mqtt = cfg.get("mqtt", {})
    if not isinstance(mqtt, dict):
        raise ValueError("mqtt: должен быть объектом")
    enabled = _as_bool(mqtt["enabled"], "mqtt.enabled") if "enabled" in mqtt else True
    if mqtt and enabled:
        host = str(mqtt.get("host", "")).strip()
        if not host:
            raise ValueError("mqtt.host: не должен быть пустым")
    _as_int(mqtt.get("port", 1883), "mqtt.port", 1, 65535)
    _as_int(mqtt.get("qos", 0), "mqtt.qos", 0, 2)
    if "retain" in mqtt:
        _as_bool(mqtt["retain"], "mqtt.retain")
    _as_opt_str(mqtt.get("base_topic"), "mqtt.base_topic")
    topics = mqtt.get("topics", {})
    if topics:
        if not isinstance(topics, dict):
            raise ValueError("mqtt.topics: должен быть объектом {топик: id состояния}")
        for t, sid in topics.items():
            if not isinstance(t, str) or not t.strip():
                raise ValueError("mqtt.topics: ключ должен быть непустой строкой")
            if not isinstance(sid, str) or not sid.strip():
                raise ValueError(f"mqtt.topics[{t}]: id состояния должен быть непустой строкой")

    # ─── db ───
    db = cfg.get("db", {})
    if not isinstance(db, dict):
        raise ValueError("db: должен быть объектом")
    if "url" in db:
        url = str(db.get("url") or "").strip()
        if not url:
            raise ValueError("db.url: не должен быть пустым (например sqlite:///./data/cycles.db)")

    # ─── engine ───
    eng = cfg.get("engine", {})
    if eng:
        if not isinstance(eng, dict):
            raise ValueError("engine: должен быть объектом")
        ns = eng.get("namespace", "cyclehub.0")
        if not isinstance(ns, str) or not ns.strip():
            raise ValueError("engine.namespace: должен быть непустой строкой")
        if "tick_interval_s" in eng:
            _as_float(eng["tick_interval_s"], "engine.tick_interval_s", 0)
        if "storage" in eng and eng["storage"] not in ("sql", "memory"):
            raise ValueError("engine.storage: допустимо sql или memory")

    # ─── debug ───
    dbg = cfg.get("debug", {})
    if dbg:
        if not isinstance(dbg, dict):
            raise ValueError("debug: должен быть объектом")
        if "trace_events" in dbg:
            _as_bool(dbg["trace_events"], "debug.trace_events")
        if "log_level" in dbg and str(dbg["log_level"]).upper() not in ALLOWED_LOG_LEVELS:
            raise ValueError(f"debug.log_level: допустимо {sorted(ALLOWED_LOG_LEVELS)}")


def validate_cycles_cfg(data: Dict[str, Any]) -> None:
    """
    Проверка файла правил (data/cycles.yaml):

      meta:
        <target_id>: {name: ..., unit: ...}
      cycles:
        - target_id: ...
          period: 2000
          ...
    """
    if not isinstance(data, dict):
        raise ValueError("корневой YAML правил должен быть объектом")

    meta = data.get("meta", {}) or {}
    if not isinstance(meta, dict):
        raise ValueError("meta: должен быть объектом {id: {name, unit}}")
    for tid, m in meta.items():
        if not isinstance(m, dict):
            raise ValueError(f"meta[{tid}]: должен быть объектом")
        _as_opt_str(m.get("name"), f"meta[{tid}].name")
        _as_opt_str(m.get("unit"), f"meta[{tid}].unit")

    items = data.get("cycles")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise ValueError("cycles: должен быть списком")

    seen: Set[str] = set()
    for i, c in enumerate(items):
        p = f"cycles[{i}]"
        if not isinstance(c, dict):
            raise ValueError(f"{p}: должен быть объектом")
        tid = c.get("target_id")
        if not isinstance(tid, str) or not tid.strip():
            raise ValueError(f"{p}.target_id: обязателен")
        tid = tid.strip()
        if tid in seen:
            raise ValueError(f"{p}.target_id: дубликат '{tid}'")
        seen.add(tid)

        if "period" not in c:
            raise ValueError(f"{p}.period: обязателен")
        _as_float(c["period"], f"{p}.period", 0, strict_min=True)
        if "min_elapsed_s" in c:
            _as_float(c["min_elapsed_s"], f"{p}.min_elapsed_s", 0)
        if "heartbeat_s" in c:
            _as_float(c["heartbeat_s"], f"{p}.heartbeat_s", 0)
        if "enabled" in c:
            _as_bool(c["enabled"], f"{p}.enabled")
        for key in ("preset_key", "preset_id", "name", "unit", "description"):
            _as_opt_str(c.get(key), f"{p}.{key}")
