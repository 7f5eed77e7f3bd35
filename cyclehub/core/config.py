# cyclehub/core/config.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import Field, PrivateAttr
from pydantic_settings import BaseSettings

from cyclehub.core.validate_cfg import validate_cfg


class Settings(BaseSettings):
    # путь к основному YAML (можно переопределить переменной окружения CONFIG_FILE)
    config_file: str = Field(default="config.yaml", validation_alias="CONFIG_FILE")

    # путь к файлу правил-циклов (переменная окружения CYCLES_FILE)
    cycles_file: str = Field(default="data/cycles.yaml", validation_alias="CYCLES_FILE")

    # внутреннее хранилище загруженного YAML
    _cfg: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _config_path: Path | None = PrivateAttr(default=None)

    # ───────── пути ─────────
    @property
    def config_path(self) -> Path:
        if self._config_path is None:
            p = Path(self.config_file)
            if not p.is_absolute():
                p = Path.cwd() / p
            self._config_path = p
        return self._config_path

    @property
    def cycles_path(self) -> Path:
        p = Path(self.cycles_file)
        if not p.is_absolute():
            p = Path.cwd() / p
        return p

    # ───────── YAML cfg ─────────
    @property
    def cfg(self) -> Dict[str, Any]:
        return self._cfg

    def get_cfg(self) -> Dict[str, Any]:
        return self._cfg

    def set_cfg(self, data: Dict[str, Any]) -> None:
        validate_cfg(data or {})
        self._cfg = data or {}

    def load_yaml_config(self) -> None:
        p = self.config_path
        if p.exists():
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            validate_cfg(data)  # выбросит ValueError, если что-то не так
            self._cfg = data
        else:
            self._cfg = {}

    # ───────── удобные секции ─────────
    @property
    def mqtt(self) -> Dict[str, Any]:
        return self._cfg.get("mqtt", {}) or {}

    @property
    def engine(self) -> Dict[str, Any]:
        return self._cfg.get("engine", {}) or {}

    @property
    def debug(self) -> Dict[str, Any]:
        return self._cfg.get("debug", {}) or {}

    @property
    def db_url(self) -> str:
        return (self._cfg.get("db", {}) or {}).get("url", "sqlite:///./data/cycles.db")

    @property
    def namespace(self) -> str:
        return str(self.engine.get("namespace", "cyclehub.0"))

    @property
    def tick_interval_s(self) -> float:
        return float(self.engine.get("tick_interval_s", 60.0))

    @property
    def storage_kind(self) -> str:
        return str(self.engine.get("storage", "sql"))

    @property
    def trace_events(self) -> bool:
        return bool(self.debug.get("trace_events", False))


settings = Settings()
