# cyclehub/ingest/rules_loader.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from cyclehub.core.validate_cfg import validate_cycles_cfg
from cyclehub.ingest.rules.types import CYCLE_PRESET_KEY, CycleRuleConfig, ObjectMeta


@dataclass
class CyclesFile:
    """Разобранный data/cycles.yaml."""
    cycles: List[CycleRuleConfig] = field(default_factory=list)
    meta: Dict[str, ObjectMeta] = field(default_factory=dict)


def _opt_str(v: Any):
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _as_bool(v: Any, default: bool = True) -> bool:
    if v is None:
        return default
    if isinstance(v, str):
        return v.strip().lower() == "true"
    return bool(v)


def _parse_cycle(d: Dict[str, Any]) -> CycleRuleConfig:
    return CycleRuleConfig(
        target_id=str(d["target_id"]).strip(),
        period=float(d["period"]),
        min_elapsed_s=float(d.get("min_elapsed_s", 0) or 0),
        preset_key=_opt_str(d.get("preset_key")) or CYCLE_PRESET_KEY,
        preset_id=_opt_str(d.get("preset_id")),
        name=_opt_str(d.get("name")),
        unit=_opt_str(d.get("unit")),
        enabled=_as_bool(d.get("enabled"), True),
        heartbeat_s=float(d.get("heartbeat_s", 60) or 0),
        description=_opt_str(d.get("description")),
    )


def parse_cycles(data: Dict[str, Any]) -> CyclesFile:
    """Проверить и разобрать уже загруженный YAML. ValueError: если кривой."""
    data = data or {}
    validate_cycles_cfg(data)

    meta: Dict[str, ObjectMeta] = {}
    for tid, m in (data.get("meta") or {}).items():
        meta[str(tid)] = ObjectMeta(name=_opt_str(m.get("name")), unit=_opt_str(m.get("unit")))

    cycles = [_parse_cycle(c) for c in (data.get("cycles") or [])]
    return CyclesFile(cycles=cycles, meta=meta)


def load_cycles_from_yaml(path: str | Path) -> CyclesFile:
    """Нет файла: пустой набор правил."""
    fp = Path(path)
    if not fp.exists():
        return CyclesFile()
    with open(fp, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return parse_cycles(data)

