# cyclehub/ingest/api/cycles_api.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from cyclehub.ingest.rules.registry import RuleRegistry
from cyclehub.ingest.rules.repositories import InMemoryMessageStore
from cyclehub.ingest.rules.types import ActionType
from cyclehub.ingest.runtime import context_instance, engine_instance

router = APIRouter(prefix="/api/cycles", tags=["cycles"])


class ResetDTO(BaseModel):
    """Кто сбрасывает (попадёт в actor у «причина устранена»)."""
    actor: Optional[str] = None


def _registry() -> RuleRegistry:
    reg = engine_instance()
    if reg is None:
        raise HTTPException(500, "Cycles engine is not initialized")
    return reg


def _get_rule(target_id: str):
    rule = _registry().get(target_id)
    if rule is None:
        raise HTTPException(404, f"cycle '{target_id}' not found")
    return rule


@router.get("")
def list_cycles() -> List[Dict[str, Any]]:
    return [s.to_dict() for s in _registry().snapshot()]


@router.get("/completions")
def list_completions(limit: int = 100, ref: Optional[str] = None) -> List[Dict[str, Any]]:
    """Журнал «причина устранена» (есть только у локального хранилища, без mqtt)."""
    ctx = context_instance()
    if ctx is None:
        raise HTTPException(500, "Cycles engine is not initialized")
    store = ctx.message_store
    if not isinstance(store, InMemoryMessageStore):
        raise HTTPException(404, "completion journal is not kept by this message store")
    return [
        {"ref": e.ref, "reason": e.reason, "at": e.at.isoformat(), "actor": e.actor}
        for e in store.list_recent(limit=limit, ref=ref)
    ]


@router.get("/{target_id}")
def get_cycle(target_id: str) -> Dict[str, Any]:
    return _get_rule(target_id).snapshot().to_dict()


@router.post("/{target_id}/close")
def close_cycle(target_id: str) -> Dict[str, Any]:
    """Как если бы над сообщением выполнили close: штатный сброс, без «причина устранена»."""
    rule = _get_rule(target_id)
    handled = _registry().on_action(rule.ref, ActionType.CLOSE.value)
    if not handled:
        raise HTTPException(409, f"cycle '{target_id}' did not accept close")
    return {"ok": True, "cycle": rule.snapshot().to_dict()}


@router.post("/{target_id}/reset")
def reset_cycle(target_id: str, body: Optional[ResetDTO] = None) -> Dict[str, Any]:
    """Внешний сброс: то же, что запись subCounter = 0 с ack=false."""
    rule = _get_rule(target_id)
    actor = ((body.actor if body else None) or "").strip() or "api"
    rule.on_override_write(0, ack=False, from_=actor)
    return {"ok": True, "cycle": rule.snapshot().to_dict()}


@router.post("/reload")
def reload_cycles() -> Dict[str, Any]:
    ctx = context_instance()
    if ctx is None:
        raise HTTPException(500, "Cycles engine is not initialized")
    try:
        result = ctx.reload()
    except ValueError as e:
        raise HTTPException(400, f"cycles.yaml is invalid: {e}")
    return {"ok": True, **result, "cycles_count": len(ctx.registry.list_rules())}
