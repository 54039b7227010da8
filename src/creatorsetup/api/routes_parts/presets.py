from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter

from creatorsetup.presets import TREE_PRESETS, default_preset, format_cost

router = APIRouter()

Json = Dict[str, Any]


def _preset_row(p) -> Json:
    row = p.to_json()
    row["estimated_cost_label"] = f"~{format_cost(p.estimated_cost)} SOL"
    return row


@router.get("/presets")
def list_presets() -> Json:
    return {"ok": True, "default": default_preset().id, "presets": [_preset_row(p) for p in TREE_PRESETS]}
