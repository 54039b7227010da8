from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from creatorsetup.api.routes_parts.common import _runtime
from creatorsetup.api.schemas import UpdateFeeRequest, UpdateFeeVaultRequest
from creatorsetup.config import explorer_url

router = APIRouter()

Json = Dict[str, Any]


@router.get("/manage")
def manager_view(request: Request) -> Json:
    """Authority info plus best-effort discovery of associated collections and trees."""
    view = _runtime(request).mutations.manager_view()
    return {"ok": True, **view}


@router.post("/manage/fee-vault")
def update_fee_vault(body: UpdateFeeVaultRequest, request: Request) -> Json:
    rt = _runtime(request)
    sig = rt.mutations.update_fee_vault(body.fee_vault)
    return {"ok": True, "signature": sig, "explorer": explorer_url(sig, rt.cfg.network)}


@router.post("/manage/fee")
def update_fee(body: UpdateFeeRequest, request: Request) -> Json:
    rt = _runtime(request)
    sig = rt.mutations.update_fee(body.fee_percent)
    return {"ok": True, "signature": sig, "explorer": explorer_url(sig, rt.cfg.network)}
