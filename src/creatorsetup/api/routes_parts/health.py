from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from creatorsetup.api.routes_parts.common import _runtime

router = APIRouter()

Json = Dict[str, Any]


@router.get("/health")
def health(request: Request) -> Json:
    """Liveness only; never touches the ledger."""
    rt = _runtime(request)
    return {
        "ok": True,
        "service": "creatorsetup",
        "network": rt.cfg.network,
        "program_id": rt.cfg.program_id,
        "wallet_connected": rt.wallet.identity is not None,
    }
