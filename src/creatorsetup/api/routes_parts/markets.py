from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from creatorsetup.api.routes_parts.common import _runtime
from creatorsetup.api.schemas import CreateMarketRequest, ResolveMarketRequest
from creatorsetup.config import explorer_url
from creatorsetup.mutations import MarketForm

router = APIRouter()

Json = Dict[str, Any]


@router.get("/markets")
def list_markets(request: Request) -> Json:
    markets = _runtime(request).mutations.list_markets()
    return {"ok": True, "markets": [m.to_json() for m in markets]}


@router.post("/markets")
def create_market(body: CreateMarketRequest, request: Request) -> Json:
    rt = _runtime(request)
    form = MarketForm(
        question=body.question,
        metadata_uri=body.metadata_uri,
        start_time=body.start_time,
        end_time=body.end_time,
        market_type=body.market_type,
        betting_start_time=body.betting_start_time,
        oracle_type=body.oracle_type,
        oracle_pubkey=body.oracle_pubkey,
        mint_choice=body.mint_choice,
        custom_mint=body.custom_mint,
    )
    sig, address = rt.mutations.create_market(form)
    return {"ok": True, "signature": sig, "market": address, "explorer": explorer_url(sig, rt.cfg.network)}


@router.post("/markets/{market_id}/resolve")
def resolve_market(market_id: int, body: ResolveMarketRequest, request: Request) -> Json:
    rt = _runtime(request)
    sig = rt.mutations.resolve_market(market_id, body.choice)
    return {"ok": True, "signature": sig, "explorer": explorer_url(sig, rt.cfg.network)}
