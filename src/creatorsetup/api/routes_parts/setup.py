from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from creatorsetup.api.errors import ApiError
from creatorsetup.api.routes_parts.common import _machine, _session_body
from creatorsetup.api.schemas import (
    CreateAuthorityRequest,
    CreateCollectionRequest,
    CreateTreeRequest,
    SelectNetworkRequest,
)
from creatorsetup.config import NETWORKS, explorer_url, normalize_network
from creatorsetup.export import artifact_filename, download_artifact

router = APIRouter()

Json = Dict[str, Any]

_KNOWN_NETWORKS = set(NETWORKS) | {"mainnet", "main", "localnet", "memory"}


@router.get("/setup")
def get_setup(request: Request) -> Json:
    m = _machine(request)
    out = _session_body(m.session, m)
    out["explorer"] = {k: explorer_url(sig, m.cfg.network) for k, sig in m.session.tx_signatures.items()}
    return out


@router.post("/setup/network")
def select_network(body: SelectNetworkRequest, request: Request) -> Json:
    raw = (body.network or "").strip().lower()
    if raw not in _KNOWN_NETWORKS:
        raise ApiError.bad_request("unknown_network", f"Unknown network: {body.network}", {"allowed": list(NETWORKS)})
    net = normalize_network(raw)
    m = _machine(request)
    return _session_body(m.select_network(net), m)


@router.post("/setup/check")
def check_network(request: Request) -> Json:
    m = _machine(request)
    m.check_network()
    return _session_body(m.session, m)


@router.post("/setup/connect")
def connect(request: Request) -> Json:
    m = _machine(request)
    return _session_body(m.connect(), m)


@router.post("/setup/disconnect")
def disconnect(request: Request) -> Json:
    m = _machine(request)
    return _session_body(m.disconnect(), m)


@router.post("/setup/authority")
def create_authority(body: CreateAuthorityRequest, request: Request) -> Json:
    m = _machine(request)
    s = m.create_authority(name=body.name, fee_vault=body.fee_vault, fee_percent=body.fee_percent)
    return _session_body(s, m)


@router.post("/setup/collection")
def create_collection(body: CreateCollectionRequest, request: Request) -> Json:
    m = _machine(request)
    return _session_body(m.create_collection(name=body.name, uri=body.uri), m)


@router.post("/setup/tree")
def create_tree(body: CreateTreeRequest, request: Request) -> Json:
    m = _machine(request)
    return _session_body(m.create_tree(preset_id=body.preset_id), m)


@router.post("/setup/verify")
def verify(request: Request) -> Json:
    m = _machine(request)
    return _session_body(m.verify(), m)


@router.post("/setup/validate")
def validate(request: Request) -> Json:
    m = _machine(request)
    return _session_body(m.validate(), m)


@router.post("/setup/reset")
def reset(request: Request) -> Json:
    m = _machine(request)
    return _session_body(m.reset(), m)


def _require_config(request: Request) -> Json:
    cfg = _machine(request).exported_config()
    if cfg is None:
        raise ApiError.not_found("not_complete", "Setup is not complete; no configuration to export yet")
    return cfg


@router.get("/setup/config")
def get_config(request: Request) -> Json:
    return {"ok": True, "config": _require_config(request)}


@router.get("/setup/config/download")
def download_config(request: Request) -> JSONResponse:
    cfg = _require_config(request)
    now = datetime.now(timezone.utc)
    filename = artifact_filename(int(now.timestamp() * 1000))
    return JSONResponse(
        content=download_artifact(cfg, now=now),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
