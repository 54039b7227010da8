# src/creatorsetup/api/routes_public.py
from __future__ import annotations

from fastapi import APIRouter

from creatorsetup.api.routes_parts.health import router as health_router
from creatorsetup.api.routes_parts.manage import router as manage_router
from creatorsetup.api.routes_parts.markets import router as markets_router
from creatorsetup.api.routes_parts.presets import router as presets_router
from creatorsetup.api.routes_parts.setup import router as setup_router

public_router = APIRouter()

public_router.include_router(health_router, prefix="/v1", tags=["health"])
public_router.include_router(presets_router, prefix="/v1", tags=["presets"])
public_router.include_router(setup_router, prefix="/v1", tags=["setup"])
public_router.include_router(manage_router, prefix="/v1", tags=["manage"])
public_router.include_router(markets_router, prefix="/v1", tags=["markets"])
