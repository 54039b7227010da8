from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from creatorsetup.api.errors import ApiError, setup_error_body, status_for
from creatorsetup.api.routes_public import public_router
from creatorsetup.api.runtime import Runtime
from creatorsetup.api.runtime import build_runtime as _build_runtime
from creatorsetup.api.security import RequestSizeLimitMiddleware
from creatorsetup.api.structured_logging import RequestLogMiddleware
from creatorsetup.config import NetworkConfig, load_network_config
from creatorsetup.errors import SetupError
from creatorsetup.logging_utils import configure_structured_logging, log_event

log = logging.getLogger("creatorsetup.http")


def build_runtime(cfg: Optional[NetworkConfig] = None) -> Runtime:
    """Build the wallet session, ledgers and provisioning machine.

    This wrapper exists so tests can monkeypatch `creatorsetup.api.app.build_runtime`
    without reaching into the runtime module.
    """
    return _build_runtime(cfg)


def _parse_cors_origins() -> List[str]:
    """Parse CORS origins with production-safe defaults.

    Policy:
      - If CREATORSETUP_CORS_ORIGINS is unset/empty -> CORS disabled
      - Wildcard "*" is rejected in CREATORSETUP_MODE=prod
      - In non-prod modes, "*" is allowed for convenience
    """
    raw = os.environ.get("CREATORSETUP_CORS_ORIGINS", "").strip()
    mode = os.environ.get("CREATORSETUP_MODE", "prod").strip().lower()

    if not raw:
        return []

    origins = [o.strip() for o in raw.split(",") if o.strip()]

    if "*" in origins:
        if mode == "prod":
            raise RuntimeError(
                "Unsafe CORS configuration: wildcard '*' not allowed in production. "
                "Set explicit origins in CREATORSETUP_CORS_ORIGINS."
            )
        return ["*"]

    return origins


def create_app(*, boot_runtime: bool = True) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): load the network config and wallet, attach app.state.runtime
      - False: no runtime attached; routes needing it answer 500 not_ready
    """
    configure_structured_logging()
    cfg = load_network_config()

    if cfg.mode == "prod":
        app = FastAPI(title="Market Creator Setup API", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="Market Creator Setup API")

    app.state.cfg = cfg
    app.state.runtime = build_runtime(cfg) if boot_runtime else None

    @app.exception_handler(SetupError)
    async def _setup_error(request: Request, exc: SetupError) -> JSONResponse:
        status = status_for(exc)
        log_event(
            log,
            "request_failed",
            level=logging.WARNING,
            path=str(request.url.path or ""),
            status=status,
            code=exc.code,
            kind=exc.kind,
            signature=exc.signature,
        )
        return JSONResponse(status_code=status, content=setup_error_body(exc))

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_json())

    # --- Middleware ---
    # Outermost last: logging sees every response, including 413s.
    app.add_middleware(RequestSizeLimitMiddleware)
    app.add_middleware(RequestLogMiddleware)

    cors_origins = _parse_cors_origins()
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type"],
        )

    app.include_router(public_router)
    return app
