from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from creatorsetup.errors import (
    KIND_CONFIRMATION,
    KIND_LOCAL,
    KIND_NETWORK,
    KIND_SIGNER,
    KIND_SIMULATION,
    KIND_STATE,
    KIND_SUBMISSION,
    KIND_VALIDATION,
    KIND_VERIFICATION,
    ConfirmTimeout,
    ResourceMissing,
    SetupError,
)


@dataclass(frozen=True, slots=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def conflict(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(409, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    def to_json(self) -> Dict[str, Any]:
        return {"ok": False, "error": {"code": self.code, "message": self.message, "details": self.details}}


_STATUS_BY_KIND = {
    KIND_LOCAL: 400,
    KIND_SIGNER: 401,
    KIND_STATE: 409,
    KIND_SIMULATION: 422,
    KIND_VERIFICATION: 422,
    KIND_VALIDATION: 422,
    KIND_NETWORK: 502,
    KIND_SUBMISSION: 502,
    KIND_CONFIRMATION: 422,
}


def status_for(err: SetupError) -> int:
    # A timeout leaves the outcome unknown; a confirmed failure is a definite rejection.
    if isinstance(err, ConfirmTimeout):
        return 504
    if isinstance(err, ResourceMissing) and err.resource in {"authority", "market"}:
        return 404
    return _STATUS_BY_KIND.get(err.kind, 500)


def setup_error_body(err: SetupError) -> Dict[str, Any]:
    return {"ok": False, "error": err.to_json()}
