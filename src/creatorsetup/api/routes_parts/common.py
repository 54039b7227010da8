from __future__ import annotations

from typing import Any, Dict

from fastapi import Request

from creatorsetup.api.errors import ApiError
from creatorsetup.api.runtime import Runtime
from creatorsetup.provisioning.machine import ProvisioningStateMachine
from creatorsetup.provisioning.session import ProvisioningSession

Json = Dict[str, Any]


def _runtime(request: Request) -> Runtime:
    rt = getattr(request.app.state, "runtime", None)
    if rt is None:
        raise ApiError.internal("not_ready", "runtime not attached to app.state", {})
    return rt


def _machine(request: Request) -> ProvisioningStateMachine:
    return _runtime(request).machine


def _session_body(session: ProvisioningSession, machine: ProvisioningStateMachine) -> Json:
    out: Json = {"ok": True, "session": session.to_json(), "busy": machine.busy}
    out["session"]["network_label"] = machine.cfg.label
    return out
