"""
AutoReach HTTP surface

FastAPI app exposing consent, origin policy, configuration, health and the
automation run. Every response uses the envelope

    {"success": true,  "data": ...}
    {"success": false, "error": "..."}

Callers are identified by a pluggable authenticator (default: the `X-User-Id`
header) and gated by their `Origin` header.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from ..engine import Engine
from ..errors import (
    AutomationError,
    ConsentCode,
    ConsentRejected,
    OriginRejected,
    ResourceExhaustion,
    ResourceNotFound,
)
from ..ops_logger import run_record
from ..pipeline.orchestrator import AUTOMATION_ACTION
from ..schemas import AutomationRequest

logger = logging.getLogger(__name__)

Authenticator = Callable[[Request], Optional[str]]

CONSENT_STATUS_CODES = {
    ConsentCode.NOT_FOUND: 404,
    ConsentCode.NOT_PENDING: 409,
    ConsentCode.EXPIRED: 410,
    ConsentCode.ACTION_NOT_ALLOWED: 400,
    ConsentCode.NO_VALID_PERMISSIONS: 400,
    ConsentCode.TOO_MANY_PENDING: 429,
}


def header_authenticator(request: Request) -> Optional[str]:
    user = request.headers.get("x-user-id", "").strip()
    return user or None


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _fail(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------

class ConsentRequestBody(BaseModel):
    action: str = AUTOMATION_ACTION
    permissions: List[str] = Field(default_factory=list, description="Permissions the client intends to ask for")
    client_id: Optional[str] = None


class GrantBody(BaseModel):
    permissions: Optional[List[str]] = None


class AutomationBody(BaseModel):
    url: str
    subject_name: str = ""
    auto_submit: bool = False
    contact_data: Dict[str, str] = Field(default_factory=dict)
    connection_id: Optional[str] = None


# ----------------------------------------------------------------------
# App factory
# ----------------------------------------------------------------------

def create_app(services: Engine, authenticator: Authenticator = header_authenticator) -> FastAPI:
    app = FastAPI(title="AutoReach", version="0.1.0")
    app.state.services = services

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        return _fail(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return _fail(400, f"invalid request: {exc.errors()[0].get('msg', 'validation failed')}")

    @app.exception_handler(AutomationError)
    async def _automation_error(request: Request, exc: AutomationError):
        if isinstance(exc, OriginRejected):
            return _fail(403, str(exc))
        if isinstance(exc, ConsentRejected):
            return _fail(CONSENT_STATUS_CODES.get(exc.code, 403), exc.code.value)
        if isinstance(exc, ResourceExhaustion):
            return _fail(503, str(exc))
        if isinstance(exc, ResourceNotFound):
            return _fail(404, str(exc))
        logger.error("unhandled engine error on %s: %s", request.url.path, exc)
        return _fail(500, str(exc))

    def current_user(request: Request) -> str:
        user_id = authenticator(request)
        if not user_id:
            raise HTTPException(status_code=401, detail="authentication required")
        return user_id

    def trusted_origin(request: Request) -> str:
        origin = request.headers.get("origin")
        if not origin:
            raise HTTPException(status_code=400, detail="Origin header is required")
        return services.origins.require(origin, request.headers.get("user-agent"))

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    @app.post("/consent/requests")
    def create_consent(
        body: ConsentRequestBody,
        request: Request,
        user_id: str = Depends(current_user),
        origin: str = Depends(trusted_origin),
    ):
        metadata = {
            "user_agent": request.headers.get("user-agent"),
            "ip": request.client.host if request.client else None,
            "client_id": body.client_id,
            "requested_permissions": body.permissions,
        }
        created = services.consent.create_consent_request(user_id, origin, body.action, metadata)
        return ok(created.model_dump(mode="json"))

    def _owned_request(request_id: str, user_id: str):
        found = services.consent.get_request(request_id)
        if found is None:
            raise ConsentRejected(ConsentCode.NOT_FOUND, "consent request not found")
        if found.user_id != user_id:
            raise HTTPException(status_code=403, detail="consent request belongs to another user")
        return found

    @app.post("/consent/requests/{request_id}/grant")
    def grant_consent(
        request_id: str,
        body: Optional[GrantBody] = None,
        user_id: str = Depends(current_user),
        origin: str = Depends(trusted_origin),
    ):
        _owned_request(request_id, user_id)
        grant = services.consent.grant_consent(request_id, body.permissions if body else None)
        return ok(grant.model_dump(mode="json"))

    @app.post("/consent/requests/{request_id}/deny")
    def deny_consent(
        request_id: str,
        user_id: str = Depends(current_user),
        origin: str = Depends(trusted_origin),
    ):
        _owned_request(request_id, user_id)
        denied = services.consent.deny_consent(request_id)
        return ok(denied.model_dump(mode="json"))

    @app.delete("/consent/grants/{grant_id}")
    def revoke_consent(grant_id: str, user_id: str = Depends(current_user)):
        owned = {g.id for g in services.consent.get_user_grants(user_id)}
        if grant_id not in owned or not services.consent.revoke_consent(grant_id):
            raise ConsentRejected(ConsentCode.NOT_FOUND, "consent grant not found")
        return ok({"revoked": grant_id})

    @app.get("/consent/requests")
    def list_consent(user_id: str = Depends(current_user)):
        return ok({
            "requests": [r.model_dump(mode="json") for r in services.consent.get_user_requests(user_id)],
            "grants": [g.model_dump(mode="json") for g in services.consent.get_user_grants(user_id)],
        })

    @app.get("/consent/stats")
    def consent_stats(user_id: str = Depends(current_user)):
        return ok(services.consent.get_stats())

    # ------------------------------------------------------------------
    # Origin policy
    # ------------------------------------------------------------------

    @app.get("/origin/stats")
    def origin_stats(user_id: str = Depends(current_user)):
        return ok(services.origins.violation_stats())

    @app.post("/origin/clear-log")
    def origin_clear(user_id: str = Depends(current_user)):
        return ok({"cleared": services.origins.clear_violations()})

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _config_snapshot() -> Dict[str, Any]:
        return {
            "browser": services.browsers.get_config().model_dump(mode="json"),
            "consent": services.consent.get_config().model_dump(mode="json"),
            "origin": services.origins.get_config().model_dump(mode="json"),
            "monitor": services.monitor.get_config().model_dump(mode="json"),
        }

    @app.get("/config")
    def get_config(user_id: str = Depends(current_user)):
        return ok(_config_snapshot())

    @app.put("/config")
    def put_config(changes: Dict[str, Dict[str, Any]], user_id: str = Depends(current_user)):
        targets = {
            "browser": services.browsers,
            "consent": services.consent,
            "origin": services.origins,
            "monitor": services.monitor,
        }
        unknown = sorted(set(changes) - set(targets))
        if unknown:
            raise HTTPException(status_code=400, detail=f"unknown config section(s): {', '.join(unknown)}")
        # all sections must validate before any is applied
        try:
            for section, values in changes.items():
                current = targets[section].get_config()
                type(current).model_validate({**current.model_dump(), **values})
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"invalid config: {e.errors()[0].get('msg')}")
        for section, values in changes.items():
            targets[section].update_config(**values)
        logger.info("config updated by %s: %s", user_id, sorted(changes))
        return ok(_config_snapshot())

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/health")
    def health():
        check = services.monitor.perform_health_check()
        return ok({
            "status": check.status.value,
            "check": check.model_dump(mode="json"),
            "connections": services.monitor.get_connection_stats(),
            "alerts": [a.model_dump(mode="json") for a in services.monitor.get_active_alerts()],
            "pool": services.browsers.get_stats().model_dump(mode="json"),
        })

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------

    @app.post("/automation/run")
    def run_automation(
        body: AutomationBody,
        request: Request,
        user_id: str = Depends(current_user),
        x_consent_grant_id: Optional[str] = Header(None),
    ):
        origin = request.headers.get("origin")
        if not origin:
            raise HTTPException(status_code=400, detail="Origin header is required")
        if not x_consent_grant_id:
            raise HTTPException(status_code=400, detail="X-Consent-Grant-Id header is required")
        try:
            automation = AutomationRequest(
                url=body.url,
                user_id=user_id,
                origin=origin,
                grant_id=x_consent_grant_id,
                subject_name=body.subject_name,
                auto_submit=body.auto_submit,
                contact_data=body.contact_data,
                connection_id=body.connection_id,
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"invalid request: {e.errors()[0].get('msg')}")
        result = services.orchestrator.run(automation)
        if services.ops is not None:
            services.ops.emit(run_record(result, user_id=user_id, pool=services.browsers.get_stats()))
        return ok(result.model_dump(mode="json"))

    return app
