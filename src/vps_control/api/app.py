from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from vps_control.api.plane import ControlPlane
from vps_control.core.exceptions import ControlPlaneError, ProviderError
from vps_control.core.utils import Deadline

VERSION = "0.1.0"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

_OPEN_PATHS = ("/health",)

log = logging.getLogger("vps_control.api")


class LifecycleRequest(BaseModel):
    action: str = "status"
    deploymentId: str | None = None


class HealthCheckRequest(BaseModel):
    ipAddress: str | None = None
    action: str = "health"


class MigrateRequest(BaseModel):
    action: str
    fromDeploymentId: str
    toDeploymentId: str


class WhitelistRequest(BaseModel):
    vps_ip: str | None = None


class ProvisionRequest(BaseModel):
    provider: str
    targetExchange: str | None = None
    credentials: dict[str, Any] = Field(default_factory=dict)
    ipAddress: str | None = None


class CloudInstanceRequest(BaseModel):
    provider: str
    action: str
    instanceId: str | None = None
    credentials: dict[str, Any] = Field(default_factory=dict)


class UpdateBotRequest(BaseModel):
    code: str = ""


class ProgressionRequest(BaseModel):
    action: str = "status"
    mode: str | None = None
    pnl: float | None = None


def _json(payload: dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code)


def _run(fn: Callable[[Deadline], dict[str, Any]], deadline: Deadline) -> JSONResponse:
    """Runs a handler body; errors are captured into ``{success: false}`` payloads."""
    try:
        result = fn(deadline)
    except ProviderError as exc:
        log.warning("provider error", extra={"provider": exc.provider, "error": exc.message})
        return _json({"success": False, "error": str(exc), "provider": exc.provider}, 502)
    except ControlPlaneError as exc:
        log.error("handler failed", extra={"error": str(exc)})
        return _json({"success": False, "error": str(exc)}, 500)
    if deadline.expired():
        result["timeout"] = True
    return _json(result)


def _authorized(request: Request, expected: str) -> bool:
    if request.headers.get("apikey") == expected:
        return True
    auth = request.headers.get("authorization") or ""
    return auth.startswith("Bearer ") and auth[len("Bearer "):] == expected


def create_app(plane: ControlPlane) -> FastAPI:
    app = FastAPI(title="vps-control", version=VERSION, docs_url=None, redoc_url=None)
    app.state.plane = plane

    @app.middleware("http")
    async def cors_and_auth(request: Request, call_next: Any) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        expected = plane.cfg.api.api_key()
        if expected and request.url.path not in _OPEN_PATHS and not _authorized(request, expected):
            return JSONResponse({"success": False, "error": "Unauthorized"}, status_code=401, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"success": True, "status": "ok", "version": VERSION}

    @app.post("/bot-lifecycle")
    def bot_lifecycle(body: LifecycleRequest) -> JSONResponse:
        return _run(lambda d: plane.lifecycle(body.action, body.deploymentId, deadline=d), plane.new_deadline())

    @app.post("/check-vps-health")
    def check_vps_health(body: HealthCheckRequest | None = None) -> JSONResponse:
        body = body or HealthCheckRequest()
        if body.action == "ping-exchanges":
            return _run(lambda d: plane.health.ping_exchanges(body.ipAddress, deadline=d), plane.new_deadline())
        return _run(lambda d: plane.health.check(body.ipAddress, deadline=d), plane.new_deadline())

    @app.post("/trade-preflight")
    def trade_preflight() -> JSONResponse:
        return _run(lambda d: plane.preflight.run(deadline=d), plane.new_deadline())

    @app.post("/migrate-vps")
    def migrate_vps(body: MigrateRequest) -> JSONResponse:
        return _run(
            lambda d: plane.migrator.dispatch(body.action, body.fromDeploymentId, body.toDeploymentId, deadline=d),
            plane.new_deadline(),
        )

    @app.post("/sync-ip-whitelist")
    def sync_ip_whitelist(body: WhitelistRequest | None = None) -> JSONResponse:
        ip = (body.vps_ip if body else None) or plane.health.resolve_host()[0]
        if not ip:
            return _json({"success": False, "error": "VPS IP is required"}, 400)
        return _run(lambda d: plane.whitelist.sync(ip), plane.new_deadline())

    @app.post("/provision-vps")
    def provision_vps(body: ProvisionRequest) -> JSONResponse:
        return _run(
            lambda d: plane.provisioner.provision(
                body.provider,
                target_exchange=body.targetExchange,
                credentials=body.credentials,
                ip_address=body.ipAddress,
                deadline=d,
            ),
            plane.new_deadline(),
        )

    @app.post("/cloud-instance")
    def cloud_instance(body: CloudInstanceRequest) -> JSONResponse:
        return _run(
            lambda d: plane.provisioner.instance_action(
                body.provider, body.action, instance_id=body.instanceId, credentials=body.credentials
            ),
            plane.new_deadline(),
        )

    @app.post("/deploy-vps-api")
    def deploy_vps_api() -> JSONResponse:
        return _run(lambda d: plane.deploy.verify(deadline=d), plane.new_deadline())

    @app.post("/update-vps-bot")
    def update_vps_bot(body: UpdateBotRequest) -> JSONResponse:
        return _run(lambda d: plane.deploy.update_bot(body.code, deadline=d), plane.new_deadline())

    @app.post("/progression")
    def progression(body: ProgressionRequest | None = None) -> JSONResponse:
        body = body or ProgressionRequest()
        if body.action == "record":
            if body.mode is None or body.pnl is None:
                return _json({"success": False, "error": "mode and pnl are required"}, 400)
            return _run(lambda d: plane.progression.record_trade(body.mode or "", float(body.pnl or 0)),
                        plane.new_deadline())
        if body.action == "status":
            return _run(lambda d: {"success": True, **plane.progression.status()}, plane.new_deadline())
        return _json({"success": False, "error": f"Unknown action: {body.action}"}, 400)

    return app
