"""HTTP control surface for the bridge.

Routes under ``/devices`` and ``/status`` require credentials when an API key
or bearer token is configured; ``/health`` and ``/metrics`` are always open.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from typing import Any, Callable, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .config import Config
from .errors import DeviceRejected, DeviceUnreachable
from .logging import get_logger, redact_mapping
from .metrics import METRICS_CONTENT_TYPE, latest_metrics, observe_request
from .platform import (
    CMD_MOVE_TO_COLOR,
    CMD_MOVE_TO_HUE_AND_SATURATION,
    CMD_MOVE_TO_LEVEL,
    CMD_MOVE_TO_LEVEL_WITH_ON_OFF,
    CMD_OFF,
    CMD_ON,
    CommandOutcome,
    LightEndpoint,
    MerossPlatform,
)


def _presented_secrets(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """Return the (api key, bearer token) a request carries, if any."""

    api_key = request.headers.get("X-API-Key")
    bearer = None
    scheme, _, value = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "apikey":
        api_key = api_key or value
    elif scheme.lower() == "bearer":
        bearer = value
    return api_key, bearer


def _matches(expected: Optional[str], presented: Optional[str]) -> bool:
    return bool(expected and presented) and secrets.compare_digest(expected, presented)


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _require_credentials(request: Request) -> None:
        if not (config.api_key or config.api_bearer_token):
            return
        api_key, bearer = _presented_secrets(request)
        if _matches(config.api_key, api_key) or _matches(config.api_bearer_token, bearer):
            return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _require_credentials


class DeviceOut(BaseModel):
    """A registered device, its cached light state and its reachability."""

    id: str
    name: str
    ip: str
    channel: int
    rgb: int
    luminance: int
    commands: List[str]
    status: str
    failures: int
    last_error: Optional[str] = None


class DeviceCommand(BaseModel):
    """Intents to apply to a device, executed in a fixed order."""

    on: Optional[bool] = None
    level: Optional[int] = Field(default=None, ge=0, le=254)
    hue: Optional[int] = Field(default=None, ge=0, le=254)
    saturation: Optional[int] = Field(default=None, ge=0, le=254)
    x: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    y: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class CommandResult(BaseModel):
    command: str
    status: str
    response: Any = None


def _device_out(endpoint: LightEndpoint, platform: MerossPlatform) -> DeviceOut:
    state = endpoint.state()
    health = platform.health.get(endpoint.id)
    return DeviceOut(
        id=endpoint.id,
        name=endpoint.name,
        ip=endpoint.device.ip,
        channel=endpoint.device.channel,
        rgb=state.rgb,
        luminance=state.luminance,
        commands=list(endpoint.commands),
        status=health.status if health else "unknown",
        failures=health.failures if health else 0,
        last_error=health.last_error if health else None,
    )


def plan_commands(payload: DeviceCommand) -> List[Tuple[str, dict]]:
    """Translate a command body into the ordered endpoint commands to run."""

    if payload.on is False:
        return [(CMD_OFF, {})]
    plan: List[Tuple[str, dict]] = []
    if payload.level is not None:
        command = CMD_MOVE_TO_LEVEL_WITH_ON_OFF if payload.on else CMD_MOVE_TO_LEVEL
        plan.append((command, {"level": payload.level}))
    elif payload.on:
        plan.append((CMD_ON, {}))
    if payload.hue is not None or payload.saturation is not None:
        if payload.hue is None or payload.saturation is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="hue and saturation must be provided together",
            )
        plan.append(
            (CMD_MOVE_TO_HUE_AND_SATURATION, {"hue": payload.hue, "saturation": payload.saturation})
        )
    if payload.x is not None and payload.y is not None:
        plan.append((CMD_MOVE_TO_COLOR, {"colorX": payload.x, "colorY": payload.y}))
    return plan


def _failure_status(outcome: CommandOutcome) -> int:
    if isinstance(outcome.error, DeviceUnreachable):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(outcome.error, DeviceRejected):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _validation_details(exc: RequestValidationError) -> List[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


def create_app(config: Config, platform: MerossPlatform) -> FastAPI:
    """Build the FastAPI application serving ``platform``."""

    access_log = get_logger("meross.api.middleware")
    app = FastAPI(
        title="Meross LAN Bridge API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )
    protected = APIRouter(dependencies=[Depends(_build_auth_dependency(config))])

    @app.middleware("http")
    async def _access_log(request: Request, call_next: Callable[..., Any]) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        observe_request(request.method, path, response.status_code, elapsed)
        access_log.info(
            "%s %s -> %s",
            request.method,
            path,
            response.status_code,
            extra={
                "duration_ms": round(elapsed * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redact_mapping(request.headers),
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        access_log.warning(
            "Request refused",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = _validation_details(exc)
        access_log.warning("Invalid request body", extra={"path": request.url.path, "errors": details})
        return JSONResponse({"detail": details}, status_code=422)

    def _endpoint_or_404(device_id: str) -> LightEndpoint:
        endpoint = platform.endpoint(device_id)
        if endpoint is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        return endpoint

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @protected.get("/status")
    async def bridge_status() -> dict:
        return {
            "devices": dict(await platform.health.snapshot()),
            "registered": len(platform.endpoints),
            "dry_run": config.dry_run,
        }

    @protected.get("/devices", response_model=List[DeviceOut])
    async def list_devices() -> List[DeviceOut]:
        return [_device_out(endpoint, platform) for endpoint in platform.endpoints.values()]

    @protected.get("/devices/{device_id}", response_model=DeviceOut)
    async def show_device(device_id: str) -> DeviceOut:
        return _device_out(_endpoint_or_404(device_id), platform)

    @protected.post("/devices/{device_id}/command")
    async def command_device(device_id: str, payload: DeviceCommand) -> JSONResponse:
        endpoint = _endpoint_or_404(device_id)
        plan = plan_commands(payload)
        if not plan:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="At least one action is required (on, level, hue/saturation, x/y).",
            )
        results: List[CommandResult] = []
        for command, request in plan:
            outcome = await endpoint.invoke(command, request)
            body = outcome.response.body if outcome.response is not None else None
            results.append(CommandResult(command=command, status=outcome.status, response=body))
            if not outcome.ok:
                return JSONResponse(
                    {"detail": str(outcome.error), "results": [r.model_dump() for r in results]},
                    status_code=_failure_status(outcome),
                )
        return JSONResponse({"device_id": device_id, "results": [r.model_dump() for r in results]})

    app.include_router(protected)
    return app


class ApiService:
    """Run the API under uvicorn inside the bridge's event loop."""

    def __init__(self, config: Config, platform: MerossPlatform) -> None:
        self.config = config
        self.platform = platform
        self.logger = get_logger("meross.api")
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server is not None:
            return
        server_config = uvicorn.Config(
            create_app(self.config, self.platform),
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=server_config)
        self._task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API listening",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if self._task is not None:
            await self._task
        self.logger.info("API stopped")
        self._server = None
        self._task = None
