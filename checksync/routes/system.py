from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from checksync.config import Settings
from checksync.logger import get_logger
from checksync.metrics import Metrics, expvar_name
from checksync.schemas.checks import RemoteFragment
from checksync.schemas.system import HealthOut, VersionOut

router = APIRouter()
_logger = get_logger("api.system")


def self_fragment(settings: Settings) -> RemoteFragment:
    """The go_expvar instance other nodes should configure to watch this daemon."""
    metrics = [{"path": expvar_name(family), "type": "gauge"} for family in settings.families]
    metrics.append({"path": "datadog_reload", "type": "counter"})
    return RemoteFragment(
        expvar_url=f"http://{settings.advertise_address}:{settings.server_port}/debug/vars",
        tags=[f"project:{settings.app_name}"],
        metrics=metrics,
    )


@router.get("/health", response_model=HealthOut, tags=["system"])
async def health(request: Request) -> HealthOut:
    now = datetime.now(timezone.utc).isoformat()
    return HealthOut(status="ok", time=now, node=request.app.state.runtime.node_name)


@router.get("/version", response_model=VersionOut, tags=["system"])
async def version(request: Request) -> VersionOut:
    settings: Settings = request.app.state.settings
    return VersionOut(
        app=settings.app_name,
        version=settings.app_version,
        env=settings.app_env,
        families=settings.families,
    )


@router.get("/datadog/expvar", response_model=RemoteFragment, tags=["system"])
async def datadog_expvar(request: Request) -> RemoteFragment:
    return self_fragment(request.app.state.settings)


@router.get("/debug/vars", tags=["system"])
async def debug_vars(request: Request) -> Dict[str, int]:
    settings: Settings = request.app.state.settings
    metrics: Metrics = request.app.state.metrics
    return metrics.debug_vars(settings.families)


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics(request: Request) -> Response:
    settings: Settings = request.app.state.settings
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics are disabled.")
    metrics: Metrics = request.app.state.metrics
    return Response(content=metrics.render(), media_type=metrics.content_type())
