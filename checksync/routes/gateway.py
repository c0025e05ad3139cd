from __future__ import annotations

import asyncio

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response

from checksync.errors import RequestValidationError, UpstreamError
from checksync.logger import get_logger
from checksync.services.fastcgi import FastCGIClient, build_environ, parse_port

router = APIRouter(prefix="/php-fpm", tags=["gateway"])
_logger = get_logger("api.gateway")


def _error(message: str) -> PlainTextResponse:
    # 500 for bad input too; monitoring checks already key on it.
    return PlainTextResponse(message, status_code=500)


@router.get("/{project}/{host}/{port}/{check_type}")
async def php_fpm_status(project: str, host: str, port: str, check_type: str, request: Request) -> Response:
    try:
        upstream_port = parse_port(port)
    except RequestValidationError as exc:
        message = f"[php-fpm] {exc}"
        _logger.error("gateway.invalid_port", message, port=port)
        return _error(message)

    client: FastCGIClient = request.app.state.fastcgi
    env = build_environ(project, check_type)
    try:
        response = await asyncio.to_thread(client.request, host, upstream_port, env)
    except UpstreamError as exc:
        message = f"[php-fpm] {exc.detail}"
        _logger.error(
            "gateway.upstream_error",
            message,
            stage=exc.stage,
            project=project,
            upstream=f"{host}:{upstream_port}",
        )
        return _error(message)

    request.app.state.metrics.record_gateway_bytes(len(response.body))
    _logger.info(
        "gateway.complete",
        "Request complete",
        project=project,
        check_type=check_type,
        upstream_status=response.status,
        bytes=len(response.body),
    )
    return Response(content=response.body)
