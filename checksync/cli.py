from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Optional

import uvicorn
from pydantic import ValidationError

from checksync.config import KNOWN_FAMILIES, Settings
from checksync.errors import CheckSyncError
from checksync.logger import configure_logging, get_logger
from checksync.main import create_app
from checksync.metrics import Metrics
from checksync.routes.system import self_fragment
from checksync.runtime import RuntimeController, build_families
from checksync.services.documents import render_document
from checksync.services.fetcher import RemoteConfigFetcher
from checksync.services.reconciler import render_family
from checksync.services.registry import ConsulAgentBackend

_logger = get_logger("cli")


def _serve(settings: Settings) -> int:
    server: Optional[uvicorn.Server] = None

    def on_fatal(exc: BaseException) -> None:
        if server is not None:
            server.should_exit = True

    metrics = Metrics()
    runtime = RuntimeController(settings, metrics, on_fatal=on_fatal)
    app = create_app(settings, metrics=metrics, runtime=runtime)
    config = uvicorn.Config(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_config=None,
        timeout_graceful_shutdown=settings.shutdown_grace_seconds,
    )
    server = uvicorn.Server(config)
    server.run()
    if runtime.fatal_error is not None:
        _logger.critical("cli.exit", "Exiting after fatal runtime error", error=str(runtime.fatal_error))
        return 1
    return 0


async def _render(settings: Settings, family_name: str) -> bytes:
    backend = ConsulAgentBackend(
        settings.consul_http_addr,
        token=settings.consul_http_token,
        timeout_seconds=settings.consul_timeout_seconds,
    )
    fetcher = RemoteConfigFetcher(
        ttl_seconds=settings.remote_config_ttl_seconds,
        timeout_seconds=settings.remote_config_timeout_seconds,
    )
    family = build_families(settings.model_copy(update={"enabled_families": family_name}), fetcher)[family_name]
    services = await asyncio.to_thread(backend.list_services)
    document = await render_family(family, services)
    return render_document(document)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Sync Datadog check configs from Consul services")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("serve", help="Run the daemon (reconcilers + FastCGI gateway)")

    p_render = sub.add_parser("render", help="Print the check document for the current Consul services")
    p_render.add_argument("family", choices=KNOWN_FAMILIES)

    sub.add_parser("self", help="Print this node's /datadog/expvar fragment")

    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level, settings.log_file or None)

    if args.cmd == "serve":
        return _serve(settings)

    if args.cmd == "render":
        try:
            data = asyncio.run(_render(settings, args.family))
        except CheckSyncError as exc:
            print(f"Render failed: {exc}", file=sys.stderr)
            return 1
        sys.stdout.write(data.decode("utf-8"))
        return 0

    if args.cmd == "self":
        print(json.dumps(self_fragment(settings).model_dump(), indent=2))
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
