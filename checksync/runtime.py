from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Dict, Optional

from checksync.config import Settings
from checksync.errors import FatalError
from checksync.logger import get_logger
from checksync.metrics import Metrics
from checksync.services.committer import ConfigCommitter
from checksync.services.families import CheckFamily, GoExpvarFamily, PhpFpmFamily
from checksync.services.fetcher import RemoteConfigFetcher
from checksync.services.reconciler import Reconciler
from checksync.services.registry import (
    ConsulAgentBackend,
    DiscoveryBackend,
    RegistryObserver,
    Subscription,
    node_name,
)
from checksync.services.reload import ReloadTrigger

_logger = get_logger("runtime")

FatalHandler = Callable[[BaseException], None]


def build_families(settings: Settings, fetcher: RemoteConfigFetcher) -> Dict[str, CheckFamily]:
    available: Dict[str, CheckFamily] = {
        "php-fpm": PhpFpmFamily(gateway_port=settings.server_port),
        "go-expvar": GoExpvarFamily(fetcher, remote_path=settings.remote_config_path),
    }
    return {name: available[name] for name in settings.families}


class RuntimeController:
    """Owns the observer and reconciler tasks for the lifetime of the process."""

    def __init__(
        self,
        settings: Settings,
        metrics: Metrics,
        *,
        backend: Optional[DiscoveryBackend] = None,
        fetcher: Optional[RemoteConfigFetcher] = None,
        reload_trigger: Optional[ReloadTrigger] = None,
        on_fatal: Optional[FatalHandler] = None,
    ) -> None:
        self._settings = settings
        self._metrics = metrics
        self._backend = backend or ConsulAgentBackend(
            settings.consul_http_addr,
            token=settings.consul_http_token,
            timeout_seconds=settings.consul_timeout_seconds,
        )
        self.fetcher = fetcher or RemoteConfigFetcher(
            ttl_seconds=settings.remote_config_ttl_seconds,
            timeout_seconds=settings.remote_config_timeout_seconds,
        )
        self.reload_trigger = reload_trigger or ReloadTrigger(
            metrics,
            service_command=settings.datadog_service_command,
            service_name=settings.datadog_service_name,
            suppress=settings.dont_reload_datadog,
            timeout_seconds=settings.reload_timeout_seconds,
        )
        self.observer = RegistryObserver(
            self._backend,
            metrics,
            interval_seconds=settings.discovery_interval_seconds,
        )
        self.reconcilers: Dict[str, Reconciler] = {}
        for name, family in build_families(settings, self.fetcher).items():
            committer = ConfigCommitter(settings.config_file_for(name), family=name)
            self.reconcilers[name] = Reconciler(family, committer, self.reload_trigger, metrics)

        self._on_fatal = on_fatal
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._subscriptions: list[Subscription] = []
        self.fatal_error: Optional[BaseException] = None
        self.node_name = ""

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        self._stop = asyncio.Event()
        self.fatal_error = None
        info = await asyncio.to_thread(self._backend.self_info)
        self.node_name = node_name(info)
        _logger.info("runtime.identity", "Hello, my name is", node=self.node_name or "-")

        for reconciler in self.reconcilers.values():
            await asyncio.to_thread(reconciler.committer.open)

        self._spawn("registry", self.observer.run(self._stop))
        for name, reconciler in self.reconcilers.items():
            subscription = self.observer.subscribe(name)
            self._subscriptions.append(subscription)
            self._spawn(f"reconcile:{name}", reconciler.run(subscription, self._stop))
        _logger.info(
            "runtime.start",
            "Started runtime loops",
            families=",".join(self.reconcilers) or "-",
            interval_seconds=self._settings.discovery_interval_seconds,
        )

    def _spawn(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._task_done)
        self._tasks.append(task)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if self.fatal_error is None:
            self.fatal_error = exc
        _logger.critical(
            "runtime.fatal",
            "Runtime loop failed, shutting down" if isinstance(exc, FatalError) else "Runtime loop crashed",
            task=task.get_name(),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        self._stop.set()
        if self._on_fatal is not None:
            self._on_fatal(exc)

    async def stop(self) -> None:
        self._stop.set()
        if self._tasks:
            # Joined, not cancelled: a commit in flight is allowed to finish.
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        for reconciler in self.reconcilers.values():
            reconciler.committer.close()
        _logger.info("runtime.stop", "Stopped runtime controller")
