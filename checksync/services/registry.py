from __future__ import annotations

import asyncio
import http.client
import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib import error, request

from checksync.errors import DiscoveryError
from checksync.logger import get_logger
from checksync.metrics import Metrics

_logger = get_logger("services.registry")


@dataclass(frozen=True)
class ServiceRecord:
    service_id: str
    name: str
    address: str
    port: int
    tags: tuple[str, ...] = ()
    meta: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)


RegistrySnapshot = Mapping[str, ServiceRecord]

EMPTY_SNAPSHOT: RegistrySnapshot = MappingProxyType({})


class DiscoveryBackend(Protocol):
    def list_services(self) -> Dict[str, ServiceRecord]: ...

    def self_info(self) -> Dict[str, Any]: ...


def _record_from_consul(service_id: str, payload: Mapping[str, Any]) -> ServiceRecord:
    return ServiceRecord(
        service_id=str(payload.get("ID") or service_id),
        name=str(payload.get("Service") or ""),
        address=str(payload.get("Address") or ""),
        port=int(payload.get("Port") or 0),
        tags=tuple(str(tag) for tag in payload.get("Tags") or ()),
        meta=MappingProxyType({str(k): str(v) for k, v in (payload.get("Meta") or {}).items()}),
    )


class ConsulAgentBackend:
    """Reads services registered with the local Consul agent over its HTTP API."""

    def __init__(self, base_url: str, *, token: str = "", timeout_seconds: float = 5) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout_seconds

    def _get_json(self, path: str) -> Any:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["X-Consul-Token"] = self._token
        url = f"{self._base_url}{path}"
        try:
            req = request.Request(url=url, method="GET", headers=headers)
            with request.urlopen(req, timeout=self._timeout) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raise DiscoveryError(f"GET {url} returned HTTP {exc.code}") from exc
        except (error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
            raise DiscoveryError(f"GET {url} failed: {type(exc).__name__}: {exc}") from exc
        try:
            return json.loads(raw) if raw else {}
        except ValueError as exc:
            raise DiscoveryError(f"GET {url} returned invalid JSON: {exc}") from exc

    def list_services(self) -> Dict[str, ServiceRecord]:
        payload = self._get_json("/v1/agent/services")
        if not isinstance(payload, dict):
            raise DiscoveryError("Agent services payload is not an object")
        try:
            return {
                str(service_id): _record_from_consul(str(service_id), item)
                for service_id, item in payload.items()
                if isinstance(item, dict)
            }
        except (TypeError, ValueError) as exc:
            raise DiscoveryError(f"Agent services payload has an invalid entry: {exc}") from exc

    def self_info(self) -> Dict[str, Any]:
        payload = self._get_json("/v1/agent/self")
        if not isinstance(payload, dict):
            raise DiscoveryError("Agent self payload is not an object")
        return payload


def node_name(self_info: Mapping[str, Any]) -> str:
    config = self_info.get("Config")
    if isinstance(config, Mapping):
        return str(config.get("NodeName") or "")
    return ""


class Subscription:
    """Latest-value view of an observer: wakes on change, never queues."""

    def __init__(self, observer: "RegistryObserver", name: str) -> None:
        self.name = name
        self._observer = observer
        self._changed = asyncio.Event()

    def notify(self) -> None:
        self._changed.set()

    @property
    def pending(self) -> bool:
        return self._changed.is_set()

    async def wait(self, stop: asyncio.Event) -> Optional[RegistrySnapshot]:
        """Return the freshest snapshot after a change, or None once stopped."""
        if not self._changed.is_set() and not stop.is_set():
            changed = asyncio.ensure_future(self._changed.wait())
            stopped = asyncio.ensure_future(stop.wait())
            _, pending = await asyncio.wait({changed, stopped}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
        if stop.is_set():
            return None
        self._changed.clear()
        return self._observer.snapshot

    def close(self) -> None:
        self._observer.unsubscribe(self)


class RegistryObserver:
    def __init__(
        self,
        backend: DiscoveryBackend,
        metrics: Metrics,
        *,
        interval_seconds: float = 5.0,
    ) -> None:
        self._backend = backend
        self._metrics = metrics
        self._interval = interval_seconds
        self._snapshot: RegistrySnapshot = EMPTY_SNAPSHOT
        self._subscribers: list[Subscription] = []
        self._published = 0

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    @property
    def published(self) -> int:
        return self._published

    def subscribe(self, name: str = "") -> Subscription:
        subscription = Subscription(self, name)
        self._subscribers.append(subscription)
        if self._published:
            subscription.notify()
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, services: Mapping[str, ServiceRecord]) -> None:
        self._snapshot = MappingProxyType(dict(services))
        self._published += 1
        for subscription in list(self._subscribers):
            subscription.notify()

    async def poll_once(self) -> bool:
        try:
            services = await asyncio.to_thread(self._backend.list_services)
        except DiscoveryError as exc:
            self._metrics.record_runtime_loop(loop="registry", ok=False)
            _logger.warning(
                "registry.fetch_error",
                "Could not fetch agent services, keeping previous snapshot",
                error=str(exc),
            )
            return False
        self.publish(services)
        self._metrics.record_runtime_loop(loop="registry", ok=True)
        _logger.debug("registry.publish", "Published service snapshot", services=len(services))
        return True

    async def run(self, stop: asyncio.Event) -> None:
        _logger.info("registry.start", "Monitoring services", interval_seconds=self._interval)
        while not stop.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except TimeoutError:
                continue
        _logger.warning("registry.stop", "Stopping registry observer")
