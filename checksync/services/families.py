from __future__ import annotations

from typing import Optional, Protocol

from checksync.errors import FetchError
from checksync.logger import BoundLogger, get_logger
from checksync.schemas.checks import CheckEntry, GoExpvarCheck, PhpFpmCheck
from checksync.services.fetcher import RemoteConfigFetcher
from checksync.services.registry import ServiceRecord

_logger = get_logger("services.families")


def project_name(service_name: str, suffix: str) -> Optional[str]:
    """Strip ``suffix`` from a service name, or None when it does not match."""
    if not service_name.endswith(suffix) or len(service_name) == len(suffix):
        return None
    return service_name[: -len(suffix)]


class CheckFamily(Protocol):
    name: str
    suffix: str

    async def build_entry(self, record: ServiceRecord, project: str) -> Optional[CheckEntry]: ...

    def prune(self) -> int: ...


class PhpFpmFamily:
    """php-fpm pools, checked through this daemon's FastCGI gateway."""

    name = "php-fpm"
    suffix = "-php-fpm"

    def __init__(self, *, gateway_port: int, gateway_prefix: str = "/php-fpm") -> None:
        self._gateway_port = gateway_port
        self._prefix = gateway_prefix.rstrip("/")

    def _url(self, record: ServiceRecord, project: str, check_type: str) -> str:
        return (
            f"http://{record.address}:{self._gateway_port}{self._prefix}"
            f"/{project}/{record.address}/{record.port}/{check_type}"
        )

    async def build_entry(self, record: ServiceRecord, project: str) -> Optional[CheckEntry]:
        return PhpFpmCheck(
            status_url=self._url(record, project, "status"),
            ping_url=self._url(record, project, "ping"),
            ping_reply="pong",
            tags=[f"project:{project}"],
        )

    def prune(self) -> int:
        return 0


class GoExpvarFamily:
    """Go services publishing their own go_expvar instance at a well-known path."""

    name = "go-expvar"
    suffix = "-go-expvar"

    def __init__(
        self,
        fetcher: RemoteConfigFetcher,
        *,
        remote_path: str = "/datadog/expvar",
        logger: Optional[BoundLogger] = None,
    ) -> None:
        self._fetcher = fetcher
        self._remote_path = remote_path
        self._logger = logger or _logger.bind(family=self.name)

    def remote_url(self, record: ServiceRecord) -> str:
        return f"http://{record.address}:{record.port}{self._remote_path}"

    async def build_entry(self, record: ServiceRecord, project: str) -> Optional[CheckEntry]:
        url = self.remote_url(record)
        try:
            fragment = await self._fetcher.fetch(url)
        except FetchError as exc:
            self._logger.warning(
                "family.fetch_error",
                "Could not get remote config, skipping instance",
                service=record.name,
                url=url,
                error_type=type(exc).__name__,
                error=exc.detail,
            )
            return None
        if not fragment.expvar_url:
            self._logger.warning("family.empty", "Remote config has no expvar_url", service=record.name, url=url)
            return None
        return GoExpvarCheck(
            expvar_url=fragment.expvar_url,
            tags=list(fragment.tags),
            metrics=[dict(item) for item in fragment.metrics],
        )

    def prune(self) -> int:
        """Drop expired fragments, including those of services that left the registry."""
        return self._fetcher.prune()
