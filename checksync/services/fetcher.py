from __future__ import annotations

import asyncio
import http.client
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional
from urllib import error, request

import yaml
from pydantic import ValidationError

from checksync.errors import FetchMalformedError, FetchUnreachableError
from checksync.logger import get_logger
from checksync.schemas.checks import RemoteFragment

_logger = get_logger("services.fetcher")

HttpGet = Callable[[str, float], "tuple[int, bytes]"]


def _http_get(url: str, timeout_seconds: float) -> tuple[int, bytes]:
    try:
        req = request.Request(url=url, method="GET", headers={"Accept": "application/x-yaml, application/json"})
        with request.urlopen(req, timeout=timeout_seconds) as response:
            return int(getattr(response, "status", 200) or 200), response.read()
    except error.HTTPError as exc:
        return exc.code, b""
    except (error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
        raise FetchUnreachableError(url, f"Could not GET url: {type(exc).__name__}: {exc}") from exc


def parse_fragment(url: str, body: bytes) -> RemoteFragment:
    try:
        parsed = yaml.safe_load(body.decode("utf-8")) if body else None
    except (UnicodeDecodeError, yaml.YAMLError) as exc:
        raise FetchMalformedError(url, f"Could not parse response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise FetchMalformedError(url, "Response is not a mapping")
    try:
        return RemoteFragment.model_validate(parsed)
    except ValidationError as exc:
        raise FetchMalformedError(url, f"Response does not match schema: {exc.error_count()} errors") from exc


@dataclass(frozen=True)
class _CacheEntry:
    fragment: RemoteFragment
    expires_at: float


@dataclass
class _InFlight:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class RemoteConfigFetcher:
    """Fetches per-instance check fragments from peers, with a TTL cache.

    Concurrent misses for the same URL share one request.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 1800,
        timeout_seconds: float = 5,
        http_get: HttpGet = _http_get,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._http_get = http_get
        self._clock = clock
        self._cache: Dict[str, _CacheEntry] = {}
        self._inflight: Dict[str, _InFlight] = {}

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    def cached(self, url: str) -> Optional[RemoteFragment]:
        entry = self._cache.get(url)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._cache[url]
            return None
        return entry.fragment

    def prune(self) -> int:
        now = self._clock()
        expired = [url for url, entry in self._cache.items() if entry.expires_at <= now]
        for url in expired:
            del self._cache[url]
        return len(expired)

    async def fetch(self, url: str) -> RemoteFragment:
        fragment = self.cached(url)
        if fragment is not None:
            return fragment

        flight = self._inflight.setdefault(url, _InFlight())
        flight.waiters += 1
        try:
            async with flight.lock:
                fragment = self.cached(url)
                if fragment is not None:
                    return fragment
                fragment = await asyncio.to_thread(self._fetch_remote, url)
                self._cache[url] = _CacheEntry(fragment=fragment, expires_at=self._clock() + self._ttl)
                return fragment
        finally:
            flight.waiters -= 1
            if flight.waiters == 0:
                self._inflight.pop(url, None)

    def _fetch_remote(self, url: str) -> RemoteFragment:
        status, body = self._http_get(url, self._timeout)
        if not 200 <= status < 300:
            raise FetchUnreachableError(url, f"HTTP {status}")
        fragment = parse_fragment(url, body)
        _logger.debug("fetcher.fetch", "Fetched remote config", url=url, bytes=len(body))
        return fragment
