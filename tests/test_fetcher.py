from __future__ import annotations

import asyncio
import threading

import pytest

from checksync.errors import FetchMalformedError, FetchUnreachableError
from checksync.services.fetcher import RemoteConfigFetcher, parse_fragment
from conftest import FakeClock, FakeHttp, http_reply, json_reply

URL = "http://10.0.0.5:8080/datadog/expvar"
FRAGMENT = {
    "expvar_url": "http://10.0.0.5:8080/debug/vars",
    "tags": ["project:billing"],
    "metrics": [{"path": "requests", "type": "counter"}],
}


@pytest.mark.asyncio
async def test_cache_hit_skips_network():
    http = FakeHttp({URL: FRAGMENT})
    fetcher = RemoteConfigFetcher(http_get=http, clock=FakeClock())

    first = await fetcher.fetch(URL)
    second = await fetcher.fetch(URL)

    assert first == second
    assert first.expvar_url == FRAGMENT["expvar_url"]
    assert http.calls == [URL]


@pytest.mark.asyncio
async def test_entry_older_than_ttl_is_refetched():
    clock = FakeClock()
    http = FakeHttp({URL: FRAGMENT})
    fetcher = RemoteConfigFetcher(ttl_seconds=1800, http_get=http, clock=clock)

    await fetcher.fetch(URL)
    clock.advance(1799)
    await fetcher.fetch(URL)
    assert len(http.calls) == 1

    clock.advance(2)
    await fetcher.fetch(URL)
    assert len(http.calls) == 2


@pytest.mark.asyncio
async def test_non_2xx_is_unreachable():
    fetcher = RemoteConfigFetcher(http_get=FakeHttp({URL: (503, b"busy")}), clock=FakeClock())
    with pytest.raises(FetchUnreachableError) as excinfo:
        await fetcher.fetch(URL)
    assert "503" in str(excinfo.value)
    assert len(fetcher) == 0


@pytest.mark.asyncio
async def test_transport_failure_is_unreachable():
    http = FakeHttp({URL: FetchUnreachableError(URL, "connection refused")})
    fetcher = RemoteConfigFetcher(http_get=http, clock=FakeClock())
    with pytest.raises(FetchUnreachableError):
        await fetcher.fetch(URL)


@pytest.mark.asyncio
async def test_failures_are_not_cached():
    http = FakeHttp({URL: (500, b"")})
    fetcher = RemoteConfigFetcher(http_get=http, clock=FakeClock())
    for _ in range(2):
        with pytest.raises(FetchUnreachableError):
            await fetcher.fetch(URL)
    assert len(http.calls) == 2


@pytest.mark.asyncio
async def test_malformed_body():
    fetcher = RemoteConfigFetcher(http_get=FakeHttp({URL: b"- just\n- a list\n"}), clock=FakeClock())
    with pytest.raises(FetchMalformedError):
        await fetcher.fetch(URL)


def test_parse_fragment_accepts_yaml():
    body = b"expvar_url: http://10.0.0.5:8080/debug/vars\ntags:\n- project:billing\nmetrics: []\n"
    fragment = parse_fragment(URL, body)
    assert fragment.tags == ["project:billing"]
    assert fragment.metrics == []


def test_parse_fragment_rejects_wrong_types():
    with pytest.raises(FetchMalformedError):
        parse_fragment(URL, b'{"expvar_url": "x", "tags": "not-a-list"}')
    with pytest.raises(FetchMalformedError):
        parse_fragment(URL, b"expvar_url: [unterminated")


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_request():
    release = threading.Event()
    calls: list[str] = []

    def slow_get(url: str, timeout: float) -> tuple[int, bytes]:
        calls.append(url)
        release.wait(timeout=5)
        return 200, b'{"expvar_url": "http://10.0.0.5:8080/debug/vars"}'

    fetcher = RemoteConfigFetcher(http_get=slow_get, clock=FakeClock())
    tasks = [asyncio.create_task(fetcher.fetch(URL)) for _ in range(5)]
    await asyncio.sleep(0.05)
    release.set()
    results = await asyncio.gather(*tasks)

    assert len(calls) == 1
    assert {item.expvar_url for item in results} == {"http://10.0.0.5:8080/debug/vars"}


def test_prune_drops_expired_entries():
    clock = FakeClock()
    fetcher = RemoteConfigFetcher(ttl_seconds=10, http_get=FakeHttp({URL: FRAGMENT}), clock=clock)
    asyncio.run(fetcher.fetch(URL))
    assert fetcher.prune() == 0
    clock.advance(11)
    assert fetcher.prune() == 1
    assert fetcher.cached(URL) is None


@pytest.mark.asyncio
async def test_failed_fetches_release_their_lock():
    fetcher = RemoteConfigFetcher(http_get=FakeHttp({URL: (500, b"")}), clock=FakeClock())
    with pytest.raises(FetchUnreachableError):
        await fetcher.fetch(URL)
    assert fetcher.in_flight == 0

    fetcher = RemoteConfigFetcher(http_get=FakeHttp({URL: FRAGMENT}), clock=FakeClock())
    await fetcher.fetch(URL)
    assert fetcher.in_flight == 0


@pytest.mark.asyncio
async def test_fetch_over_http(loopback):
    server = loopback(json_reply(FRAGMENT))
    fetcher = RemoteConfigFetcher(timeout_seconds=2)
    fragment = await fetcher.fetch(f"{server.url}/datadog/expvar")
    assert fragment.expvar_url == FRAGMENT["expvar_url"]
    assert fragment.metrics == FRAGMENT["metrics"]


@pytest.mark.asyncio
async def test_http_error_status_over_http(loopback):
    server = loopback(http_reply(b"HTTP/1.1 404 Not Found\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"))
    fetcher = RemoteConfigFetcher(timeout_seconds=2)
    with pytest.raises(FetchUnreachableError) as excinfo:
        await fetcher.fetch(f"{server.url}/datadog/expvar")
    assert "HTTP 404" in str(excinfo.value)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        b"SSH-2.0-OpenSSH_9.6\r\n",
        b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\nConnection: close\r\n\r\nhello",
        b"",
    ],
    ids=["not-http", "truncated-body", "closed"],
)
async def test_broken_peer_replies_are_unreachable(loopback, reply):
    server = loopback(http_reply(reply))
    fetcher = RemoteConfigFetcher(timeout_seconds=2)
    with pytest.raises(FetchUnreachableError):
        await fetcher.fetch(f"{server.url}/datadog/expvar")
    assert fetcher.in_flight == 0


@pytest.mark.asyncio
async def test_invalid_url_is_unreachable():
    fetcher = RemoteConfigFetcher(timeout_seconds=1)
    with pytest.raises(FetchUnreachableError):
        await fetcher.fetch("http://10.0.0.1:notaport/datadog/expvar")
