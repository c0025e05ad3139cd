from __future__ import annotations

import json
import socket
import threading
from typing import Any, Callable, Dict, Iterable, Sequence

import pytest

from checksync.config import Settings
from checksync.errors import DiscoveryError
from checksync.metrics import Metrics
from checksync.services.registry import ServiceRecord
from checksync.services.reload import ReloadTrigger


def record(name: str, address: str = "10.0.0.1", port: int = 9000, service_id: str | None = None) -> ServiceRecord:
    return ServiceRecord(service_id=service_id or f"{name}-{address}-{port}", name=name, address=address, port=port)


def snapshot_of(*records: ServiceRecord) -> Dict[str, ServiceRecord]:
    return {item.service_id: item for item in records}


class FakeBackend:
    """In-memory discovery backend; set ``fail`` to simulate an unreachable agent."""

    def __init__(self, services: Dict[str, ServiceRecord] | None = None, node: str = "node-1") -> None:
        self.services = dict(services or {})
        self.node = node
        self.fail = False
        self.calls = 0

    def list_services(self) -> Dict[str, ServiceRecord]:
        self.calls += 1
        if self.fail:
            raise DiscoveryError("agent unreachable")
        return dict(self.services)

    def self_info(self) -> Dict[str, Any]:
        return {"Config": {"NodeName": self.node}}


class FakeHttp:
    """Stands in for the fetcher's HTTP GET; records every call."""

    def __init__(self, responses: Dict[str, Any] | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[str] = []

    def __call__(self, url: str, timeout: float) -> tuple[int, bytes]:
        self.calls.append(url)
        value = self.responses.get(url)
        if value is None:
            return 404, b""
        if isinstance(value, Exception):
            raise value
        if isinstance(value, tuple):
            return value
        if isinstance(value, bytes):
            return 200, value
        return 200, json.dumps(value).encode("utf-8")


class RecordingRunner:
    def __init__(self, code: int = 0, stderr: str = "") -> None:
        self.code = code
        self.stderr = stderr
        self.commands: list[Sequence[str]] = []

    def __call__(self, cmd: Sequence[str], timeout: float) -> tuple[int, str, str]:
        self.commands.append(tuple(cmd))
        return self.code, "", self.stderr


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def metrics() -> Metrics:
    return Metrics()


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def reload_trigger(metrics: Metrics, runner: RecordingRunner) -> ReloadTrigger:
    return ReloadTrigger(metrics, runner=runner)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        php_fpm_config_file=str(tmp_path / "conf.d" / "php_fpm.yaml"),
        go_expvar_config_file=str(tmp_path / "conf.d" / "go_expvar.yaml"),
        discovery_interval_seconds=0.05,
        dont_reload_datadog=True,
    )


def names(entries: Iterable[Any]) -> list[str]:
    return [entry.primary_url for entry in entries]


class LoopbackServer:
    """Accepts connections on 127.0.0.1 and hands each one to ``handler``."""

    def __init__(self, handler: Callable[[socket.socket], None]) -> None:
        self._handler = handler
        self._sock = socket.create_server(("127.0.0.1", 0))
        self._sock.settimeout(0.1)
        self.port = self._sock.getsockname()[1]
        self.connections = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.connections += 1
            with conn:
                conn.settimeout(5)
                try:
                    self._handler(conn)
                except (OSError, EOFError):
                    pass

    def close(self) -> None:
        self._stop.set()
        self._thread.join(timeout=2)
        self._sock.close()


def read_http_request(conn: socket.socket) -> bytes:
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = conn.recv(4096)
        if not chunk:
            break
        data += chunk
    return data


def http_reply(raw: bytes) -> Callable[[socket.socket], None]:
    """Handler that reads one request and answers with ``raw`` verbatim."""

    def handle(conn: socket.socket) -> None:
        read_http_request(conn)
        conn.sendall(raw)

    return handle


def json_reply(payload: Any) -> Callable[[socket.socket], None]:
    body = json.dumps(payload).encode("utf-8")
    head = f"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\nContent-Length: {len(body)}\r\nConnection: close\r\n\r\n"
    return http_reply(head.encode("ascii") + body)


@pytest.fixture
def loopback():
    servers: list[LoopbackServer] = []

    def start(handler: Callable[[socket.socket], None]) -> LoopbackServer:
        server = LoopbackServer(handler)
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()


def unused_port() -> int:
    with socket.create_server(("127.0.0.1", 0)) as sock:
        return sock.getsockname()[1]
