from __future__ import annotations

import io
import socket
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from flup.client.fcgi_app import FCGIApp

from checksync.errors import RequestValidationError, UpstreamError
from checksync.logger import get_logger

_logger = get_logger("services.fastcgi")

SERVER_SOFTWARE = "checksync / flup"

WsgiApp = Callable[[Dict[str, Any], Callable[..., Any]], Iterable[bytes]]
Connector = Callable[[tuple[str, int], float], socket.socket]


def parse_port(raw: str) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError) as exc:
        raise RequestValidationError(f"Invalid port {raw}: {exc}") from exc
    if not 1 <= port <= 65535:
        raise RequestValidationError(f"Invalid port {raw}: out of range 1-65535")
    return port


def build_environ(project: str, check_type: str) -> Dict[str, str]:
    script = f"/{project}/internal/{check_type}"
    env = {
        "REQUEST_METHOD": "GET",
        "SCRIPT_FILENAME": script,
        "SCRIPT_NAME": script,
        "SERVER_SOFTWARE": SERVER_SOFTWARE,
    }
    if check_type == "status":
        env["QUERY_STRING"] = "json=1"
    return env


class _ErrorSink:
    """Collects FCGI_STDERR records, which flup writes to ``wsgi.errors``."""

    def __init__(self) -> None:
        self.chunks: List[bytes] = []

    def write(self, data: Any) -> None:
        self.chunks.append(data if isinstance(data, bytes) else str(data).encode("utf-8"))

    def flush(self) -> None:
        return None

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace").strip()


class _ConnectedFCGIApp(FCGIApp):
    """flup responder bound to a socket that is already connected."""

    def __init__(self, sock: socket.socket) -> None:
        super().__init__(connect=sock.getpeername(), filterEnviron=False)
        self._sock = sock

    def _getConnection(self) -> socket.socket:
        return self._sock


def _connect(address: tuple[str, int], timeout: float) -> socket.socket:
    return socket.create_connection(address, timeout=timeout)


@dataclass(frozen=True)
class FastCGIResponse:
    status: str
    body: bytes
    stderr: str = ""


class FastCGIClient:
    """One-shot FastCGI responder calls; a fresh connection per request."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 5.0,
        connector: Connector = _connect,
        app_factory: Callable[[socket.socket], WsgiApp] = _ConnectedFCGIApp,
    ) -> None:
        self._timeout = timeout_seconds
        self._connector = connector
        self._app_factory = app_factory

    def request(self, host: str, port: int, env: Dict[str, str]) -> FastCGIResponse:
        try:
            sock = self._connector((host, port), self._timeout)
        except OSError as exc:
            raise UpstreamError("connect", f"Could not connect to fastcgi upstream {host}:{port}: {exc}") from exc

        errors = _ErrorSink()
        status: Dict[str, str] = {}

        def start_response(value: Any, headers: Any, exc_info: Optional[Any] = None) -> None:
            status["value"] = value.decode("latin-1") if isinstance(value, bytes) else str(value)

        environ: Dict[str, Any] = dict(env)
        environ["wsgi.input"] = io.BytesIO(b"")
        environ["wsgi.errors"] = errors

        try:
            try:
                result = self._app_factory(sock)(environ, start_response)
            except EOFError as exc:
                # flup reads every record before returning; a short record means the stream was cut
                raise UpstreamError("read", f"Failed to read fastcgi response: {type(exc).__name__}: {exc}") from exc
            except Exception as exc:  # noqa: BLE001
                raise UpstreamError("protocol", f"Failed fastcgi request: {type(exc).__name__}: {exc}") from exc
            try:
                body = b"".join(bytes(chunk) for chunk in result)
            except Exception as exc:  # noqa: BLE001
                raise UpstreamError("read", f"Failed to read fastcgi response: {type(exc).__name__}: {exc}") from exc
            finally:
                close = getattr(result, "close", None)
                if callable(close):
                    close()
        finally:
            sock.close()

        response = FastCGIResponse(status=status.get("value", "200 OK"), body=body, stderr=errors.text())
        if response.stderr:
            _logger.warning("fastcgi.stderr", "Upstream wrote to stderr", host=host, port=port, stderr=response.stderr)
        return response
