from __future__ import annotations


class CheckSyncError(Exception):
    """Base class for all errors raised by checksync."""


class FatalError(CheckSyncError):
    """An error that must stop the daemon; the supervisor restarts it."""


class DiscoveryError(CheckSyncError):
    """The discovery backend could not be queried."""


class FetchError(CheckSyncError):
    def __init__(self, url: str, detail: str) -> None:
        super().__init__(f"{url}: {detail}")
        self.url = url
        self.detail = detail


class FetchUnreachableError(FetchError):
    """Transport failure or non-2xx status while fetching a remote fragment."""


class FetchMalformedError(FetchError):
    """The remote fragment body did not match the expected schema."""


class FileIOError(CheckSyncError):
    def __init__(self, path: str, action: str, detail: str) -> None:
        super().__init__(f"Could not {action} file {path}: {detail}")
        self.path = path
        self.action = action


class EncodingError(FatalError):
    """A check document could not be serialized."""


class ReloadError(FatalError):
    """The monitoring agent reload command failed."""


class RequestValidationError(CheckSyncError):
    """A gateway request parameter is malformed."""


class UpstreamError(CheckSyncError):
    """A FastCGI call failed; ``stage`` is one of connect, protocol or read."""

    def __init__(self, stage: str, detail: str) -> None:
        super().__init__(detail)
        self.stage = stage
        self.detail = detail
