from __future__ import annotations

import subprocess
from typing import Callable, Sequence

from checksync.errors import ReloadError
from checksync.logger import get_logger
from checksync.metrics import Metrics

_logger = get_logger("services.reload")

CommandRunner = Callable[[Sequence[str], float], "tuple[int, str, str]"]


def _run_command(cmd: Sequence[str], timeout: float) -> tuple[int, str, str]:
    try:
        process = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        return 127, "", str(exc)
    except subprocess.TimeoutExpired:
        return 124, "", f"timed out after {timeout}s"
    return process.returncode, process.stdout.strip(), process.stderr.strip()


class ReloadTrigger:
    """Asks the monitoring agent to re-read its check configuration."""

    def __init__(
        self,
        metrics: Metrics,
        *,
        service_command: str = "/usr/sbin/service",
        service_name: str = "datadog-agent",
        suppress: bool = False,
        timeout_seconds: float = 30,
        runner: CommandRunner = _run_command,
    ) -> None:
        self._metrics = metrics
        self._command = (service_command, service_name, "reload")
        self._suppress = suppress
        self._timeout = timeout_seconds
        self._runner = runner

    def trigger(self) -> None:
        self._metrics.record_reload()
        if self._suppress:
            _logger.info("reload.suppressed", "Not reloading agent (DONT_RELOAD_DATADOG)")
            return

        code, out, err = self._runner(self._command, self._timeout)
        if code != 0:
            detail = err or out or f"exit_{code}"
            _logger.error(
                "reload.error",
                "Failed to reload agent",
                command=" ".join(self._command),
                exit_code=code,
                error=detail,
            )
            raise ReloadError(f"Failed to reload {self._command[1]}: {detail}")
        _logger.info("reload.complete", "Successfully reloaded agent", service=self._command[1])
