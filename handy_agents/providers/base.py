"""
Shared subprocess plumbing for the command-line providers.

Each provider wraps one binary. Calls are synchronous and return a
CommandResult; callers that need a failure to be fatal use _run_checked(),
which raises the provider's ToolError subclass with sanitized stderr.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

from handy_agents.errors import ToolError, ToolNotFoundError, ToolTimeoutError
from handy_agents.utils.sanitize import sanitize_output, truncate

if TYPE_CHECKING:
    from handy_agents.logger import HandyLogger

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command."""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CliProvider:
    """Base class for providers that shell out to a single binary."""

    component = "provider"
    error_class: type[ToolError] = ToolError

    def __init__(
        self,
        binary: str,
        timeout: int = 30,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        self.binary = binary
        self.timeout = timeout
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": self.component}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _base_args(self) -> list[str]:
        """Arguments placed between the binary and every command."""
        return []

    def _run(
        self,
        args: Sequence[str],
        cwd: Optional[str] = None,
        timeout: Optional[int] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """
        Run the binary with arguments.

        Raises:
            ToolNotFoundError: If the binary is not installed.
            ToolTimeoutError: If the command exceeds its timeout.
        """
        argv = [self.binary, *self._base_args(), *args]
        logger.debug("Running %s", sanitize_output(" ".join(argv)))
        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError:
            raise ToolNotFoundError(f"{self.binary} not found on PATH", argv)
        except subprocess.TimeoutExpired:
            raise ToolTimeoutError(
                f"{self.binary} {' '.join(args[:2])} timed out after {timeout or self.timeout}s",
                argv,
            )
        return CommandResult(result.returncode, result.stdout or "", result.stderr or "")

    def _run_checked(
        self,
        args: Sequence[str],
        cwd: Optional[str] = None,
        timeout: Optional[int] = None,
        input_text: Optional[str] = None,
        what: Optional[str] = None,
    ) -> CommandResult:
        """
        Run the binary and raise the provider's error on non-zero exit.

        Args:
            what: Short description used in the error message.
        """
        result = self._run(args, cwd=cwd, timeout=timeout, input_text=input_text)
        if not result.ok:
            description = what or f"{self.binary} {' '.join(args[:2])}"
            stderr = result.stderr.strip() or result.stdout.strip()
            self._log("command_failed", {
                "command": description,
                "returncode": result.returncode,
                "stderr": truncate(stderr, 200),
            }, level="warn")
            raise self.error_class(
                f"{description} failed: {stderr}",
                [self.binary, *self._base_args(), *args],
                result.returncode,
                stderr,
            )
        return result
