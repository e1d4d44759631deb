"""Subprocess runner shared by the eksctl, kubectl and helm adapters."""

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Optional

from moodle_deployer.core.errors import DependencyMissing, ExternalApiError

logger = logging.getLogger(__name__)

# stderr fragments that indicate a temporary control-plane or network problem
TRANSIENT_PATTERNS = re.compile(
    r"connection refused|i/o timeout|tls handshake timeout|etcdserver: request timed out"
    r"|the server is currently unable to handle the request|throttl|rate exceeded"
    r"|unexpected eof|connection reset by peer",
    re.IGNORECASE,
)


@dataclass
class CommandResult:
    """Completed command output."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def command_error(operation: str, result: CommandResult) -> ExternalApiError:
    """Error for a failed command, transient when stderr shows a connectivity problem."""
    stderr = result.stderr.strip()
    return ExternalApiError(
        operation,
        stderr[:2000] or f"exit status {result.returncode}",
        code=f"exit-{result.returncode}",
        transient=bool(TRANSIENT_PATTERNS.search(stderr)),
    )


def run_command(
    cmd: list[str],
    *,
    input_text: Optional[str] = None,
    timeout: int = 600,
    check: bool = True,
) -> CommandResult:
    """Run an external command and capture its output.

    Args:
        cmd: Command and arguments
        input_text: Optional data written to stdin (manifests, configs)
        timeout: Seconds before the command is abandoned
        check: Raise on non-zero exit

    Returns:
        The command result.

    Raises:
        DependencyMissing: If the executable is not installed.
        ExternalApiError: On timeout, or on non-zero exit when ``check`` is set.
    """
    operation = " ".join(cmd[:3])
    logger.debug(f"Running: {' '.join(cmd)}")

    try:
        proc = subprocess.run(
            cmd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise DependencyMissing(cmd[0], "executable not found on PATH") from None
    except subprocess.TimeoutExpired:
        raise ExternalApiError(operation, f"timed out after {timeout}s", code="Timeout", transient=True) from None

    result = CommandResult(args=list(cmd), returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)

    if check and not result.ok:
        logger.error(f"{operation} exited with {result.returncode}: {result.stderr.strip()[:500]}")
        raise command_error(operation, result)

    return result
