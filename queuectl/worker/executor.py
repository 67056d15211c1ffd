"""
Command execution for jobs.

Commands run through the system shell in a child process so a long
command never blocks the other workers' event loop. Commands may run more
than once (retries, expired claims), so they should be idempotent.
"""

import asyncio
import logging
import os
import signal
import time

from queuectl.constants import EXIT_CODE_SPAWN_FAILED, EXIT_CODE_TIMEOUT
from queuectl.exceptions import ExecutionFailure
from queuectl.types.job import ExecutionResult

logger = logging.getLogger(__name__)

# Captured output kept per stream
MAX_OUTPUT_BYTES = 64 * 1024


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace").strip()


def _kill_group(process: asyncio.subprocess.Process) -> None:
    """Kill the shell and everything it spawned."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_command(command: str, timeout: float | None = None) -> ExecutionResult:
    """
    Run a shell command and capture its exit status and output.

    A non-zero exit is a normal result, not an exception.

    Args:
        command: The shell command line.
        timeout: Seconds before the child is killed, None for no limit.

    Returns:
        ExecutionResult with exit code, stdout, stderr and duration.

    Raises:
        ExecutionFailure: If the command could not be started or timed out.
    """
    start = time.monotonic()

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        raise ExecutionFailure(
            f"Could not start command: {e}",
            exit_code=EXIT_CODE_SPAWN_FAILED,
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill_group(process)
        stdout, stderr = await process.communicate()
        logger.warning(
            f"Command timed out after {timeout}s",
            extra={"command": command, "pid": process.pid},
        )
        raise ExecutionFailure(
            f"Command timed out after {timeout:g}s",
            exit_code=EXIT_CODE_TIMEOUT,
            output=_decode(stderr) or _decode(stdout),
        ) from None

    return ExecutionResult(
        exit_code=process.returncode,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        duration_ms=(time.monotonic() - start) * 1000,
    )
