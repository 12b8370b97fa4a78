"""
talosforge/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic, used to drive
the `kubectl`, `talosctl` and `helm` binaries. Optionally, a custom error_parser
callback can inspect stderr and turn a known failure (e.g. a TLS certificate
rejection from talosctl) into a dedicated exception or a short message.

Usage example:
    from talosforge.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["kubectl", "version", "-o", "json"], retries=1)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import os
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Union

from talosforge.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Represents a failure when executing a command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr, always kept so callers can classify errors
            even when the message itself hides details.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


ErrorParser = Callable[[str], Optional[Union[str, Exception]]]


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[Union[str, bytes]] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = None,
    error_parser: Optional[ErrorParser] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries,
    a per-attempt timeout and an optional error parser callback.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError. If `error_parser` is given, stderr is passed to it: a returned
    exception instance is raised as-is (and not retried), a returned string is
    raised as a short CommandError. When `sensitive=True`, we omit the command,
    stdout, and stderr from the error message.

    Args:
        command: The command and arguments to execute.
        sensitive: If True, hides command details in the raised error.
        env: Additional environment variables to add or override.
        cwd: Working directory for the command.
        input_data: If provided, passed to stdin.
        successful_return_codes: Return codes not treated as errors. Defaults to [0].
        retries: Total attempts. Defaults to 3.
        retry_delay: Delay in seconds between attempts. Defaults to 1.0.
        timeout: Seconds before an attempt is killed and counted as a failure.
        error_parser: Callback receiving stderr, see above.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all retries.
    """
    ok_codes = successful_return_codes or [0]
    stdin_bytes = input_data.encode() if isinstance(input_data, str) else input_data

    @async_retry(retries=max(retries, 1), delay=retry_delay, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        stdin = (
            asyncio.subprocess.PIPE
            if stdin_bytes is not None
            else asyncio.subprocess.DEVNULL
        )
        logger.debug("Running %s", command[0] if sensitive else " ".join(command))

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"Executable not found: {command[0]}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(input=stdin_bytes), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandError(
                f"Command {command[0]} timed out after {timeout}s"
            ) from exc

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in ok_codes:
            if error_parser:
                parsed = error_parser(stderr_str)
                if isinstance(parsed, Exception):
                    raise parsed
                if parsed is not None:
                    raise CommandError(parsed, proc.returncode, stderr_str)

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )

            raise CommandError(
                f"Command {command[0]} failed with return code {proc.returncode}.{detail}",
                proc.returncode,
                stderr_str,
            )

        return stdout_str

    return await _inner_run_command()
