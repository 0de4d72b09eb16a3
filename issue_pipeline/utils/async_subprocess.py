"""Async subprocess utilities with mandatory time bounds.

The Drafter and Deployer collaborators shell out to external programs. Both
run through these helpers so every external process is bounded by a timeout
and killed when it overruns.

Example:
    >>> stdout, stderr, code = await run_command("openclaw", "agent", "--message", prompt, timeout=120)
"""

import asyncio
import subprocess
from pathlib import Path


async def _communicate(process: asyncio.subprocess.Process, timeout: float | None) -> tuple[str, str]:
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")
    return stdout, stderr


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a command without shell interpolation.

    Args:
        *args: Executable followed by its arguments
        cwd: Working directory, or the current one if None
        check: Raise CalledProcessError on a non-zero exit code
        timeout: Seconds before the process is killed

    Returns:
        Tuple of (stdout, stderr, return_code)

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails
        TimeoutError: If the timeout is exceeded; the process is killed first
        FileNotFoundError: If the executable does not exist
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await _communicate(process, timeout)

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode or 1, args, stdout, stderr)

    return stdout, stderr, process.returncode or 0


async def run_shell_command(
    command: str,
    *,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a shell command string (pipes, redirects and ``&&`` allowed).

    Only used for operator-authored deploy steps from project configuration;
    never interpolate issue titles or other user text into ``command``.

    Returns:
        Tuple of (stdout, stderr, return_code)

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails
        TimeoutError: If the timeout is exceeded; the process is killed first
    """
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    stdout, stderr = await _communicate(process, timeout)

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode or 1, command, stdout, stderr)

    return stdout, stderr, process.returncode or 0
