"""Async subprocess utilities.

Non-blocking subprocess execution for the pipeline activities: git working
copy operations, the external code agent, and project test suites all run
through ``run_command`` so a slow child process never stalls the event loop.

Example:
    >>> from khitomer.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("git", "status", "--porcelain", cwd=workspace)
"""

import asyncio
import os
import subprocess
from collections.abc import Mapping
from pathlib import Path


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings.
        cwd: Working directory for the child process.
        check: Raise CalledProcessError on a non-zero exit code.
        timeout: Seconds to wait before the process is killed and
            TimeoutError is raised. None waits indefinitely.
        env: Extra environment variables layered over the parent's.
        input_text: Text written to the child's standard input.

    Returns:
        Tuple of (stdout, stderr, return_code), decoded as UTF-8 with
        replacement for invalid bytes.

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails.
        TimeoutError: If the timeout is exceeded; the process is killed first.
        FileNotFoundError: If the executable does not exist.
    """
    child_env = None
    if env:
        child_env = {**os.environ, **env}

    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=child_env,
        stdin=asyncio.subprocess.PIPE if input_text is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(input_text.encode("utf-8") if input_text is not None else None),
            timeout=timeout,
        )
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            args,
            stdout,
            stderr,
        )

    return stdout, stderr, process.returncode or 0
