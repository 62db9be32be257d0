"""Async helper for running privileged external commands.

Both the instance executor and the iptables backend shell out. Every
invocation is logged in a single event carrying stdout, and on failure the
stderr and exit status as well.
"""

from __future__ import annotations

import asyncio

import structlog

from ephemera.errors import CommandError

logger = structlog.get_logger()

DEFAULT_COMMAND_TIMEOUT = 60.0


async def run_command(
    *args: str,
    message: str,
    timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
    log_output: bool = True,
    **log_context: object,
) -> str:
    """Run a command and return its stdout.

    Args:
        *args: Program and arguments, executed without a shell
        message: Event name to log once the command has finished
        timeout: Seconds to wait before killing the command (None to wait forever)
        log_output: Whether to include stdout in the log event
        **log_context: Extra key/value pairs for the log event

    Returns:
        The decoded stdout of the command

    Raises:
        CommandError: If the command exits non-zero or times out
    """
    log = logger.bind(command=args[0], **log_context)

    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        log.error(message, error="timed out", timeout=timeout)
        raise CommandError(list(args), -1, stderr=f"timed out after {timeout}s") from None

    stdout = stdout_bytes.decode(errors="replace")
    stderr = stderr_bytes.decode(errors="replace")

    if log_output:
        log = log.bind(stdout=stdout)

    if proc.returncode != 0:
        log.error(message, returncode=proc.returncode, stderr=stderr)
        raise CommandError(list(args), proc.returncode or -1, stdout=stdout, stderr=stderr)

    log.info(message)
    return stdout
