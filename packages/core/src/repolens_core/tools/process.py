"""Subprocess execution that honours both a deadline and the run's cancel token."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass

from repolens_core.cancel import CancelToken
from repolens_core.errors import RunCancelledError

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 10_000


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


def truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated, {len(text) - limit} more characters]"


async def _kill(proc: asyncio.subprocess.Process) -> None:
    # Children run in their own session so the whole pipeline dies with them.
    if proc.returncode is None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    await proc.wait()


async def _race(
    proc: asyncio.subprocess.Process,
    timeout: float,
    token: CancelToken | None,
    description: str,
) -> ProcessResult:
    communicate = asyncio.ensure_future(proc.communicate())
    waiters = {communicate}
    cancel_wait = None
    if token is not None:
        cancel_wait = asyncio.ensure_future(token.wait())
        waiters.add(cancel_wait)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()

    if communicate in done:
        stdout, stderr = communicate.result()
        return ProcessResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

    communicate.cancel()
    await _kill(proc)
    if token is not None and token.cancelled:
        logger.info("Killed %s: run cancelled", description)
        raise RunCancelledError(token.reason or "Review cancelled by user")
    logger.warning("Killed %s after %.0fs timeout", description, timeout)
    return ProcessResult(stdout="", stderr="", exit_code=-1, timed_out=True)


async def run_process(
    args: list[str],
    cwd: str,
    timeout: float,
    token: CancelToken | None = None,
) -> ProcessResult:
    """Run ``args`` without a shell, killing it on timeout or cancellation.

    Raises FileNotFoundError when the executable does not exist and
    RunCancelledError when the token fires first.
    """
    if token is not None:
        token.raise_if_cancelled()
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    return await _race(proc, timeout, token, args[0])


async def run_shell(command: str, cwd: str, timeout: float, token: CancelToken | None = None) -> ProcessResult:
    """Run an already validated pipeline through /bin/sh."""
    if token is not None:
        token.raise_if_cancelled()
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    return await _race(proc, timeout, token, command.split(" ", 1)[0])
