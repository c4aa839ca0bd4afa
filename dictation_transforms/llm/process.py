"""
Running a provider CLI as a subprocess with a prompt on stdin.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from .errors import LLMTimeoutError, ProcessFailedError

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 2.0


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str
    duration: float


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


async def _stop(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} ignored SIGTERM; killing it")
        await _kill(process)


async def _read_all(stream: Optional[asyncio.StreamReader]) -> bytes:
    if stream is None:
        return b""
    return await stream.read()


async def _write_prompt(process: asyncio.subprocess.Process, data: bytes, program: str) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(data)
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug(f"{program} closed stdin before reading the prompt")
    finally:
        process.stdin.close()


async def run_process(
    argv: Sequence[str],
    stdin_text: str,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
    timeout: float = 60.0,
    poll_interval: float = 0.1,
) -> ProcessResult:
    """
    Run ``argv``, feed it ``stdin_text`` followed by a newline, and collect output.

    Liveness is polled every ``poll_interval`` seconds until ``timeout``.
    The prompt is written and stdout and stderr are drained concurrently
    with the poll, so neither a child that never reads its stdin nor a
    chatty one can hold the call past the deadline.

    Args:
        argv: Executable path followed by its arguments
        stdin_text: Prompt written to the process's stdin
        env: Full environment for the child; the parent's when None
        cwd: Working directory for the child
        timeout: Seconds before the process is killed
        poll_interval: Seconds between liveness checks

    Returns:
        ProcessResult with decoded output, whatever the exit status.

    Raises:
        ProcessFailedError: If the executable cannot be started.
        LLMTimeoutError: If the process is still running at the deadline.
        asyncio.CancelledError: Re-raised after the process is terminated.
    """
    start_time = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            cwd=cwd,
        )
    except OSError as exc:
        logger.error(f"Could not start {argv[0]}: {exc}")
        raise ProcessFailedError(f"could not start {argv[0]}: {exc}") from exc
    logger.debug(f"Started {argv[0]} (pid {process.pid})")

    stdin_task = asyncio.ensure_future(_write_prompt(process, (stdin_text + "\n").encode("utf-8"), argv[0]))
    stdout_task = asyncio.ensure_future(_read_all(process.stdout))
    stderr_task = asyncio.ensure_future(_read_all(process.stderr))

    try:
        deadline = start_time + timeout
        while process.returncode is None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval, remaining))

        if process.returncode is None:
            logger.error(f"{argv[0]} timed out after {timeout:g}s; killing pid {process.pid}")
            await _kill(process)
            raise LLMTimeoutError(timeout)

        stdout, stderr = await asyncio.gather(stdout_task, stderr_task)
    except asyncio.CancelledError:
        logger.info(f"Cancelled; terminating {argv[0]} (pid {process.pid})")
        await _stop(process)
        raise
    finally:
        for task in (stdin_task, stdout_task, stderr_task):
            if not task.done():
                task.cancel()

    return ProcessResult(
        returncode=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration=time.monotonic() - start_time,
    )
