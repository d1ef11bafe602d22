"""
stackpilot/utils/async_command_runner.py

Provides reusable asynchronous command runners:

- run_command: runs a process to completion and returns its stdout, with retry
  logic and an optional error_parser callback that can turn stderr into a short
  user-friendly message.
- stream_command: runs a process and hands every stdout/stderr line to a
  callback as soon as it is read, for long-running engine commands whose
  progress must be surfaced live.

Both accept an optional AbortSignal. When it trips, the child process is killed
and OperationAborted is raised instead of waiting for the process to exit.

Usage example:
    from stackpilot.utils.async_command_runner import stream_command, CommandError

    try:
        await stream_command(
            ["terraform", "apply", "-auto-approve", "plan"],
            on_stdout=print,
            cwd="/tmp/stack",
        )
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import os
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from stackpilot.utils.abort_signal import AbortSignal, OperationAborted
from stackpilot.utils.async_retry import async_retry

T = TypeVar("T")

# Engine JSON log lines can be far longer than asyncio's 64 KiB default.
_STREAM_LIMIT = 2**20


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.return_code = return_code


def _build_env(
    env: Optional[Dict[str, str]], suppress_env_vars: Optional[List[str]]
) -> Optional[Dict[str, str]]:
    """Merge `env` over os.environ, dropping `suppress_env_vars`, or None if untouched."""
    if env is None and not suppress_env_vars:
        return None
    proc_env = os.environ.copy()
    for var in suppress_env_vars or []:
        proc_env.pop(var, None)
    if env:
        proc_env.update(env)
    return proc_env


def _failure(
    command: Sequence[str],
    return_code: Optional[int],
    stdout_str: str,
    stderr_str: str,
    sensitive: bool,
    error_parser: Optional[Callable[[str], Optional[str]]],
) -> CommandError:
    """Build the CommandError for a process that exited unsuccessfully."""
    short_message = error_parser(stderr_str) if error_parser else None
    if short_message is not None:
        return CommandError(short_message, return_code)

    detail = ""
    if not sensitive:
        detail = (
            f"\nCommand: {' '.join(command)}"
            f"\nStdout: {stdout_str}"
            f"\nStderr: {stderr_str}"
        )
    return CommandError(
        f"Command failed with return code {return_code}.{detail}", return_code
    )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a child process that is still running and reap it."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


async def _supervise(
    proc: asyncio.subprocess.Process,
    work: Awaitable[T],
    abort_signal: Optional[AbortSignal],
) -> T:
    """Await `work` for `proc`, killing the process if `work` does not complete."""
    try:
        if abort_signal is None:
            return await work
        return await abort_signal.guard(work)
    except BaseException:
        await _kill(proc)
        raise


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Sequence[int] = (0,),
    retries: int = 3,
    retry_delay: float = 1.0,
    suppress_env_vars: Optional[List[str]] = None,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
    abort_signal: Optional[AbortSignal] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries
    and an optional error parser callback.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError. If `error_parser` is given, we pass stderr to it, and if it returns
    a non-None string, we raise that as a short user-friendly message. Otherwise, we
    raise the usual "Command failed" message.

    When `sensitive=True`, we omit the command, stdout, and stderr from the final error
    message.

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Sequence[int]):
            Which return codes won't be treated as errors. Defaults to (0,).
        retries (int):
            How many times to attempt the command in total. Defaults to 3.
        retry_delay (float):
            Delay in seconds between retries. Defaults to 1.0.
        suppress_env_vars (Optional[List[str]]):
            A list of environment variables to remove from the environment.
        error_parser (Optional[Callable[[str], Optional[str]]]):
            A callback that receives stderr (as a string). If it returns a non-None
            value, we raise a short CommandError with that message.
        abort_signal (Optional[AbortSignal]):
            If tripped while the command runs, the process is killed and
            OperationAborted is raised. Aborts are never retried.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all retries or returns a code not in
            `successful_return_codes`. Also if `error_parser` returns a message.
        OperationAborted: If `abort_signal` tripped.
    """

    @async_retry(retries=retries, delay=retry_delay, no_retry=(OperationAborted,))
    async def _inner_run_command() -> str:
        if abort_signal is not None:
            abort_signal.raise_if_aborted()

        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_build_env(env, suppress_env_vars),
            cwd=cwd,
            limit=_STREAM_LIMIT,
        )

        stdout_bytes, stderr_bytes = await _supervise(
            proc,
            proc.communicate(input=input_data.encode() if input_data else None),
            abort_signal,
        )
        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in successful_return_codes:
            raise _failure(
                command, proc.returncode, stdout_str, stderr_str, sensitive, error_parser
            )

        return stdout_str

    return await _inner_run_command()


async def stream_command(
    command: List[str],
    *,
    on_stdout: Callable[[str], None],
    on_stderr: Optional[Callable[[str], None]] = None,
    sensitive: bool = False,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    successful_return_codes: Sequence[int] = (0,),
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
    abort_signal: Optional[AbortSignal] = None,
) -> int:
    """
    Executes a local command, streaming each output line to a callback as it is read.

    Unlike run_command there is no retry: streamed commands (plan/apply/destroy) have
    side effects that must not be repeated behind the caller's back.

    Args:
        command (List[str]):
            The command and arguments to execute.
        on_stdout (Callable[[str], None]):
            Called with every stdout line, without its trailing newline.
        on_stderr (Optional[Callable[[str], None]]):
            Called with every stderr line. Defaults to `on_stdout`.
        sensitive (bool):
            If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        successful_return_codes (Sequence[int]):
            Which return codes won't be treated as errors. Defaults to (0,).
        error_parser (Optional[Callable[[str], Optional[str]]]):
            Receives the collected stderr on failure, may return a short message.
        abort_signal (Optional[AbortSignal]):
            If tripped while the command runs, the process is killed and
            OperationAborted is raised.

    Returns:
        int: The process return code (one of `successful_return_codes`).

    Raises:
        CommandError: If the return code is not in `successful_return_codes`.
        OperationAborted: If `abort_signal` tripped.

    A line callback that raises fails the call with its exception, after the
    process has been killed.
    """
    if abort_signal is not None:
        abort_signal.raise_if_aborted()

    proc = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_build_env(env, None),
        cwd=cwd,
        limit=_STREAM_LIMIT,
    )

    stdout_lines: List[str] = []
    stderr_lines: List[str] = []

    async def pump(
        stream: Optional[asyncio.StreamReader],
        callback: Callable[[str], None],
        keep: List[str],
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                return
            line = raw.decode(errors="replace").rstrip("\r\n")
            keep.append(line)
            callback(line)

    async def run() -> int:
        pumps = [
            asyncio.ensure_future(pump(proc.stdout, on_stdout, stdout_lines)),
            asyncio.ensure_future(
                pump(proc.stderr, on_stderr or on_stdout, stderr_lines)
            ),
        ]
        try:
            await asyncio.gather(*pumps)
        finally:
            # A failed pump must not leave its sibling reading a dead pipe.
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
        return await proc.wait()

    return_code = await _supervise(proc, run(), abort_signal)

    if return_code not in successful_return_codes:
        raise _failure(
            command,
            return_code,
            "\n".join(stdout_lines),
            "\n".join(stderr_lines),
            sensitive,
            error_parser,
        )
    return return_code
