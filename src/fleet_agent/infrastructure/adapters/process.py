"""
Process runner shared by all execution adapters.

Starts an external process, streams stdout/stderr line by line into the
job's log, and terminates the whole process group when the job's context
is cancelled.
"""

import asyncio
import os
import signal
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from fleet_agent.domain.ports import IExecutionAdapter, JobRuntime
from fleet_agent.domain.value_objects import LogStream
from fleet_agent.errors import AgentError, ExecutionCancelled, ProcessExitError
from fleet_agent.infrastructure.logging import get_logger


logger = get_logger(__name__)

# asyncio StreamReader limit; longer lines are emitted as chunks of this size
LINE_LIMIT = 1024 * 1024
STDERR_TAIL_LINES = 5
IS_WINDOWS = os.name == "nt"


class ProcessAdapter(IExecutionAdapter):
    """
    Base class for adapters that run one external process.

    Subclasses build the command line and call _run_process().
    """

    def __init__(self, kill_grace: float = 5.0):
        """
        Args:
            kill_grace: Seconds to wait after SIGTERM before sending SIGKILL
        """
        self.kill_grace = kill_grace

    async def _run_process(
        self,
        runtime: JobRuntime,
        argv: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        on_line: Optional[Callable[[str, LogStream], None]] = None,
    ) -> int:
        """
        Run argv to completion or until the context is cancelled.

        Args:
            runtime: Job runtime receiving log lines
            argv: Command and arguments
            cwd: Working directory
            env: Full environment for the child (inherits ours when None)
            on_line: Extra observer called for every output line

        Returns:
            Exit code (always 0)

        Raises:
            ExecutionCancelled: Context cancelled; the process was terminated
            ProcessExitError: Non-zero exit
            AgentError: Process could not be started
        """
        ctx = runtime.context
        if ctx.is_cancelled:
            raise ExecutionCancelled(ctx.reason)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=LINE_LIMIT,
                start_new_session=not IS_WINDOWS,
            )
        except OSError as e:
            raise AgentError(f"Failed to start {argv[0]}: {e}", {"command": argv[0]}) from e

        logger.debug("Process started", job_id=runtime.job.id, pid=process.pid, command=argv[0])

        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        readers = [
            asyncio.create_task(self._pump(process.stdout, LogStream.STDOUT, runtime, on_line)),
            asyncio.create_task(self._pump(process.stderr, LogStream.STDERR, runtime, on_line, stderr_tail)),
        ]
        exit_waiter = asyncio.create_task(process.wait())
        cancel_waiter = asyncio.create_task(ctx.wait())
        cancelled = False

        try:
            await asyncio.wait({exit_waiter, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if not exit_waiter.done():
                cancelled = True
                await self._terminate(process, runtime)
            await self._drain(readers)
        except asyncio.CancelledError:
            # The surrounding task is being torn down; never leak the child.
            await self._terminate(process, runtime)
            raise
        finally:
            cancel_waiter.cancel()
            for reader in readers:
                reader.cancel()
            if not exit_waiter.done():
                exit_waiter.cancel()

        if cancelled:
            raise ExecutionCancelled(ctx.reason)

        exit_code = process.returncode
        logger.debug("Process exited", job_id=runtime.job.id, pid=process.pid, exit_code=exit_code)
        if exit_code != 0:
            raise ProcessExitError(argv[0], exit_code, " | ".join(stderr_tail))
        return exit_code

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        origin: LogStream,
        runtime: JobRuntime,
        on_line: Optional[Callable[[str, LogStream], None]],
        tail: Optional[Deque[str]] = None,
    ) -> None:
        # True while the current line is being emitted in LINE_LIMIT chunks
        split = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                raw = e.partial
            except asyncio.LimitOverrunError as e:
                raw = await stream.read(e.consumed)
                split = True
            else:
                if split and raw in (b"\n", b"\r\n"):
                    # Terminator of a line already emitted in chunks.
                    split = False
                    continue
                split = False
            if not raw:
                break

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            runtime.log(line, origin)
            if tail is not None and line.strip():
                tail.append(line.strip())
            if on_line is not None:
                on_line(line, origin)

    async def _drain(self, readers: List[asyncio.Task]) -> None:
        """Wait for the output pumps; give up if a stray child keeps the pipes open."""
        _, pending = await asyncio.wait(readers, timeout=max(self.kill_grace, 1.0))
        for reader in pending:
            reader.cancel()

    async def _terminate(self, process: asyncio.subprocess.Process, runtime: JobRuntime) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        if process.returncode is not None:
            return

        logger.info("Terminating process", job_id=runtime.job.id, pid=process.pid, reason=runtime.context.reason)
        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
            return
        except asyncio.TimeoutError:
            logger.warning("Process ignored SIGTERM, killing", job_id=runtime.job.id, pid=process.pid)

        self._signal(process, signal.SIGKILL if not IS_WINDOWS else signal.SIGTERM)
        await process.wait()

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, signum: int) -> None:
        try:
            if IS_WINDOWS:
                if signum == signal.SIGTERM:
                    process.terminate()
                else:
                    process.kill()
            else:
                os.killpg(process.pid, signum)
        except ProcessLookupError:
            pass


def job_environment(runtime: JobRuntime) -> Dict[str, str]:
    """Inherited environment plus JOB_ID and the job's parameters."""
    env = os.environ.copy()
    env["JOB_ID"] = runtime.job.id
    for key, value in runtime.job.params.items():
        env[str(key)] = "" if value is None else str(value)
    return env
