from __future__ import annotations

import asyncio
import contextlib
import time

from structlog.typing import FilteringBoundLogger

from cmdwatch.logger import get_logger
from cmdwatch.runner.process_utils import cancel_task, merge_env, read_stream, send_abort
from cmdwatch.runner.types import (
    CommandDescriptor,
    Completed,
    ExecutionResult,
    Outcome,
    StartFailed,
    TimedOut,
)


class WatchdogRunner:
    """
    Runs one external command under a deadline.

    Process exit and the deadline race in a single asyncio.wait(); whichever is
    observed first decides the outcome and the other task is cancelled before it
    can act. A runner supervises exactly one invocation.
    """

    def __init__(
        self,
        descriptor: CommandDescriptor,
        *,
        kill_grace_sec: float = 5.0,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self._descriptor = descriptor
        self._kill_grace_sec = kill_grace_sec
        self._log: FilteringBoundLogger = (logger or get_logger("proc.event")).bind(
            exe=descriptor.exe
        )
        self._used = False
        # stays None when the process never started
        self.deadline_task: asyncio.Task[None] | None = None

    async def run(self, timeout_sec: float) -> ExecutionResult:
        if self._used:
            raise RuntimeError("WatchdogRunner is single-use; create a new one per invocation")
        self._used = True

        descriptor = self._descriptor
        env = merge_env(descriptor.env)
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                descriptor.exe,
                *descriptor.args,
                cwd=descriptor.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._log.error(
                "proc.start_error",
                error=type(exc).__name__,
                args=list(descriptor.args),
                cwd=descriptor.cwd,
            )
            return ExecutionResult(
                stdout="",
                stderr="",
                outcome=StartFailed(cause=f"{type(exc).__name__}: {exc}"),
                duration_sec=time.monotonic() - started,
            )

        self._log.info(
            "proc.started", pid=process.pid, cwd=descriptor.cwd, timeout_s=timeout_sec
        )

        stdout_task = asyncio.create_task(
            read_stream(process.stdout), name=f"read:{process.pid}:stdout"
        )
        stderr_task = asyncio.create_task(
            read_stream(process.stderr), name=f"read:{process.pid}:stderr"
        )

        try:
            outcome, aborted_with = await self._supervise(process, timeout_sec)
        except asyncio.CancelledError:
            await cancel_task(stdout_task)
            await cancel_task(stderr_task)
            raise

        # output is complete only once both readers hit EOF
        stdout, stderr = await asyncio.gather(stdout_task, stderr_task)
        duration = time.monotonic() - started

        self._log.info(
            "proc.exit",
            pid=process.pid,
            outcome=outcome.kind,
            returncode=process.returncode,
            aborted_with=aborted_with,
            duration_s=round(duration, 3),
        )
        return ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            outcome=outcome,
            duration_sec=duration,
            aborted_with=aborted_with,
        )

    async def _supervise(
        self, process: asyncio.subprocess.Process, timeout_sec: float
    ) -> tuple[Outcome, str | None]:
        exit_wait = asyncio.create_task(process.wait(), name=f"wait:{process.pid}")
        deadline = asyncio.create_task(
            asyncio.sleep(max(timeout_sec, 0.0)), name=f"deadline:{process.pid}"
        )
        self.deadline_task = deadline

        try:
            return await self._race(process, exit_wait, deadline, timeout_sec)
        except asyncio.CancelledError:
            # caller gave up at any stage: do not leave the child running
            await cancel_task(deadline)
            await self._kill(process)
            await cancel_task(exit_wait)
            raise

    async def _race(
        self,
        process: asyncio.subprocess.Process,
        exit_wait: asyncio.Task[int],
        deadline: asyncio.Task[None],
        timeout_sec: float,
    ) -> tuple[Outcome, str | None]:
        done, _ = await asyncio.wait({exit_wait, deadline}, return_when=asyncio.FIRST_COMPLETED)

        # exit observed (even in the same tick as the deadline): never signal
        if exit_wait in done:
            await cancel_task(deadline)
            return Completed(exit_code=exit_wait.result()), None

        self._log.warning("proc.timeout", pid=process.pid, timeout_s=timeout_sec)
        aborted_with = send_abort(process, self._log)

        try:
            await asyncio.wait_for(asyncio.shield(exit_wait), timeout=self._kill_grace_sec)
        except TimeoutError:
            self._log.error("proc.abort_ignored", pid=process.pid, grace_s=self._kill_grace_sec)
            await self._kill(process)
            await exit_wait

        return TimedOut(), aborted_with

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        await process.wait()


async def run_command(
    descriptor: CommandDescriptor,
    timeout_sec: float,
    *,
    kill_grace_sec: float = 5.0,
    logger: FilteringBoundLogger | None = None,
) -> ExecutionResult:
    """Run `descriptor` once under a fresh watchdog."""
    runner = WatchdogRunner(descriptor, kill_grace_sec=kill_grace_sec, logger=logger)
    return await runner.run(timeout_sec)
