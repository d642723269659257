from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from structlog.typing import FilteringBoundLogger

from cmdwatch.config import RunnerSettings
from cmdwatch.logger import get_logger
from cmdwatch.runner.backoff import BackoffParameters, BackoffSequence, DoneSignal
from cmdwatch.runner.types import CommandDescriptor, ExecutionResult
from cmdwatch.runner.watchdog import WatchdogRunner


Check = Callable[[], Awaitable[bool]]  # Async "succeeded?" check.
Sleep = Callable[[float], Awaitable[object]]


def is_ambiguous_failure(result: ExecutionResult) -> bool:
    """Failed without printing anything to stdout: usually a hang or an early crash."""
    return not result.is_ok and result.stdout == ""


class CommandDriver:
    """Runs commands with configured defaults and an optional verbose re-run."""

    def __init__(
        self,
        settings: RunnerSettings | None = None,
        *,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self._settings = settings or RunnerSettings()
        self.log_event: FilteringBoundLogger = logger or get_logger("proc.event")

    def _prepare(self, descriptor: CommandDescriptor) -> CommandDescriptor:
        if not self._settings.default_env:
            return descriptor
        # descriptor overrides win over configured defaults
        env = {**self._settings.default_env, **descriptor.env}
        return CommandDescriptor(
            exe=descriptor.exe, args=descriptor.args, cwd=descriptor.cwd, env=env
        )

    async def _run_once(self, descriptor: CommandDescriptor) -> ExecutionResult:
        runner = WatchdogRunner(
            descriptor, kill_grace_sec=self._settings.kill_grace_sec, logger=self.log_event
        )
        return await runner.run(self._settings.timeout_sec)

    async def run(
        self, descriptor: CommandDescriptor, *, expect_error: bool = False
    ) -> ExecutionResult:
        """
        Run once; on an ambiguous failure re-run once with `verbose_args` appended.

        The re-run is a diagnostic aid only. Its result replaces the first one.
        """
        descriptor = self._prepare(descriptor)
        result = await self._run_once(descriptor)

        if expect_error or not is_ambiguous_failure(result) or result.start_failed:
            return result
        if not self._settings.verbose_args:
            return result

        self.log_event.warning(
            "proc.ambiguous_failure",
            outcome=result.outcome.kind,
            exit_code=result.exit_code,
            stderr=result.stderr,
            rerun_args=self._settings.verbose_args,
        )
        rerun = await self._run_once(descriptor.with_args(*self._settings.verbose_args))
        if not rerun.is_ok:
            self.log_event.error(
                "proc.rerun_failed",
                outcome=rerun.outcome.kind,
                exit_code=rerun.exit_code,
                stdout=rerun.stdout,
                stderr=rerun.stderr,
            )
        return rerun


async def retry(
    check: Check,
    params: BackoffParameters,
    *,
    done: DoneSignal | None = None,
    sleep: Sleep = asyncio.sleep,
    logger: FilteringBoundLogger | None = None,
) -> bool:
    """
    Call `check` until it returns True, waiting out backoff delays in between.

    Returns False once the delays run out or `done` is set.
    """
    log = logger or get_logger("retry")
    delays = BackoffSequence(params, done)
    attempt = 0
    while True:
        attempt += 1
        if await check():
            log.debug("retry.ok", attempt=attempt)
            return True

        delay = delays.next_delay()
        if delay is None:
            log.warning("retry.exhausted", attempts=attempt)
            return False

        log.debug("retry.wait", attempt=attempt, delay_s=delay)
        await sleep(delay)
