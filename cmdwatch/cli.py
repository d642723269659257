from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import typer

from cmdwatch.config import AppConfig
from cmdwatch.logger import configure_logging, get_logger
from cmdwatch.runner.backoff import BackoffParameters, BackoffSequence
from cmdwatch.runner.driver import CommandDriver, retry
from cmdwatch.runner.types import CommandDescriptor, ExecutionResult, StartFailed


app = typer.Typer(help="Run external commands under a watchdog deadline")

# exit codes mirror coreutils `timeout`
EXIT_TIMED_OUT = 124
EXIT_START_FAILED = 127


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value  # last one wins
    return env


def exit_code_for(result: ExecutionResult) -> int:
    if result.timed_out:
        return EXIT_TIMED_OUT
    if isinstance(result.outcome, StartFailed):
        return EXIT_START_FAILED
    return result.exit_code or 0


async def _run(
    cfg: AppConfig, descriptor: CommandDescriptor, retries: int, expect_error: bool
) -> ExecutionResult:
    driver = CommandDriver(cfg.runner)
    results: list[ExecutionResult] = []

    async def _attempt() -> bool:
        result = await driver.run(descriptor, expect_error=expect_error)
        results.append(result)
        # start failures are not retried; out of attempts also stops the loop
        return result.is_ok or result.start_failed or len(results) > retries

    await retry(_attempt, cfg.backoff.parameters())
    return results[-1]


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def run(
    ctx: typer.Context,
    exe: str = typer.Argument(..., help="Executable to run"),
    timeout: Optional[float] = typer.Option(None, help="Deadline in seconds"),
    cwd: Optional[str] = typer.Option(None, help="Working directory"),
    env: list[str] = typer.Option([], "--env", "-e", help="KEY=VALUE override"),
    retries: int = typer.Option(0, min=0, help="Extra attempts paced by backoff"),
    expect_error: bool = typer.Option(False, help="Do not re-run verbosely on failure"),
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
) -> None:
    """Run EXE [ARGS...] and print its captured output."""
    cfg = AppConfig.from_yaml(config)
    if timeout is not None:
        cfg.runner.timeout_sec = timeout
    configure_logging(cfg.log.level, json=cfg.log.json_output)

    descriptor = CommandDescriptor(exe=exe, args=tuple(ctx.args), cwd=cwd, env=_parse_env(env))
    result = asyncio.run(_run(cfg, descriptor, retries, expect_error))

    sys.stdout.write(result.stdout)
    sys.stderr.write(result.stderr)
    if isinstance(result.outcome, StartFailed):
        get_logger("cli").error("cli.start_failed", cause=result.outcome.cause)
    raise typer.Exit(code=exit_code_for(result))


@app.command()
def delays(
    min_sec: Optional[float] = typer.Option(None, help="First delay"),
    max_sec: Optional[float] = typer.Option(None, help="Last (capped) delay"),
    step: Optional[float] = typer.Option(None, help="Growth factor"),
    limit: int = typer.Option(50, min=1, help="Stop after this many values"),
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
) -> None:
    """Print the backoff delays the retry loop would wait."""
    cfg = AppConfig.from_yaml(config)
    params = BackoffParameters(
        min_sec=cfg.backoff.min_sec if min_sec is None else min_sec,
        max_sec=cfg.backoff.max_sec if max_sec is None else max_sec,
        step=cfg.backoff.step if step is None else step,
    )
    try:
        params.validate()
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    for index, delay in enumerate(BackoffSequence(params)):
        if index >= limit:
            break
        typer.echo(f"{delay:g}")


if __name__ == "__main__":
    app()
