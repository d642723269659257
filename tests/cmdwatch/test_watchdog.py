from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest

from cmdwatch.runner.types import (
    CommandDescriptor,
    Completed,
    ExecutionResult,
    StartFailed,
    TimedOut,
)
from cmdwatch.runner.watchdog import WatchdogRunner, run_command


def _python(code: str, **kwargs: object) -> CommandDescriptor:
    return CommandDescriptor(exe=sys.executable, args=("-c", code), **kwargs)  # type: ignore[arg-type]


# ---- 1) Fast command completes; the deadline task is cancelled, no abort ----
def test_fast_command_completes() -> None:
    runner = WatchdogRunner(_python("print('hello')"))
    result = asyncio.run(runner.run(timeout_sec=10.0))

    assert result.outcome == Completed(exit_code=0)
    assert result.is_ok
    assert result.stdout.strip() == "hello"
    assert result.aborted_with is None
    assert runner.deadline_task is not None
    assert runner.deadline_task.cancelled()


# ---- 2) Slow command is aborted; output written before the abort survives ----
def test_slow_command_times_out() -> None:
    code = "import time; print('before', flush=True); time.sleep(5); print('after')"
    started = time.monotonic()
    result = asyncio.run(run_command(_python(code), timeout_sec=0.5))
    elapsed = time.monotonic() - started

    assert result.outcome == TimedOut()
    assert result.timed_out
    assert not result.is_ok
    assert result.exit_code is None
    assert result.stdout.strip() == "before"
    assert "after" not in result.stdout
    assert result.aborted_with is not None
    assert elapsed < 4.5


@pytest.mark.skipif(sys.platform == "win32", reason="SIGABRT is POSIX-only")
def test_timeout_uses_abort_signal() -> None:
    result = asyncio.run(run_command(_python("import time; time.sleep(5)"), timeout_sec=0.3))
    assert result.aborted_with == "SIGABRT"


# ---- 3) Missing executable: StartFailed, deadline never started ----
def test_missing_executable_start_failed() -> None:
    runner = WatchdogRunner(CommandDescriptor(exe="/definitely/not/here/cmdwatch-missing"))
    result = asyncio.run(runner.run(timeout_sec=1.0))

    assert isinstance(result.outcome, StartFailed)
    assert result.start_failed
    assert "FileNotFoundError" in result.outcome.cause
    assert result.stdout == ""
    assert result.stderr == ""
    assert runner.deadline_task is None


def test_invalid_cwd_start_failed(tmp_path: Path) -> None:
    descriptor = _python("print(1)", cwd=str(tmp_path / "missing"))
    result = asyncio.run(run_command(descriptor, timeout_sec=5.0))
    assert isinstance(result.outcome, StartFailed)


# ---- 4) Environment overrides replace inherited values; empty keys ignored ----
def test_env_override_replaces_inherited(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CMDWATCH_TEST_KEY", "old")
    descriptor = _python(
        "import os; print(os.environ['CMDWATCH_TEST_KEY'])",
        env={"CMDWATCH_TEST_KEY": "new", "": "ignored"},
    )
    result = asyncio.run(run_command(descriptor, timeout_sec=10.0))

    assert result.is_ok
    assert result.stdout.strip() == "new"


def test_env_override_does_not_touch_parent(monkeypatch: pytest.MonkeyPatch) -> None:
    import os

    monkeypatch.setenv("CMDWATCH_TEST_KEY", "old")
    descriptor = _python("pass", env={"CMDWATCH_TEST_KEY": "new"})
    asyncio.run(run_command(descriptor, timeout_sec=10.0))
    assert os.environ["CMDWATCH_TEST_KEY"] == "old"


# ---- 5) Non-zero exit is a completed run with the code and stderr captured ----
def test_nonzero_exit_captures_stderr() -> None:
    code = "import sys; sys.stderr.write('boom\\n'); sys.exit(3)"
    result = asyncio.run(run_command(_python(code), timeout_sec=10.0))

    assert result.outcome == Completed(exit_code=3)
    assert result.exit_code == 3
    assert not result.is_ok
    assert result.stderr.strip() == "boom"


# ---- 6) Large output is captured completely on both streams ----
def test_large_output_not_truncated() -> None:
    code = (
        "import sys; sys.stdout.write('x' * 1_000_000); sys.stderr.write('y' * 300_000)"
    )
    result = asyncio.run(run_command(_python(code), timeout_sec=30.0))

    assert result.is_ok
    assert len(result.stdout) == 1_000_000
    assert len(result.stderr) == 300_000


# ---- 7) A runner is single-use ----
def test_runner_is_single_use() -> None:
    runner = WatchdogRunner(_python("pass"))

    async def _twice() -> None:
        await runner.run(timeout_sec=10.0)
        await runner.run(timeout_sec=10.0)

    with pytest.raises(RuntimeError):
        asyncio.run(_twice())


# ---- 8) Descriptor is immutable and isolated from the caller's containers ----
def test_descriptor_copies_env_and_args() -> None:
    env = {"A": "1"}
    args = ["-c", "pass"]
    descriptor = CommandDescriptor(exe=sys.executable, args=args, env=env)  # type: ignore[arg-type]
    env["A"] = "2"
    args.append("extra")

    assert descriptor.env["A"] == "1"
    assert descriptor.args == ("-c", "pass")
    assert descriptor.with_args("-vv").args == ("-c", "pass", "-vv")


# ---- 9) Outcome tags cannot be built with a contradicting is_ok ----
def test_outcome_is_ok_is_derived() -> None:
    with pytest.raises(TypeError):
        TimedOut(is_ok=True)  # type: ignore[call-arg]
    with pytest.raises(TypeError):
        StartFailed(cause="x", is_ok=True)  # type: ignore[call-arg]
    assert not TimedOut().is_ok
    assert TimedOut().kind == "timed_out"


# child that survives the abort signal and reports its pid once it does
IGNORE_ABORT = (
    "import os, signal, sys, time\n"
    "signal.signal(signal.SIGABRT, signal.SIG_IGN)\n"
    "open(sys.argv[1], 'w').write(str(os.getpid()))\n"
    "time.sleep(30)\n"
)


def _pid_alive(pid: int) -> bool:
    import os

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def _wait_for_file(path: Path, limit_sec: float = 10.0) -> int:
    started = time.monotonic()
    while not path.exists() or not path.read_text():
        if time.monotonic() - started > limit_sec:
            raise AssertionError(f"child never wrote {path}")
        await asyncio.sleep(0.05)
    return int(path.read_text())


# ---- 10) Abort ignored: killed after the grace period, still TimedOut ----
@pytest.mark.skipif(sys.platform == "win32", reason="SIGABRT is POSIX-only")
def test_abort_ignored_escalates_to_kill(tmp_path: Path) -> None:
    import structlog.testing

    pid_file = tmp_path / "pid"
    descriptor = CommandDescriptor(
        exe=sys.executable, args=("-c", IGNORE_ABORT, str(pid_file))
    )

    async def _go() -> tuple[ExecutionResult, float]:
        with structlog.testing.capture_logs() as logs:
            runner = WatchdogRunner(descriptor, kill_grace_sec=0.5)
            started = time.monotonic()
            result = await runner.run(timeout_sec=2.0)
        assert "proc.abort_ignored" in [entry["event"] for entry in logs]
        return result, time.monotonic() - started

    result, elapsed = asyncio.run(_go())

    assert result.outcome == TimedOut()
    assert elapsed < 10.0
    assert not _pid_alive(int(pid_file.read_text()))


# ---- 11) Caller cancellation kills the child, before or after the deadline ----
@pytest.mark.skipif(sys.platform == "win32", reason="SIGABRT is POSIX-only")
@pytest.mark.parametrize(
    ("timeout_sec", "extra_wait_sec"),
    [
        (30.0, 0.0),  # cancelled while racing exit against the deadline
        (1.0, 1.5),  # cancelled during the grace wait after an ignored abort
    ],
)
def test_cancelled_run_kills_child(
    tmp_path: Path, timeout_sec: float, extra_wait_sec: float
) -> None:
    pid_file = tmp_path / "pid"
    descriptor = CommandDescriptor(
        exe=sys.executable, args=("-c", IGNORE_ABORT, str(pid_file))
    )

    async def _go() -> tuple[int, bool]:
        runner = WatchdogRunner(descriptor, kill_grace_sec=30.0)
        task = asyncio.create_task(runner.run(timeout_sec=timeout_sec))
        pid = await _wait_for_file(pid_file)
        await asyncio.sleep(extra_wait_sec)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            return pid, True
        return pid, False

    started = time.monotonic()
    pid, cancelled = asyncio.run(_go())

    assert cancelled
    assert time.monotonic() - started < 15.0
    assert not _pid_alive(pid)
