"""
Async utilities for process supervision.

- merge_env(): derives a child environment without touching os.environ
- abort_signal() / send_abort(): stack-trace-producing abort with a terminate fallback
- cancel_task(): safe cancellation of an asyncio.Task
- read_stream(): reads a process stream to EOF
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from collections.abc import Mapping

from structlog.typing import FilteringBoundLogger


def merge_env(
    overrides: Mapping[str, str] | None, base: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Overlay `overrides` on `base` (default: os.environ). Empty keys are dropped."""
    source = os.environ if base is None else base
    env = {key: value for key, value in source.items() if key}
    if overrides:
        for key, value in overrides.items():
            if not key:
                continue
            env[key] = value
    return env


def abort_signal() -> signal.Signals:
    """SIGABRT where available (Go/Python runtimes dump stacks on it), else SIGTERM."""
    return getattr(signal, "SIGABRT", signal.SIGTERM)


def send_abort(process: asyncio.subprocess.Process, log: FilteringBoundLogger) -> str | None:
    """Deliver the abort signal; return the name of what was sent, None if the process was gone."""
    if process.returncode is not None:
        return None

    sig = abort_signal()
    try:
        process.send_signal(sig)
        return sig.name
    except ProcessLookupError:
        return None
    except (ValueError, OSError) as exc:
        log.warning("signal.abort_error", pid=process.pid, signal=sig.name, error=repr(exc))

    try:
        process.terminate()
    except ProcessLookupError:
        return None
    return "terminate"


async def cancel_task(task: asyncio.Task[object] | None) -> None:
    """
    Cancel a task and await its completion, suppressing its exceptions.

    A cancellation aimed at the calling task while it waits is re-raised.
    """
    if task is None or task.done():
        return
    current = asyncio.current_task()
    cancels_before = current.cancelling() if current is not None else 0
    task.cancel()
    with contextlib.suppress(Exception):
        try:
            await task
        except asyncio.CancelledError:
            if current is not None and current.cancelling() > cancels_before:
                raise


async def read_stream(reader: asyncio.StreamReader | None, chunk_size: int = 64 * 1024) -> str:
    """Read a stream until EOF and decode it; nothing is truncated."""
    if reader is None:
        return ""

    chunks: list[bytes] = []
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks).decode(errors="replace")
