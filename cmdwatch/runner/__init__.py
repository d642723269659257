"""
Public API for watchdog-supervised command execution and backoff pacing.
"""

from __future__ import annotations

from .backoff import DEFAULT_BACKOFF, BackoffParameters, BackoffSequence, exponential_backoff
from .types import CommandDescriptor, Completed, ExecutionResult, StartFailed, TimedOut
from .watchdog import WatchdogRunner, run_command


__all__ = [
    "DEFAULT_BACKOFF",
    "BackoffParameters",
    "BackoffSequence",
    "CommandDescriptor",
    "Completed",
    "ExecutionResult",
    "StartFailed",
    "TimedOut",
    "WatchdogRunner",
    "exponential_backoff",
    "run_command",
]
