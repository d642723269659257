"""
Type definitions for watchdog-supervised command execution.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import ClassVar, Literal, TypeAlias


# Command specification for a single invocation.
@dataclass(slots=True, frozen=True)
class CommandDescriptor:
    exe: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # freeze caller-owned containers so later mutation cannot leak into a run
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @property
    def argv(self) -> list[str]:
        return [self.exe, *self.args]

    def with_args(self, *extra: str) -> CommandDescriptor:
        return replace(self, args=(*self.args, *extra), env=dict(self.env))


@dataclass(slots=True, frozen=True)
class Completed:
    exit_code: int

    kind: ClassVar[Literal["completed"]] = "completed"

    @property
    def is_ok(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True, frozen=True)
class StartFailed:
    cause: str

    kind: ClassVar[Literal["start_failed"]] = "start_failed"

    @property
    def is_ok(self) -> bool:
        return False


@dataclass(slots=True, frozen=True)
class TimedOut:
    kind: ClassVar[Literal["timed_out"]] = "timed_out"

    @property
    def is_ok(self) -> bool:
        return False


Outcome: TypeAlias = Completed | StartFailed | TimedOut


# Captured output and terminal outcome of one invocation.
@dataclass(slots=True, frozen=True)
class ExecutionResult:
    stdout: str
    stderr: str
    outcome: Outcome
    duration_sec: float = 0.0
    # name of the signal delivered by the watchdog, None if it never fired
    aborted_with: str | None = None

    @property
    def is_ok(self) -> bool:
        return self.outcome.is_ok

    @property
    def timed_out(self) -> bool:
        return isinstance(self.outcome, TimedOut)

    @property
    def start_failed(self) -> bool:
        return isinstance(self.outcome, StartFailed)

    @property
    def exit_code(self) -> int | None:
        if isinstance(self.outcome, Completed):
            return self.outcome.exit_code
        return None
