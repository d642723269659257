from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from typing import Protocol


class DoneSignal(Protocol):
    """Anything with `is_set()`: asyncio.Event, threading.Event, ..."""

    def is_set(self) -> bool: ...


@dataclass(slots=True, frozen=True)
class BackoffParameters:
    """Параметры экспоненциальной задержки между повторами"""

    # минимальная (первая) задержка в секундах
    min_sec: float
    # максимальная задержка в секундах; после нее последовательность заканчивается
    max_sec: float
    # множитель роста задержки
    step: float

    def validate(self) -> None:
        """Проверка параметров. Генератор сам ее не вызывает, это забота вызывающего."""
        if self.min_sec <= 0 or self.max_sec <= 0:
            raise ValueError("backoff durations must be positive")
        if self.min_sec > self.max_sec:
            raise ValueError(f"min_sec ({self.min_sec}) > max_sec ({self.max_sec})")
        if self.step <= 1:
            raise ValueError(f"step must be > 1, got {self.step}")


DEFAULT_BACKOFF = BackoffParameters(min_sec=0.25, max_sec=4.0, step=2.0)

NS_PER_SEC = 1_000_000_000


def _to_ns(seconds: float) -> int:
    return round(seconds * NS_PER_SEC)


def _backoff_ns(params: BackoffParameters, attempt: int) -> int:
    # целые наносекунды, чтобы min * step**n == max совпадало точно
    min_ns = _to_ns(params.min_sec)
    max_ns = _to_ns(params.max_sec)
    try:
        duration = int(min_ns * (params.step**attempt))
    except (OverflowError, ValueError):
        return max_ns
    if duration < min_ns:
        return min_ns
    if duration > max_ns:
        return max_ns
    return duration


def backoff_duration(params: BackoffParameters, attempt: int) -> float:
    """Задержка для попытки `attempt` (с нуля), зажатая в [min_sec, max_sec]"""
    return _backoff_ns(params, attempt) / NS_PER_SEC


class BackoffSequence:
    """
    Pull-based sequence of backoff delays.

    Ends after emitting `max_sec` or once cancelled (via cancel() or the
    optional `done` signal). Never sleeps; the caller waits out each delay.
    Single consumer, single use.
    """

    __slots__ = ("_params", "_done", "_attempt", "_terminal", "_cancelled")

    def __init__(self, params: BackoffParameters, done: DoneSignal | None = None) -> None:
        self._params = params
        self._done = done
        self._attempt = 0
        self._terminal = False
        self._cancelled = False

    @property
    def exhausted(self) -> bool:
        return self._terminal or self._cancelled or self._done_signalled()

    def cancel(self) -> None:
        # idempotent, and a no-op once the terminal value has been emitted
        if not self._terminal:
            self._cancelled = True

    def next_delay(self) -> float | None:
        """Next delay in seconds, or None once the sequence has ended."""
        if self.exhausted:
            return None

        duration_ns = _backoff_ns(self._params, self._attempt)
        self._attempt += 1
        if duration_ns == _to_ns(self._params.max_sec):
            self._terminal = True
        return duration_ns / NS_PER_SEC

    def _done_signalled(self) -> bool:
        return self._done is not None and self._done.is_set()

    def __iter__(self) -> Iterator[float]:
        return self

    def __next__(self) -> float:
        delay = self.next_delay()
        if delay is None:
            raise StopIteration
        return delay

    def __aiter__(self) -> AsyncIterator[float]:
        return self

    async def __anext__(self) -> float:
        delay = self.next_delay()
        if delay is None:
            raise StopAsyncIteration
        return delay


def exponential_backoff(
    params: BackoffParameters = DEFAULT_BACKOFF, done: DoneSignal | None = None
) -> BackoffSequence:
    return BackoffSequence(params, done)
