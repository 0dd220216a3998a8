"""
Shared runtime pieces: structured logging, the Result type and task supervision.

Key patterns:
- Generic Result type for expected failures (lookup misses, delivery errors)
- Error boundary per unit of work so one failing event never starves the rest
- Bounded outcome history as the result channel for observability
"""

import logging
from collections import deque
from collections.abc import Awaitable
from typing import Any, Generic, TypeVar

import structlog

from notifier.domain.models import TaskOutcome


def _configure_structlog(renderer: Any) -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Route structlog through stdlib logging at ``level`` with JSON or console output."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))

    renderer: Any = (
        structlog.dev.ConsoleRenderer() if fmt == "console" else structlog.processors.JSONRenderer()
    )
    _configure_structlog(renderer)


_configure_structlog(structlog.processors.JSONRenderer())

logger = structlog.get_logger(__name__)


class NotifierError(Exception):
    """Base class for notifier failures that are reported, not raised, at the edges."""


class FeedError(NotifierError):
    """A read, update or subscription against the mutation feed failed."""


class DeliveryError(NotifierError):
    """The push delivery endpoint could not accept a notification."""


ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Used where failure is part of normal operation: a missing device binding,
    an unreachable delivery endpoint, one broken appointment in a scan.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


class TaskSupervisor:
    """
    Error boundary for event handlers and per-appointment reminder work.

    Every unit of work is awaited through ``run()``. Exceptions are caught, logged
    and recorded as a failed ``TaskOutcome`` instead of escaping to the listener
    or the scheduler loop.
    """

    def __init__(self, history_size: int = 1000) -> None:
        self.outcomes: deque[TaskOutcome] = deque(maxlen=history_size)
        self.failure_count = 0
        self.success_count = 0
        self.logger = logger.bind(component="task_supervisor")

    async def run(self, name: str, work: Awaitable[Any]) -> Result[Any, Exception]:
        """Await ``work`` inside an error boundary and record its outcome."""
        try:
            value = await work
        except Exception as e:
            self.logger.exception("task_failed", task=name, error=str(e))
            self._record(TaskOutcome(name=name, ok=False, error=str(e) or type(e).__name__))
            return Result.err(e)

        self._record(TaskOutcome(name=name, ok=True))
        # Result.ok() rejects None, so plain coroutines report their name instead.
        return Result.ok(value if value is not None else name)

    def recent_failures(self, limit: int = 20) -> list[TaskOutcome]:
        return [o for o in self.outcomes if not o.ok][-limit:]

    def _record(self, outcome: TaskOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.ok:
            self.success_count += 1
        else:
            self.failure_count += 1
