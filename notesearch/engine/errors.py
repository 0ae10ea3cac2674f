"""Error taxonomy and failure containment for search.

- Recoverable, per-file problems are logged and skipped by the caller.
- Degraded mode (no model available) is a branch, not an exception.
- A run of consecutive model failures aborts the semantic pass via
  ``SemanticSearchAborted``.
- Cancellation is never an error.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from loguru import logger


class SearchError(Exception):
    """Base class for search failures surfaced to callers."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidQueryError(SearchError):
    """Query could not be compiled (e.g. a broken pattern in regex mode)."""


class SemanticSearchAborted(SearchError):
    """Too many consecutive model failures; the semantic pass was abandoned."""

    def __init__(self, failure_count: int, last_error: str) -> None:
        self.failure_count = failure_count
        self.last_error = last_error
        super().__init__(
            f"Semantic search failed after {failure_count} consecutive errors. "
            f"This might be due to rate limiting or API issues. Last error: {last_error}"
        )


@dataclass
class FailureRecord:
    timestamp: datetime
    subject: str
    error_type: str
    message: str


@dataclass
class ConsecutiveFailureBreaker:
    """
    Counts consecutive failures within one batch.

    A success resets the count. Once ``threshold`` failures arrive in a row
    the breaker trips and ``check()`` raises. Instances belong to a single
    call and are never shared.
    """
    name: str
    threshold: int = 3
    consecutive_failures: int = 0
    total_failures: int = 0
    last_failure: Optional[FailureRecord] = field(default=None)

    @property
    def tripped(self) -> bool:
        return self.consecutive_failures >= self.threshold

    def record_success(self) -> None:
        if self.consecutive_failures:
            logger.debug(
                f"Breaker {self.name}: reset after {self.consecutive_failures} failure(s)"
            )
        self.consecutive_failures = 0

    def record_failure(self, subject: str, error: BaseException) -> None:
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_failure = FailureRecord(
            timestamp=datetime.now(),
            subject=subject,
            error_type=type(error).__name__,
            message=str(error),
        )
        if self.tripped:
            logger.warning(
                f"Breaker {self.name}: tripped after {self.consecutive_failures} consecutive failures"
            )

    def check(self) -> None:
        """Raise ``SemanticSearchAborted`` if the breaker has tripped."""
        if self.tripped:
            last = self.last_failure.message if self.last_failure else "unknown error"
            raise SemanticSearchAborted(self.consecutive_failures, last)
