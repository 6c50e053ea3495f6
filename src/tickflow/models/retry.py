"""
In-tick retry policy for node handlers.

Design Pattern: Strategy Pattern
A node carries its own RetryPolicy; execute_node() asks the policy how long
to back off and never hard-codes a schedule.

A node without a policy gets exactly one attempt per tick. Retries happen
inside the tick: the run is not re-queued between attempts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often a failing node is re-invoked within one tick.

    Only errors classified as retryable (see NodeError.is_retryable) and
    handler timeouts consume extra attempts.

    Examples:
        node = NodeDefinition("charge", charge, retry=RetryPolicy.STANDARD)

        node = NodeDefinition(
            "fetch",
            fetch,
            retry=RetryPolicy(max_attempts=5, initial_delay_ms=200, max_delay_ms=5_000),
        )
    """

    max_attempts: int
    """Total handler invocations per tick, the first one included."""

    initial_delay_ms: int = 1000
    """Backoff after the first failed attempt."""

    max_delay_ms: int = 30000
    """Upper bound on any single backoff."""

    backoff_multiplier: float = 2.0
    """Growth factor applied to the delay after each failed attempt."""

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        AGGRESSIVE: RetryPolicy
    else:
        # Assigned below, once the class exists
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        AGGRESSIVE = cast("RetryPolicy", None)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """Policy with ``max_attempts`` and the STANDARD delays."""
        return cls(max_attempts=max_attempts)

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Milliseconds to wait after ``attempt`` (1-indexed) failed.

        ``initial_delay_ms * backoff_multiplier ** (attempt - 1)``, capped at
        ``max_delay_ms``. None once ``attempt`` was the last one allowed.

            RetryPolicy.STANDARD.delay_for_attempt(1)  # 1000
            RetryPolicy.STANDARD.delay_for_attempt(2)  # 2000
            RetryPolicy.STANDARD.delay_for_attempt(3)  # None
        """
        if attempt >= self.max_attempts:
            return None
        delay_ms = self.initial_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return int(min(delay_ms, self.max_delay_ms))

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay_ms": self.initial_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        return cls(**{key: data[key] for key in cls.__dataclass_fields__ if key in data})


RetryPolicy.NONE = RetryPolicy(
    max_attempts=1, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0
)

RetryPolicy.STANDARD = RetryPolicy(max_attempts=3)

RetryPolicy.AGGRESSIVE = RetryPolicy(
    max_attempts=10,
    initial_delay_ms=100,
    max_delay_ms=10_000,
    backoff_multiplier=1.5,
)
