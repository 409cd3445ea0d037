"""
Retry policies.

Each subsystem consults exactly one policy object: the extraction queue asks
a BackoffPolicy whether and when to requeue a failed job, the orchestrator
asks a SceneRetryPolicy for the tenacity controller that drives a scene's
analysis attempts.
"""

import re
from dataclasses import dataclass
from typing import Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
    wait_none,
)

from scenebreak.config import Settings, get_settings
from scenebreak.utils.errors import AnalysisFailure
from scenebreak.utils.logging import get_logger

logger = get_logger(__name__)


def compact_error(error: BaseException, max_length: int = 200) -> str:
    """
    Create a short, human-readable reason for an exception.

    Args:
        error: The exception to compact
        max_length: Maximum message length

    Returns:
        "<ExceptionType>: <message>" with well-known causes simplified
    """
    error_type = type(error).__name__
    error_msg = str(error)

    patterns = [
        (r"rate.?limit|429", "Rate limit hit"),
        (r"json.?decode|invalid.?json|expecting value", "Invalid JSON response"),
        (r"connection.?refused|connection.?error|connecterror", "Connection failed"),
        (r"unauthorized|401|403", "Authentication failed"),
    ]
    error_lower = error_msg.lower()
    for pattern, simplified in patterns:
        if re.search(pattern, error_lower):
            return f"{error_type}: {simplified}"

    if len(error_msg) > max_length:
        return f"{error_type}: {error_msg[:max_length]}..."
    return f"{error_type}: {error_msg}" if error_msg else error_type


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Requeue policy for extraction jobs.

    Delay before the retry that follows failed attempt n is
    base_ms * factor ** (n - 1), with n capped at cap_attempt, so the
    defaults give 1s, 2s, 4s.
    """

    max_attempts: int = 3
    base_ms: int = 1000
    factor: float = 2.0
    cap_attempt: int = 3

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BackoffPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.extraction_max_attempts,
            base_ms=settings.extraction_backoff_base_ms,
            factor=settings.extraction_backoff_factor,
        )

    def can_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Backoff in seconds after the given (1-based) failed attempt."""
        exponent = min(max(attempt, 1), self.cap_attempt) - 1
        return (self.base_ms * (self.factor ** exponent)) / 1000.0


@dataclass(frozen=True)
class SceneRetryPolicy:
    """Attempt ceiling and pacing for scene analysis."""

    max_attempts: int = 3
    auto_retry: bool = True
    wait_seconds: float = 0.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SceneRetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.scene_max_attempts,
            auto_retry=settings.scene_auto_retry,
            wait_seconds=settings.scene_retry_wait_seconds,
        )

    def remaining(self, retry_count: int) -> int:
        return max(self.max_attempts - retry_count, 0)

    def attempts_per_run(self, retry_count: int) -> int:
        """Attempts one processing pass may make before giving up."""
        remaining = self.remaining(retry_count)
        return remaining if self.auto_retry else min(remaining, 1)

    def retrying(self, retry_count: int) -> AsyncRetrying:
        """
        Tenacity controller for one pass over a scene.

        Only AnalysisFailure is retried; anything else (balance, state
        errors) propagates on the first occurrence.
        """
        return AsyncRetrying(
            stop=stop_after_attempt(max(self.attempts_per_run(retry_count), 1)),
            wait=wait_fixed(self.wait_seconds) if self.wait_seconds > 0 else wait_none(),
            retry=retry_if_exception_type(AnalysisFailure),
            before_sleep=_log_scene_retry,
            reraise=True,
        )


def _log_scene_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        f"Analysis attempt {retry_state.attempt_number} failed, retrying: "
        f"{compact_error(error) if error else 'unknown error'}"
    )
