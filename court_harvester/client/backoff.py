"""
Retry and backoff policy for failed search requests.
Only transient failures (network, timeout, 5xx) are retried.
"""

from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from court_harvester.errors import RemoteError
from court_harvester.logging_config import get_logger

logger = get_logger("client.backoff")


def is_transient(error: BaseException) -> bool:
    """Retry network errors and 5xx; never quota or other 4xx."""
    return isinstance(error, RemoteError) and error.retryable


@dataclass
class RetryPolicy:
    """
    Exponential backoff policy.
    `max_retries` counts retries, so a request is attempted at most
    max_retries + 1 times.
    """
    max_retries: int = 3
    multiplier: float = 0.5
    min_wait: float = 0.2
    max_wait: float = 8.0

    def _log_retry(self, retry_state: RetryCallState):
        error = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Retry {retry_state.attempt_number}/{self.max_retries} in {wait:.2f}s: {error}",
            extra={"http_code": getattr(error, "status", None)}
        )

    def retrying(self) -> AsyncRetrying:
        """Build a tenacity controller for one logical request."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.multiplier,
                min=self.min_wait,
                max=self.max_wait,
            ),
            retry=retry_if_exception(is_transient),
            before_sleep=self._log_retry,
            reraise=True,
        )
