from dataclasses import dataclass

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from tern.constants import (
    RETRY_INITIAL_BACKOFF,
    RETRY_JITTER,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_BACKOFF,
    RETRYABLE_STATUSES,
)
from tern.errors import NetworkError
from tern.logging import get_logger

_logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Shared by model requests and remote tool calls."""

    max_attempts: int = RETRY_MAX_ATTEMPTS
    initial_backoff: float = RETRY_INITIAL_BACKOFF
    max_backoff: float = RETRY_MAX_BACKOFF
    jitter: float = RETRY_JITTER
    retryable_statuses: frozenset[int] = RETRYABLE_STATUSES

    def is_retryable(self, exc: BaseException) -> bool:
        if not isinstance(exc, NetworkError):
            return False
        # status None means the connection itself failed
        return exc.status is None or exc.status in self.retryable_statuses

    def _log_retry(self, retry_state) -> None:
        _logger.warning(
            "Request failed (attempt %d/%d), retrying: %s",
            retry_state.attempt_number,
            self.max_attempts,
            retry_state.outcome.exception(),
        )

    async def run(self, fn, *args, **kwargs):
        retrying = AsyncRetrying(
            retry=retry_if_exception(self.is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(initial=self.initial_backoff, max=self.max_backoff, jitter=self.jitter),
            reraise=True,
            before_sleep=self._log_retry,
        )
        return await retrying(fn, *args, **kwargs)


NO_RETRY = RetryPolicy(max_attempts=1)
