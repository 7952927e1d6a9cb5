import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from .errors import ProofNotReadyError, SessionNotFoundError, TransientError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (TransientError, ProofNotReadyError, SessionNotFoundError)


class RetryPolicy(BaseModel):
    """Bounded retry with a linear (or constant) backoff schedule."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    schedule: str = "linear"

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the zero-based ``attempt`` failed."""
        if self.schedule == "constant":
            return self.backoff_seconds
        return self.backoff_seconds * (attempt + 1)

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, RETRYABLE_ERRORS)


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    policy = policy or RetryPolicy()
    attempts = max(policy.max_attempts, 1)
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            if attempt >= attempts - 1 or not policy.is_retryable(e):
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                f"Attempt {attempt + 1}/{attempts} failed ({e}); retrying in {delay}s"
            )
            await sleep(delay)
