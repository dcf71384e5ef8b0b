"""
Retry utilities for ledger calls.

Only TransientNetworkError is retried. Every other error, including
RejectedTransactionError, propagates on the first occurrence.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tokenlink.config import LinkerConfig
from tokenlink.errors import TransientNetworkError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""
    max_attempts: int = 5
    initial_delay: float = 2.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: LinkerConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_max_attempts,
            initial_delay=config.retry_initial_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        )

    def wait(self) -> wait_exponential:
        """Delay strategy: ``initial_delay`` doubling per retry, capped at ``max_delay``."""
        return wait_exponential(
            multiplier=self.initial_delay,
            max=self.max_delay,
            exp_base=self.backoff_multiplier,
        )


def _log_before_sleep(step: str) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            "transient_failure_retrying",
            step=step,
            attempt=retry_state.attempt_number,
            delay_seconds=retry_state.next_action.sleep,
            error=str(error),
            tx_hash=getattr(error, "tx_hash", None),
        )
    return log


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    step: str,
) -> T:
    """
    Run ``operation``, retrying transient network failures with backoff.

    Args:
        operation: Zero-argument coroutine function to run
        policy: Retry bounds
        step: Step name for logging

    Raises:
        TransientNetworkError: When the last attempt still fails transiently
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=policy.wait(),
            retry=retry_if_exception_type(TransientNetworkError),
            before_sleep=_log_before_sleep(step),
            reraise=True,
        ):
            with attempt:
                return await operation()
    except TransientNetworkError as e:
        logger.error("retries_exhausted", step=step, attempts=policy.max_attempts, error=str(e))
        raise
