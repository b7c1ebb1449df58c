"""
Decisions for an unreachable remote mirror.

When the mileage cache cannot download or upload its remote copy it asks a
SyncConflictResolver what to do. The desktop application answers with a
modal prompt; batch runs and tests use one of the policies below.
"""

import asyncio
from enum import Enum
from typing import Optional, Protocol

import structlog

from backend.core.config import SyncConfig
from backend.core.database import RetryConfig
from .exceptions import SyncUnavailableError

logger = structlog.get_logger(__name__)


class SyncStage(str, Enum):
    OPEN = "open"
    CLOSE = "close"


class SyncDecision(str, Enum):
    RETRY = "retry"
    CONTINUE = "continue"
    ABORT = "abort"


class SyncConflictResolver(Protocol):
    async def resolve(self, error: SyncUnavailableError, attempt: int) -> SyncDecision:
        """
        Choose how to proceed after a failed sync attempt.

        Args:
            error: The failure, with ``error.stage`` set to a SyncStage value
            attempt: 1-based number of the attempt that just failed
        """
        ...


class AlwaysContinueResolver:
    """Non-interactive policy: carry on without the remote copy"""

    async def resolve(self, error: SyncUnavailableError, attempt: int) -> SyncDecision:
        logger.warning("sync_continue_without_remote", stage=error.stage, attempt=attempt, error=str(error.cause))
        return SyncDecision.CONTINUE


class AlwaysAbortResolver:
    """Non-interactive policy: stop rather than work without the remote copy"""

    async def resolve(self, error: SyncUnavailableError, attempt: int) -> SyncDecision:
        logger.error("sync_aborted", stage=error.stage, attempt=attempt, error=str(error.cause))
        return SyncDecision.ABORT


class BoundedRetryResolver:
    """
    Retry with exponential backoff, then fall back to a fixed decision.

    This bounds the wait that an interactive prompt would leave open-ended.
    """

    def __init__(
        self,
        max_retries: int = 3,
        fallback: SyncDecision = SyncDecision.CONTINUE,
        retry_config: Optional[RetryConfig] = None,
    ):
        if fallback == SyncDecision.RETRY:
            raise ValueError("Fallback decision must be CONTINUE or ABORT")
        self.max_retries = max_retries
        self.fallback = fallback
        self.retry_config = retry_config or RetryConfig(base_delay=1.0, max_delay=30.0)

    @classmethod
    def from_config(cls, config: SyncConfig) -> "BoundedRetryResolver":
        return cls(
            max_retries=config.sync_retry_attempts,
            fallback=SyncDecision(config.sync_fallback_decision),
            retry_config=RetryConfig(
                base_delay=config.sync_retry_base_delay_seconds,
                max_delay=config.sync_retry_max_delay_seconds,
            ),
        )

    async def resolve(self, error: SyncUnavailableError, attempt: int) -> SyncDecision:
        if attempt <= self.max_retries:
            delay = self.retry_config.delay_for(attempt - 1)
            logger.warning(
                "sync_retry_scheduled",
                stage=error.stage,
                attempt=attempt,
                delay_seconds=round(delay, 2),
                error=str(error.cause),
            )
            await asyncio.sleep(delay)
            return SyncDecision.RETRY

        logger.warning(
            "sync_retries_exhausted",
            stage=error.stage,
            attempts=attempt,
            decision=self.fallback.value,
        )
        return self.fallback
