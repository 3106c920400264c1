"""
Retry, backoff and error-ledger bookkeeping around stage handlers.

The recovery manager is the single place retry policy lives. It wraps one
asynchronous handler invocation and:

- retries handler failures up to ``max_retries`` attempts in total
- waits ``initial_delay * backoff_multiplier ** (n - 1)`` seconds before the
  n-th retry (no jitter, no cap; large multipliers grow delays quickly)
- records the first failure as a ``stage_errors`` row and increments its
  retry count on every later failure of the same call
- resolves that row if a later attempt succeeds
- raises ``StageExhaustedError`` once the budget is spent

Structural errors (not found, invalid transition, precondition, payload
validation) are re-raised immediately: retrying cannot fix them and they are
not written to the ledger.

Example:
    >>> recovery = RecoveryManager(store)
    >>> result = await recovery.execute_with_retry(
    ...     issue.id,
    ...     Stage.CONTENT_WRITING,
    ...     lambda: content_handler.run(issue),
    ...     on_retry=notify_retry,
    ... )
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.exceptions import STRUCTURAL_ERRORS, StageExhaustedError
from magazine_pipeline.models.domain import RetryInfo
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)

T = TypeVar("T")

OnRetry = Callable[[int, int, Exception, float], Awaitable[None]]
"""``on_retry(attempt, max_retries, error, next_delay)`` notification hook."""


class RetryConfig(BaseModel):
    """Retry policy for one stage. Delays are in seconds."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=2, ge=1, description="Total attempts, including the first")
    initial_delay: float = Field(default=1.0, gt=0, description="Delay before the first retry")
    backoff_multiplier: float = Field(default=2.0, ge=1, description="Growth factor applied after each wait")

    def delays(self) -> list[float]:
        """Waits between consecutive attempts, in order."""
        return [self.initial_delay * self.backoff_multiplier**n for n in range(self.max_retries - 1)]


class RetryOverride(BaseModel):
    """Partial retry policy. Unset fields keep the stage's default."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int | None = Field(default=None, ge=1)
    initial_delay: float | None = Field(default=None, gt=0)
    backoff_multiplier: float | None = Field(default=None, ge=1)

    def apply(self, base: RetryConfig) -> RetryConfig:
        return base.model_copy(update=self.model_dump(exclude_none=True))


# Topic selection is cheap and tolerant of retries; content writing is the
# costliest generation call.
DEFAULT_RETRY_CONFIGS: dict[Stage, RetryConfig] = {
    Stage.TOPIC_SELECTION: RetryConfig(max_retries=3, initial_delay=1.0, backoff_multiplier=2.0),
    Stage.CONTENT_WRITING: RetryConfig(max_retries=2, initial_delay=2.0, backoff_multiplier=2.0),
    Stage.IMAGE_GENERATION: RetryConfig(max_retries=2, initial_delay=1.0, backoff_multiplier=1.5),
    Stage.FIGMA_LAYOUT: RetryConfig(max_retries=2, initial_delay=1.0, backoff_multiplier=1.5),
    Stage.FINAL_OUTPUT: RetryConfig(max_retries=2, initial_delay=1.0, backoff_multiplier=1.5),
}

FALLBACK_RETRY_CONFIG = RetryConfig()


class RecoveryManager:
    """Wraps stage handlers with bounded retry and error-ledger integration.

    Attributes:
        store: Store holding the stage-error ledger.
        configs: Per-stage retry policy (defaults merged with overrides).
    """

    def __init__(
        self,
        store: PipelineStore,
        configs: Mapping[Stage, RetryConfig | RetryOverride | Mapping[str, Any]] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the recovery manager.

        Args:
            store: Store holding the stage-error ledger.
            configs: Per-stage policies. A ``RetryConfig`` replaces the stage
                default; a ``RetryOverride`` or plain mapping only replaces
                the fields it sets.
            sleep: Coroutine used to wait between attempts. Tests inject a
                recorder so nothing actually sleeps.
        """
        self.store = store
        self.configs: dict[Stage, RetryConfig] = dict(DEFAULT_RETRY_CONFIGS)
        for key, override in (configs or {}).items():
            stage = Stage(key)
            self.configs[stage] = self.config_for(stage, override)
        self._sleep = sleep

    def config_for(
        self,
        stage: Stage,
        override: RetryConfig | RetryOverride | Mapping[str, Any] | None = None,
    ) -> RetryConfig:
        """Resolve the effective retry policy for a stage.

        Args:
            stage: Stage being executed.
            override: Full config, or a partial override / mapping of fields
                layered on top of the stage's configured policy.

        Returns:
            The merged, validated config.
        """
        base = self.configs.get(stage, FALLBACK_RETRY_CONFIG)
        if override is None:
            return base
        if isinstance(override, RetryConfig):
            return override
        if isinstance(override, RetryOverride):
            return override.apply(base)
        return RetryConfig.model_validate({**base.model_dump(), **dict(override)})

    async def execute_with_retry(
        self,
        issue_id: int,
        stage: Stage,
        handler: Callable[[], Awaitable[T]],
        on_retry: OnRetry | None = None,
        config_override: RetryConfig | Mapping[str, Any] | None = None,
    ) -> T:
        """Run ``handler`` with bounded retries and exponential backoff.

        Args:
            issue_id: Issue the handler works on; owns any error rows.
            stage: Stage the handler produces data for.
            handler: Zero-argument coroutine factory; called once per attempt.
            on_retry: Optional hook invoked before each wait with
                ``(attempt, max_retries, error, next_delay)``. Its failures are
                logged and ignored.
            config_override: Full or partial retry policy for this call only.

        Returns:
            Whatever the first successful attempt returned.

        Raises:
            StageExhaustedError: If every attempt failed.
            NotFoundError, InvalidTransitionError, PreconditionError,
            PayloadValidationError: Re-raised immediately, never retried.
        """
        config = self.config_for(stage, config_override)
        delay = config.initial_delay
        error_id: int | None = None
        last_error: Exception | None = None

        for attempt in range(1, config.max_retries + 1):
            try:
                result = await handler()
            except STRUCTURAL_ERRORS:
                raise
            except Exception as e:
                last_error = e
                if error_id is None:
                    error_id = self.store.record_stage_error(issue_id, stage, str(e))
                else:
                    self.store.increment_retry_count(error_id)

                if attempt == config.max_retries:
                    break

                log.warning(
                    "stage_retry_scheduled",
                    issue_id=issue_id,
                    stage=str(stage),
                    attempt=attempt,
                    max_retries=config.max_retries,
                    delay=delay,
                    error=str(e),
                )
                if on_retry is not None:
                    try:
                        await on_retry(attempt, config.max_retries, e, delay)
                    except Exception:
                        log.warning("on_retry_hook_failed", issue_id=issue_id, stage=str(stage), exc_info=True)

                await self._sleep(delay)
                delay *= config.backoff_multiplier
            else:
                if error_id is not None:
                    self.store.mark_error_resolved(error_id)
                    log.info("stage_recovered", issue_id=issue_id, stage=str(stage), attempt=attempt)
                return result

        log.error(
            "stage_retries_exhausted",
            issue_id=issue_id,
            stage=str(stage),
            max_retries=config.max_retries,
            error=str(last_error),
        )
        raise StageExhaustedError(str(stage), config.max_retries, str(last_error))

    def has_unresolved_error(self, issue_id: int, stage: Stage) -> bool:
        return self.store.get_latest_unresolved_error(issue_id, stage) is not None

    def get_retry_info(self, issue_id: int, stage: Stage) -> RetryInfo:
        """Summarize the latest unresolved error for display."""
        error = self.store.get_latest_unresolved_error(issue_id, stage)
        if error is None:
            return RetryInfo(has_error=False, retry_count=0, message=None)
        return RetryInfo(has_error=True, retry_count=error.retry_count, message=error.error_message)

    def resolve_all(self, issue_id: int) -> int:
        """Resolve every unresolved error of an issue.

        Returns:
            Number of rows resolved.
        """
        errors = self.store.get_unresolved_errors(issue_id)
        for error in errors:
            self.store.mark_error_resolved(error.id)
        if errors:
            log.info("stage_errors_resolved", issue_id=issue_id, count=len(errors))
        return len(errors)
