"""
Base class for stage handlers.

A stage handler produces the data payload for one stage: it reads whatever
approved data it depends on, calls the generation collaborator, validates the
result against its payload model and saves it as a new pending stage-data row.

Handler Lifecycle:
    Handlers are instantiated once at startup, registered in the
    ``StageDispatcher`` and reused for every issue. They must not keep
    issue-specific state on ``self``.

Handler Contract:
    - ``run()`` performs exactly one attempt. Retrying is layered on by the
      recovery manager, never done inside the handler.
    - Missing or unapproved prerequisite data raises ``PreconditionError``.
    - Malformed payloads raise ``PayloadValidationError``.
    - Any other exception is a handler failure and may be retried.

Example:
    >>> class CaptionOnlyHandler(StageHandler):
    ...     stage = Stage.FINAL_OUTPUT
    ...
    ...     async def run(self, issue: Issue, **options: Any) -> StageData:
    ...         content = self._require_approved(issue.id, Stage.CONTENT_WRITING, ContentData)
    ...         caption = await self.generator.generate_caption(content.cards)
    ...         return self._save(issue.id, caption)
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar, TypeVar

import structlog
from pydantic import BaseModel

from magazine_pipeline.engine.machine import Stage, stage_label
from magazine_pipeline.exceptions import PreconditionError
from magazine_pipeline.models.domain import Issue, StageData
from magazine_pipeline.models.payloads import dump_payload, parse_payload
from magazine_pipeline.providers.base import GenerationProvider, Notifier
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class StageHandler(ABC):
    """Abstract base class for all stage handlers.

    Attributes:
        stage: Stage this handler produces data for (set by subclasses).
        store: Persistence for stage data.
        generator: AI generation collaborator.
        notifier: Sends progress messages to the issue's context.
    """

    stage: ClassVar[Stage]

    def __init__(
        self,
        store: PipelineStore,
        generator: GenerationProvider,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.generator = generator
        self.notifier = notifier

    @abstractmethod
    async def run(self, issue: Issue, **options: Any) -> StageData:
        """Produce and persist this stage's payload for ``issue``.

        Args:
            issue: Issue being worked on.
            **options: Handler-specific options (e.g. ``search_result_index``).

        Returns:
            The newly saved, pending stage-data row.

        Raises:
            PreconditionError: If prerequisite stage data is not approved.
            PayloadValidationError: If stored or generated data is malformed.
            Exception: Any generation failure; retried by the recovery manager.
        """
        pass

    def _latest_payload(self, issue_id: int, stage: Stage, model: type[ModelT]) -> ModelT | None:
        """Validated payload of the latest row for ``(issue_id, stage)``, if any."""
        data = self.store.get_stage_data(issue_id, stage)
        if data is None:
            return None
        return parse_payload(model, data.payload, stage=str(stage))

    def _require_approved(self, issue_id: int, stage: Stage, model: type[ModelT]) -> ModelT:
        """Load the latest row of ``stage`` and insist that it is approved.

        Raises:
            PreconditionError: If there is no row, or the latest row is pending.
        """
        data = self.store.get_stage_data(issue_id, stage)
        if data is None or not data.is_approved:
            log.warning(
                "stage_precondition_failed",
                issue_id=issue_id,
                stage=str(self.stage),
                required_stage=str(stage),
            )
            raise PreconditionError(
                f"{stage_label(stage)} stage not approved",
                issue_id=issue_id,
                required_stage=str(stage),
            )
        return parse_payload(model, data.payload, stage=str(stage))

    def _save(self, issue_id: int, payload: BaseModel) -> StageData:
        saved = self.store.save_stage_data(issue_id, self.stage, dump_payload(payload))
        log.info("stage_output_saved", issue_id=issue_id, stage=str(self.stage), stage_data_id=saved.id)
        return saved

    async def _notify(self, issue: Issue, text: str) -> None:
        try:
            await self.notifier.send_message(issue.context_id, text)
        except Exception:
            log.warning("stage_notification_failed", issue_id=issue.id, stage=str(self.stage), exc_info=True)
