"""
Static dispatch from a stage to its handler.

The dispatcher holds one handler instance per stage in the machine and runs it
under the recovery manager, so every handler invocation gets the stage's
retry policy and error-ledger bookkeeping.
"""

from collections.abc import Mapping
from typing import Any

import structlog

from magazine_pipeline.engine.machine import Stage, StageMachine
from magazine_pipeline.engine.recovery import OnRetry, RecoveryManager
from magazine_pipeline.engine.stages.base import StageHandler
from magazine_pipeline.engine.stages.content_writing import ContentWritingHandler
from magazine_pipeline.engine.stages.figma_layout import FigmaLayoutHandler
from magazine_pipeline.engine.stages.final_output import FinalOutputHandler
from magazine_pipeline.engine.stages.image_generation import ImageGenerationHandler
from magazine_pipeline.engine.stages.topic_selection import TopicSelectionHandler
from magazine_pipeline.exceptions import NoTransitionError
from magazine_pipeline.models.domain import Issue, StageData
from magazine_pipeline.providers.base import GenerationProvider, Notifier
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)


class StageDispatcher:
    """Registry of stage handlers.

    Attributes:
        handlers: Mapping of stage to the handler producing its data.
        recovery: Recovery manager wrapping every handler run.
    """

    def __init__(self, handlers: Mapping[Stage, StageHandler], recovery: RecoveryManager) -> None:
        self.handlers: dict[Stage, StageHandler] = dict(handlers)
        self.recovery = recovery

    @classmethod
    def build(
        cls,
        store: PipelineStore,
        machine: StageMachine,
        generator: GenerationProvider,
        notifier: Notifier,
        recovery: RecoveryManager,
        topic_count: int = 3,
    ) -> "StageDispatcher":
        """Create the dispatcher with the default handler for every stage in ``machine``."""
        with_images = machine.contains(Stage.IMAGE_GENERATION)
        handlers: dict[Stage, StageHandler] = {
            Stage.TOPIC_SELECTION: TopicSelectionHandler(store, generator, notifier, topic_count=topic_count),
            Stage.CONTENT_WRITING: ContentWritingHandler(store, generator, notifier),
            Stage.FIGMA_LAYOUT: FigmaLayoutHandler(store, generator, notifier, require_images=with_images),
            Stage.FINAL_OUTPUT: FinalOutputHandler(store, generator, notifier),
        }
        if with_images:
            handlers[Stage.IMAGE_GENERATION] = ImageGenerationHandler(store, generator, notifier)
        return cls(handlers, recovery)

    def handler_for(self, stage: Stage) -> StageHandler:
        """Return the handler registered for ``stage``.

        Raises:
            NoTransitionError: For COMPLETE or any stage without a handler.
        """
        handler = self.handlers.get(stage)
        if handler is None:
            raise NoTransitionError(f"No handler registered for stage {stage}", stage=str(stage))
        return handler

    async def run(self, issue: Issue, on_retry: OnRetry | None = None, **options: Any) -> StageData:
        """Run the handler for the issue's current stage with retries.

        Args:
            issue: Issue to work on; its current stage selects the handler.
            on_retry: Optional retry notification hook.
            **options: Passed through to the handler.

        Returns:
            The stage-data row the handler saved.
        """
        handler = self.handler_for(issue.stage)
        log.info("stage_handler_dispatch", issue_id=issue.id, stage=str(issue.stage), handler=type(handler).__name__)
        return await self.recovery.execute_with_retry(
            issue.id,
            issue.stage,
            lambda: handler.run(issue, **options),
            on_retry=on_retry,
        )
