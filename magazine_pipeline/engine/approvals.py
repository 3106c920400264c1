"""
Human approval path.

Reviewer actions (choosing a topic, approving a stage, finishing the layout in
the design plugin) all end the same way: the latest stage data is flipped to
approved, the workflow engine advances the issue and the handler for the new
stage runs. This module is the only place that sequence is written down.

Reviewer input that does not advance the issue (search results to generate
from, card edits, chosen images) is saved here as a new pending row of the
current stage.

Example:
    >>> flow = ApprovalFlow(store, engine, dispatcher)
    >>> issue = await flow.start("channel-1")
    >>> issue = await flow.select_topic(issue.id, 0)
    >>> issue.stage
    <Stage.CONTENT_WRITING: 'CONTENT_WRITING'>
"""

from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

import structlog

from magazine_pipeline.engine.machine import Stage, stage_label
from magazine_pipeline.engine.recovery import OnRetry
from magazine_pipeline.engine.stages.dispatcher import StageDispatcher
from magazine_pipeline.engine.workflow import WorkflowEngine
from magazine_pipeline.exceptions import (
    InvalidTransitionError,
    MagazinePipelineError,
    NotFoundError,
    PayloadValidationError,
    PreconditionError,
)
from magazine_pipeline.models.domain import Issue, StageData
from magazine_pipeline.models.payloads import (
    ContentData,
    ImageData,
    SearchResult,
    TopicSelectionData,
    dump_payload,
    parse_payload,
)
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)

LayoutCallback = Callable[[Issue], Awaitable[Any]]

EDITABLE_CARD_FIELDS = frozenset({"heading", "body"})


def missing_images(images: ImageData) -> list[int]:
    """Indexes of cards that have image keywords but no assigned image."""
    return [
        index
        for index, card in enumerate(images.cards)
        if card.mj_keywords and index not in images.image_mapping
    ]


class ApprovalFlow:
    """Approve stage data, advance the issue and run the next handler.

    Attributes:
        store: Persistence for issues and stage data.
        engine: Workflow engine performing the transitions.
        dispatcher: Runs the handler of the stage an issue lands in.
    """

    def __init__(
        self,
        store: PipelineStore,
        engine: WorkflowEngine,
        dispatcher: StageDispatcher,
        on_layout_complete: LayoutCallback | None = None,
    ) -> None:
        """Initialize the approval flow.

        Args:
            store: Persistence for issues and stage data.
            engine: Workflow engine performing the transitions.
            dispatcher: Runs the handler of the stage an issue lands in.
            on_layout_complete: Called with the advanced issue once the design
                plugin reports the layout done. Defaults to running the
                FINAL_OUTPUT handler.
        """
        self.store = store
        self.engine = engine
        self.dispatcher = dispatcher
        self.on_layout_complete = on_layout_complete or self._run_handler

    async def _run_handler(self, issue: Issue, on_retry: OnRetry | None = None) -> StageData:
        return await self.dispatcher.run(issue, on_retry=on_retry)

    def _require_stage(self, issue_id: int, stage: Stage) -> Issue:
        issue = self.store.get_issue(issue_id)
        if issue is None:
            raise NotFoundError(f"Issue {issue_id} not found", issue_id=issue_id)
        if issue.stage != stage:
            raise InvalidTransitionError(
                f"Issue {issue_id} is in {stage_label(issue.stage)}, not {stage_label(stage)}",
                issue_id=issue_id,
                stage=str(issue.stage),
            )
        return issue

    def _latest(self, issue_id: int, stage: Stage) -> StageData:
        data = self.store.get_stage_data(issue_id, stage)
        if data is None:
            raise NotFoundError(
                f"No {stage_label(stage).lower()} data for issue {issue_id}",
                issue_id=issue_id,
                stage=str(stage),
            )
        return data

    async def _advance_and_run(self, issue_id: int, on_retry: OnRetry | None = None) -> Issue:
        issue = await self.engine.advance_stage(issue_id)
        if not self.engine.machine.is_terminal(issue.stage):
            await self._run_handler(issue, on_retry=on_retry)
        return issue

    async def start(self, channel_id: str, on_retry: OnRetry | None = None) -> Issue:
        """Start a new issue in ``channel_id`` and generate its topic candidates."""
        issue = await self.engine.start_issue(channel_id)
        await self._run_handler(issue, on_retry=on_retry)
        return issue

    async def select_topic(self, issue_id: int, index: int, on_retry: OnRetry | None = None) -> Issue:
        """Record the reviewer's topic choice and move on to content writing.

        A new TOPIC_SELECTION row carrying the selection is saved and approved,
        so the latest row is always the one content writing reads.

        Args:
            issue_id: Issue in TOPIC_SELECTION.
            index: Position of the chosen topic in the latest candidates.
            on_retry: Optional retry hook for the content handler.

        Returns:
            The issue after advancing.

        Raises:
            NotFoundError: If the issue, its candidates or the index is missing.
            InvalidTransitionError: If the issue is not in TOPIC_SELECTION.
        """
        self._require_stage(issue_id, Stage.TOPIC_SELECTION)
        current = parse_payload(
            TopicSelectionData,
            self._latest(issue_id, Stage.TOPIC_SELECTION).payload,
            stage=str(Stage.TOPIC_SELECTION),
        )
        if not 0 <= index < len(current.topics):
            raise NotFoundError(
                f"Topic {index} not found; {len(current.topics)} candidate(s) available",
                issue_id=issue_id,
                stage=str(Stage.TOPIC_SELECTION),
            )

        selected = current.model_copy(update={"selected_topic": current.topics[index], "selected_index": index})
        saved = self.store.save_stage_data(issue_id, Stage.TOPIC_SELECTION, dump_payload(selected))
        self.store.approve_stage_data(saved.id)
        log.info("topic_selected", issue_id=issue_id, index=index, title=current.topics[index].title)

        return await self._advance_and_run(issue_id, on_retry=on_retry)

    async def approve_stage(self, issue_id: int, stage: Stage, on_retry: OnRetry | None = None) -> Issue:
        """Approve the latest data of ``stage`` and advance.

        FIGMA_LAYOUT and FINAL_OUTPUT delegate to :meth:`complete_layout` and
        :meth:`complete_issue`.

        Raises:
            NotFoundError: If the issue or its stage data is missing.
            InvalidTransitionError: If the issue is not in ``stage``.
            PreconditionError: If no topic has been selected yet, or a card
                that needs an image has none.
        """
        if stage == Stage.FIGMA_LAYOUT:
            return await self.complete_layout(issue_id)
        if stage == Stage.FINAL_OUTPUT:
            return await self.complete_issue(issue_id)

        self._require_stage(issue_id, stage)
        data = self._latest(issue_id, stage)
        self._check_ready(issue_id, data)
        self.store.approve_stage_data(data.id)
        log.info("stage_approved", issue_id=issue_id, stage=str(stage), stage_data_id=data.id)

        return await self._advance_and_run(issue_id, on_retry=on_retry)

    def _check_ready(self, issue_id: int, data: StageData) -> None:
        if data.stage == Stage.TOPIC_SELECTION:
            selection = parse_payload(TopicSelectionData, data.payload, stage=str(data.stage))
            if selection.selected_topic is None:
                raise PreconditionError(
                    "No topic has been selected; choose one with select-topic",
                    issue_id=issue_id,
                    required_stage=str(Stage.TOPIC_SELECTION),
                )
        elif data.stage == Stage.IMAGE_GENERATION:
            images = parse_payload(ImageData, data.payload, stage=str(data.stage))
            missing = missing_images(images)
            if missing:
                raise PreconditionError(
                    f"Cards without images: {', '.join(map(str, missing))}",
                    issue_id=issue_id,
                    required_stage=str(Stage.IMAGE_GENERATION),
                )

    async def attach_search_results(
        self,
        issue_id: int,
        results: Sequence[SearchResult | Mapping[str, Any]],
        on_retry: OnRetry | None = None,
    ) -> StageData:
        """Store external search results as the issue's topic source.

        The saved row switches the issue to search mode; a topic is then
        generated from one result with ``regenerate(search_result_index=N)``.
        An empty result list falls back to classic topic generation.

        Returns:
            The saved TOPIC_SELECTION row.

        Raises:
            NotFoundError: If the issue does not exist.
            InvalidTransitionError: If the issue is not in TOPIC_SELECTION.
            PayloadValidationError: If a result is malformed.
        """
        issue = self._require_stage(issue_id, Stage.TOPIC_SELECTION)
        if not results:
            log.info("search_results_empty", issue_id=issue_id)
            return await self._run_handler(issue, on_retry=on_retry)

        selection = parse_payload(
            TopicSelectionData,
            {"mode": "search", "searchResults": list(results)},
            stage=str(Stage.TOPIC_SELECTION),
        )
        saved = self.store.save_stage_data(issue_id, Stage.TOPIC_SELECTION, dump_payload(selection))
        log.info("search_results_attached", issue_id=issue_id, count=len(selection.search_results))
        return saved

    def edit_cards(self, issue_id: int, edits: Mapping[int, Mapping[str, str]]) -> StageData:
        """Save reviewer edits to card headings and bodies as a new pending row.

        Args:
            issue_id: Issue in CONTENT_WRITING.
            edits: Card index to the fields to replace (``heading``, ``body``).

        Returns:
            The new CONTENT_WRITING row.

        Raises:
            NotFoundError: If the issue, its content or a card index is missing.
            InvalidTransitionError: If the issue is not in CONTENT_WRITING.
            PayloadValidationError: If an edit names a field other than
                heading or body.
        """
        self._require_stage(issue_id, Stage.CONTENT_WRITING)
        content = parse_payload(
            ContentData,
            self._latest(issue_id, Stage.CONTENT_WRITING).payload,
            stage=str(Stage.CONTENT_WRITING),
        )

        cards = list(content.cards)
        for index, fields in edits.items():
            if not 0 <= index < len(cards):
                raise NotFoundError(
                    f"Card {index} not found; {len(cards)} card(s) available",
                    issue_id=issue_id,
                    stage=str(Stage.CONTENT_WRITING),
                )
            unknown = set(fields) - EDITABLE_CARD_FIELDS
            if unknown:
                raise PayloadValidationError(
                    f"Cannot edit card field(s): {', '.join(sorted(unknown))}",
                    stage=str(Stage.CONTENT_WRITING),
                )
            cards[index] = cards[index].model_copy(update=dict(fields))

        saved = self.store.save_stage_data(
            issue_id, Stage.CONTENT_WRITING, dump_payload(content.model_copy(update={"cards": cards}))
        )
        log.info("cards_edited", issue_id=issue_id, cards=sorted(edits), stage_data_id=saved.id)
        return saved

    def assign_image(self, issue_id: int, card_index: int, url: str) -> StageData:
        """Record the image chosen for one card as a new pending row.

        Raises:
            NotFoundError: If the issue, its image data or the card is missing.
            InvalidTransitionError: If the issue is not in IMAGE_GENERATION.
        """
        self._require_stage(issue_id, Stage.IMAGE_GENERATION)
        images = parse_payload(
            ImageData,
            self._latest(issue_id, Stage.IMAGE_GENERATION).payload,
            stage=str(Stage.IMAGE_GENERATION),
        )
        if not 0 <= card_index < len(images.cards):
            raise NotFoundError(
                f"Card {card_index} not found; {len(images.cards)} card(s) available",
                issue_id=issue_id,
                stage=str(Stage.IMAGE_GENERATION),
            )

        updated = images.model_copy(update={"image_mapping": {**images.image_mapping, card_index: url}})
        saved = self.store.save_stage_data(issue_id, Stage.IMAGE_GENERATION, dump_payload(updated))
        log.info("image_assigned", issue_id=issue_id, card_index=card_index, missing=missing_images(updated))
        return saved

    async def complete_layout(self, issue_id: int) -> Issue:
        """Handle the design plugin's "layout done" signal.

        Raises:
            NotFoundError: If the issue does not exist.
            InvalidTransitionError: If the issue is not in FIGMA_LAYOUT.
        """
        self._require_stage(issue_id, Stage.FIGMA_LAYOUT)
        data = self.store.get_stage_data(issue_id, Stage.FIGMA_LAYOUT)
        if data is not None:
            self.store.approve_stage_data(data.id)

        issue = await self.engine.advance_stage(issue_id)
        log.info("layout_completed", issue_id=issue_id)
        try:
            await self.on_layout_complete(issue)
        except MagazinePipelineError as e:
            # The issue has already advanced; the failure is in the error ledger.
            log.error("layout_callback_failed", issue_id=issue_id, error=e.message, exc_info=True)
        return issue

    async def complete_issue(self, issue_id: int) -> Issue:
        """Approve the caption, publish the topic and finish the issue.

        Raises:
            NotFoundError: If the issue or its caption is missing.
            InvalidTransitionError: If the issue is not in FINAL_OUTPUT.
        """
        self._require_stage(issue_id, Stage.FINAL_OUTPUT)
        data = self._latest(issue_id, Stage.FINAL_OUTPUT)
        self.store.approve_stage_data(data.id)

        title = self.engine.selected_topic_title(issue_id)
        if title:
            self.store.publish_topic(issue_id, title)

        issue = await self.engine.advance_stage(issue_id)
        log.info("issue_completed", issue_id=issue_id, issue_number=issue.issue_number, topic=title)
        return issue

    async def regenerate(self, issue_id: int, on_retry: OnRetry | None = None, **options: Any) -> StageData:
        """Reject the current stage's output and run its handler again.

        Raises:
            NotFoundError: If the issue does not exist.
            CannotRejectError: If the current stage cannot be re-run.
        """
        issue = await self.engine.rerun_current_stage(issue_id)
        return await self.dispatcher.run(issue, on_retry=on_retry, **options)
