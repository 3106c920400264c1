"""
Figma layout stage.

Assembles the layout payload served to the design plugin through the layout
bridge API. When the pipeline includes IMAGE_GENERATION, the approved image
mapping is required and merged into the cards' ``imageRef`` fields.
"""

from typing import Any

import structlog

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.engine.stages.base import StageHandler
from magazine_pipeline.models.domain import Issue, StageData
from magazine_pipeline.models.payloads import Card, ContentData, ImageData, LayoutData
from magazine_pipeline.providers.base import GenerationProvider, Notifier
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)


def apply_image_mapping(cards: list[Card], image_mapping: dict[int, str]) -> list[Card]:
    """Copy of ``cards`` with ``image_ref`` filled from ``image_mapping`` where present."""
    return [
        card.model_copy(update={"image_ref": image_mapping[index]}) if index in image_mapping else card
        for index, card in enumerate(cards)
    ]


class FigmaLayoutHandler(StageHandler):
    """Build the layout payload for the design plugin."""

    stage = Stage.FIGMA_LAYOUT

    def __init__(
        self,
        store: PipelineStore,
        generator: GenerationProvider,
        notifier: Notifier,
        require_images: bool = False,
    ) -> None:
        super().__init__(store, generator, notifier)
        self.require_images = require_images

    async def run(self, issue: Issue, **options: Any) -> StageData:
        content = self._require_approved(issue.id, Stage.CONTENT_WRITING, ContentData)

        image_mapping: dict[int, str] = {}
        if self.require_images:
            images = self._require_approved(issue.id, Stage.IMAGE_GENERATION, ImageData)
            image_mapping = images.image_mapping

        cards = apply_image_mapping(content.cards, image_mapping)
        saved = self._save(issue.id, LayoutData(topic=content.topic, cards=cards, image_mapping=image_mapping))

        log.info("layout_ready", issue_id=issue.id, card_count=len(cards), image_count=len(image_mapping))
        await self._notify(
            issue,
            f"Layout data for issue #{issue.issue_number} is ready. Open the design plugin to build the cards.",
        )
        return saved
