"""Content writing stage: turn the selected topic into a card set."""

from typing import Any

import structlog

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.engine.stages.base import StageHandler
from magazine_pipeline.exceptions import PreconditionError
from magazine_pipeline.models.domain import Issue, StageData
from magazine_pipeline.models.payloads import ContentData, TopicSelectionData

log = structlog.get_logger(__name__)


class ContentWritingHandler(StageHandler):
    """Generate cards for the topic chosen at TOPIC_SELECTION."""

    stage = Stage.CONTENT_WRITING

    async def run(self, issue: Issue, **options: Any) -> StageData:
        selection = self._require_approved(issue.id, Stage.TOPIC_SELECTION, TopicSelectionData)
        if selection.selected_topic is None:
            raise PreconditionError(
                "No topic has been selected",
                issue_id=issue.id,
                required_stage=str(Stage.TOPIC_SELECTION),
            )

        topic = selection.selected_topic
        log.info("content_writing_start", issue_id=issue.id, topic=topic.title)

        cards = await self.generator.generate_content(topic)
        saved = self._save(issue.id, ContentData(topic=topic, cards=cards))

        await self._notify(issue, f"{len(cards)} cards written for \"{topic.title}\". Review and approve to continue.")
        return saved
