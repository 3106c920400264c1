"""Final output stage: caption and hashtags for publishing."""

from typing import Any

import structlog

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.engine.stages.base import StageHandler
from magazine_pipeline.models.domain import Issue, StageData
from magazine_pipeline.models.payloads import ContentData

log = structlog.get_logger(__name__)


class FinalOutputHandler(StageHandler):
    """Generate the publishing caption from the approved cards."""

    stage = Stage.FINAL_OUTPUT

    async def run(self, issue: Issue, **options: Any) -> StageData:
        content = self._require_approved(issue.id, Stage.CONTENT_WRITING, ContentData)

        caption = await self.generator.generate_caption(content.cards)
        saved = self._save(issue.id, caption)
        log.info("caption_generated", issue_id=issue.id, hashtag_count=len(caption.hashtags))

        hashtags = " ".join(caption.hashtags)
        await self._notify(issue, f"Caption ready:\n\n{caption.caption}\n\n{hashtags}".rstrip())
        return saved
