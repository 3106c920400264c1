"""
Image generation stage.

Optional stage, enabled with ``workflow.include_image_generation``. It builds
one image prompt per card that carries image keywords. Rendering the prompts
is left to an external image tool; reviewers record each resulting URL with
``ApprovalFlow.assign_image``, which saves a new row with the card added to
``imageMapping`` (card index to URL). The stage cannot be approved while a
card with keywords has no image.
"""

from typing import Any

import structlog

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.engine.stages.base import StageHandler
from magazine_pipeline.models.domain import Issue, StageData
from magazine_pipeline.models.payloads import Card, ContentData, ImageData

log = structlog.get_logger(__name__)

PROMPT_STYLE = "whiskey photography, dark moody lighting, editorial magazine style --ar 4:5 --v 6 --style raw"
COVER_PREFIX = "magazine cover layout, "


def build_image_prompt(card: Card) -> str | None:
    """Image prompt for a card, or None when the card has no keywords.

    Cover cards get the cover-layout prefix.
    """
    if not card.mj_keywords:
        return None
    prefix = COVER_PREFIX if card.type == "cover" else ""
    return f"{prefix}{card.mj_keywords}, {PROMPT_STYLE}"


class ImageGenerationHandler(StageHandler):
    """Prepare image prompts for the approved card set."""

    stage = Stage.IMAGE_GENERATION

    async def run(self, issue: Issue, **options: Any) -> StageData:
        content = self._require_approved(issue.id, Stage.CONTENT_WRITING, ContentData)

        prompts = [prompt for prompt in map(build_image_prompt, content.cards) if prompt]
        log.info("image_prompts_built", issue_id=issue.id, card_count=len(content.cards), prompt_count=len(prompts))

        saved = self._save(issue.id, ImageData(cards=content.cards, prompts=prompts))
        await self._notify(issue, f"{len(prompts)} image prompts prepared.")
        return saved
