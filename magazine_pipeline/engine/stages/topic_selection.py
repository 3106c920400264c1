"""
Topic selection stage.

Generates candidate topics for an issue while steering away from topics that
have already been published. Two modes are supported:

- classic: the generator proposes ``topic_count`` topics from scratch
- search: one topic is generated from a search result previously stored on
  the issue's TOPIC_SELECTION data (``search_result_index`` option)

The reviewer then picks one topic through ``ApprovalFlow.select_topic``.
"""

from typing import Any

import structlog

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.engine.stages.base import StageHandler
from magazine_pipeline.exceptions import NotFoundError
from magazine_pipeline.models.domain import Issue, StageData
from magazine_pipeline.models.payloads import TopicSelectionData
from magazine_pipeline.providers.base import GenerationProvider, Notifier
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)


class TopicSelectionHandler(StageHandler):
    """Propose topics for an issue."""

    stage = Stage.TOPIC_SELECTION

    def __init__(
        self,
        store: PipelineStore,
        generator: GenerationProvider,
        notifier: Notifier,
        topic_count: int = 3,
    ) -> None:
        super().__init__(store, generator, notifier)
        self.topic_count = topic_count

    async def run(self, issue: Issue, **options: Any) -> StageData:
        search_result_index: int | None = options.get("search_result_index")
        recent_topics = self.store.get_published_topic_titles()

        log.info(
            "topic_selection_start",
            issue_id=issue.id,
            mode="search" if search_result_index is not None else "classic",
            recent_count=len(recent_topics),
        )

        if search_result_index is not None:
            return await self._run_from_search(issue, search_result_index, recent_topics)

        topics = await self.generator.generate_topics(recent_topics, count=self.topic_count)
        saved = self._save(issue.id, TopicSelectionData(topics=topics, mode="classic"))
        await self._notify(issue, f"{len(topics)} topic candidates are ready for review.")
        return saved

    async def _run_from_search(self, issue: Issue, index: int, recent_topics: list[str]) -> StageData:
        current = self._latest_payload(issue.id, self.stage, TopicSelectionData)
        if current is None or not 0 <= index < len(current.search_results):
            raise NotFoundError(
                f"Search result {index} not found for issue {issue.id}",
                issue_id=issue.id,
                stage=str(self.stage),
            )

        result = current.search_results[index]
        topic = await self.generator.generate_topic_from_search(result, recent_topics)

        payload = current.model_copy(
            update={"topics": [topic], "mode": "search", "selected_topic": None, "selected_index": None}
        )
        saved = self._save(issue.id, payload)
        await self._notify(issue, f"Topic generated from search result: {topic.title}")
        return saved
