"""Domain records and stage payload schemas."""

from magazine_pipeline.models.domain import (
    ActiveIssue,
    Issue,
    RetryInfo,
    StageData,
    StageDataStatus,
    StageError,
)
from magazine_pipeline.models.payloads import (
    CaptionData,
    Card,
    ContentData,
    ImageData,
    LayoutData,
    SearchResult,
    Topic,
    TopicSelectionData,
)

__all__ = [
    "ActiveIssue",
    "CaptionData",
    "Card",
    "ContentData",
    "ImageData",
    "Issue",
    "LayoutData",
    "RetryInfo",
    "SearchResult",
    "StageData",
    "StageDataStatus",
    "StageError",
    "Topic",
    "TopicSelectionData",
]
