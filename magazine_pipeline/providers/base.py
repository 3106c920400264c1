"""
Abstract base classes for external collaborators.

The pipeline core never talks to an AI provider or a chat platform directly.
Stage handlers depend on a ``GenerationProvider`` and the engine depends on a
``Notifier``; concrete implementations live next to this module.
"""

from abc import ABC, abstractmethod

from magazine_pipeline.models.payloads import CaptionData, Card, SearchResult, Topic


class GenerationProvider(ABC):
    """Produces structured stage content from an AI backend.

    Implementations either return a validated payload or raise. They must not
    retry internally; retry policy is layered on by the recovery manager.
    """

    @abstractmethod
    async def generate_topics(self, recent_topics: list[str], count: int = 3) -> list[Topic]:
        """Propose candidate topics.

        Args:
            recent_topics: Published titles, newest first, to avoid repeating.
            count: Number of candidates to produce.

        Returns:
            List of topics, each with cards, caption and hashtags filled in.

        Raises:
            ExternalServiceError: If the provider call fails.
            PayloadValidationError: If the response does not match the schema.
        """
        pass

    @abstractmethod
    async def generate_topic_from_search(self, result: SearchResult, recent_topics: list[str]) -> Topic:
        """Turn a single search hit into a topic."""
        pass

    @abstractmethod
    async def generate_content(self, topic: Topic) -> list[Card]:
        """Write the card set for a selected topic."""
        pass

    @abstractmethod
    async def generate_caption(self, cards: list[Card]) -> CaptionData:
        """Write the social caption and hashtags for approved cards."""
        pass


class Notifier(ABC):
    """Sends human-readable updates to an issue's context.

    Implementations must never raise: failures are logged and swallowed so
    presentation problems cannot roll back pipeline state.
    """

    @abstractmethod
    async def send_message(self, context_id: str, text: str) -> None:
        """Post a message to the given context."""
        pass

    @abstractmethod
    async def update_label(self, context_id: str, label: str) -> None:
        """Rename the context to reflect the issue's current stage."""
        pass
