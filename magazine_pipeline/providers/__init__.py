"""External collaborators: content generation and notifications."""

from magazine_pipeline.providers.base import GenerationProvider, Notifier
from magazine_pipeline.providers.notifiers import LogNotifier, WebhookNotifier
from magazine_pipeline.providers.openai_compatible import OpenAICompatibleGenerator

__all__ = [
    "GenerationProvider",
    "LogNotifier",
    "Notifier",
    "OpenAICompatibleGenerator",
    "WebhookNotifier",
]
