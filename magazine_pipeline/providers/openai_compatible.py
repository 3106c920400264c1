"""OpenAI-compatible generation provider (OpenAI, vLLM, LM Studio, Gemini's OpenAI endpoint, etc.)."""

import json
from typing import Any

import httpx
import structlog
from pydantic import BaseModel

from magazine_pipeline.exceptions import ExternalServiceError
from magazine_pipeline.models.payloads import CaptionData, Card, SearchResult, Topic, parse_payload
from magazine_pipeline.providers.base import GenerationProvider

log = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are the editor of a whisky culture magazine published as Instagram card sets. "
    "Always answer with a single JSON object and nothing else."
)


class _TopicList(BaseModel):
    topics: list[Topic]


class _CardList(BaseModel):
    cards: list[Card]


def _recent_block(recent_topics: list[str]) -> str:
    if not recent_topics:
        return ""
    lines = "\n".join(f"- {title}" for title in recent_topics)
    return f"\n\nAvoid repeating these recently published topics:\n{lines}"


class OpenAICompatibleGenerator(GenerationProvider):
    """Generation provider speaking the chat-completions JSON API.

    Each call sends one request and validates the JSON object in the reply
    against the matching payload model. HTTP and transport errors become
    ``ExternalServiceError``; schema mismatches become
    ``PayloadValidationError``.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the generator.

        Args:
            base_url: API base URL (e.g., http://localhost:8000/v1)
            model: Model identifier to use
            api_key: Optional API key for authentication
            timeout: Request timeout in seconds
            client: Optional pre-built client (tests inject a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def _complete_json(self, prompt: str) -> dict[str, Any]:
        """Send one chat completion and decode the JSON object it returns."""
        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    "response_format": {"type": "json_object"},
                    "temperature": 0.8,
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.error("generation_request_failed", status_code=e.response.status_code)
            raise ExternalServiceError(
                "Generation API returned an error",
                status_code=e.response.status_code,
                response_text=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            log.error("generation_request_failed", error=str(e))
            raise ExternalServiceError(f"Generation API unreachable: {e}") from e

        choices = response.json().get("choices", [])
        if not choices:
            raise ExternalServiceError("Generation API returned no choices")

        content = choices[0].get("message", {}).get("content", "")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise ExternalServiceError("Generation API returned invalid JSON", response_text=content) from e

        if not isinstance(parsed, dict):
            raise ExternalServiceError("Generation API returned a non-object JSON value", response_text=content)

        log.debug("generation_completed", model=self.model, keys=sorted(parsed))
        return parsed

    async def generate_topics(self, recent_topics: list[str], count: int = 3) -> list[Topic]:
        prompt = (
            f"Propose {count} topics for the next magazine issue. "
            'Respond as {"topics": [...]} where every topic has title, subtitle, description, '
            "cardStructure, cards (type, heading, body, mjKeywords), caption and hashtags."
            + _recent_block(recent_topics)
        )
        data = await self._complete_json(prompt)
        return parse_payload(_TopicList, data, stage="TOPIC_SELECTION").topics

    async def generate_topic_from_search(self, result: SearchResult, recent_topics: list[str]) -> Topic:
        prompt = (
            "Write one magazine topic based on this article. "
            "Respond with a single topic object (title, subtitle, description, cardStructure, cards, "
            "caption, hashtags).\n\n"
            f"Title: {result.title}\nURL: {result.url}\nSummary: {result.snippet}" + _recent_block(recent_topics)
        )
        data = await self._complete_json(prompt)
        return parse_payload(Topic, data, stage="TOPIC_SELECTION")

    async def generate_content(self, topic: Topic) -> list[Card]:
        prompt = (
            'Write the card set for this topic. Respond as {"cards": [...]} with a cover card first, '
            "content cards in the middle and a closing card last.\n\n"
            + json.dumps(topic.model_dump(mode="json", by_alias=True), ensure_ascii=False)
        )
        data = await self._complete_json(prompt)
        return parse_payload(_CardList, data, stage="CONTENT_WRITING").cards

    async def generate_caption(self, cards: list[Card]) -> CaptionData:
        prompt = (
            'Write an Instagram caption for these cards. Respond as {"caption": "...", "hashtags": [...]}.\n\n'
            + json.dumps([c.model_dump(mode="json", by_alias=True) for c in cards], ensure_ascii=False)
        )
        data = await self._complete_json(prompt)
        return parse_payload(CaptionData, data, stage="FINAL_OUTPUT")

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "OpenAICompatibleGenerator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
