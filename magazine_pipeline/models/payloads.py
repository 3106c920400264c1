"""Per-stage payload schemas validated at the stage-handler boundary.

The store and workflow engine treat stage data as opaque JSON. Each handler
owns the shape of what it writes and reads, and validates it through these
models so a malformed payload fails loudly at the handler instead of deep
inside the next stage.
"""

from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from magazine_pipeline.exceptions import PayloadValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class PayloadModel(BaseModel):
    """Base for stage payloads: camelCase-tolerant, extra fields preserved."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Card(PayloadModel):
    """One magazine card."""

    type: Literal["cover", "content", "closing"] = "content"
    heading: str
    body: str
    image_ref: str | None = Field(default=None, alias="imageRef")
    mj_keywords: str | None = Field(default=None, alias="mjKeywords")


class Topic(PayloadModel):
    """Candidate topic for an issue."""

    title: str
    subtitle: str = ""
    description: str = ""
    card_structure: list[str] = Field(default_factory=list, alias="cardStructure")
    cards: list[Card] = Field(default_factory=list)
    caption: str = ""
    hashtags: list[str] = Field(default_factory=list)


class SearchResult(PayloadModel):
    """External search hit a topic can be generated from."""

    title: str
    url: str
    snippet: str = ""
    source: str | None = None


class TopicSelectionData(PayloadModel):
    """TOPIC_SELECTION payload: the candidates and, once chosen, the selection."""

    topics: list[Topic] = Field(default_factory=list)
    mode: Literal["classic", "search"] = "classic"
    search_results: list[SearchResult] = Field(default_factory=list, alias="searchResults")
    selected_topic: Topic | None = Field(default=None, alias="selectedTopic")
    selected_index: int | None = Field(default=None, alias="selectedIndex")


class ContentData(PayloadModel):
    """CONTENT_WRITING payload."""

    topic: Topic
    cards: list[Card]


class ImageData(PayloadModel):
    """IMAGE_GENERATION payload. ``image_mapping`` maps card index to image URL."""

    cards: list[Card]
    prompts: list[str]
    image_mapping: dict[int, str] = Field(default_factory=dict, alias="imageMapping")


class LayoutData(PayloadModel):
    """FIGMA_LAYOUT payload handed to the layout plugin."""

    topic: Topic
    cards: list[Card]
    image_mapping: dict[int, str] = Field(default_factory=dict, alias="imageMapping")


class CaptionData(PayloadModel):
    """FINAL_OUTPUT payload."""

    caption: str
    hashtags: list[str] = Field(default_factory=list)


def parse_payload(model: type[ModelT], data: Any, stage: str | None = None) -> ModelT:
    """Validate raw stage data against a payload model.

    Args:
        model: Payload model class to validate against.
        data: Decoded JSON payload.
        stage: Stage the payload belongs to, for the error message.

    Returns:
        Validated model instance.

    Raises:
        PayloadValidationError: If the payload does not match the model.
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadValidationError(
            f"Invalid {model.__name__} payload: {e.error_count()} validation error(s)",
            stage=stage,
        ) from e


def dump_payload(model: BaseModel) -> dict[str, Any]:
    """Serialize a payload model to a JSON-compatible dict using field aliases."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
