"""Stage handlers and their dispatcher."""

from magazine_pipeline.engine.stages.base import StageHandler
from magazine_pipeline.engine.stages.content_writing import ContentWritingHandler
from magazine_pipeline.engine.stages.dispatcher import StageDispatcher
from magazine_pipeline.engine.stages.figma_layout import FigmaLayoutHandler
from magazine_pipeline.engine.stages.final_output import FinalOutputHandler
from magazine_pipeline.engine.stages.image_generation import ImageGenerationHandler
from magazine_pipeline.engine.stages.topic_selection import TopicSelectionHandler

__all__ = [
    "ContentWritingHandler",
    "FigmaLayoutHandler",
    "FinalOutputHandler",
    "ImageGenerationHandler",
    "StageDispatcher",
    "StageHandler",
    "TopicSelectionHandler",
]
