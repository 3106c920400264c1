"""Configuration loading."""

from magazine_pipeline.config.settings import PipelineSettings

__all__ = ["PipelineSettings"]
