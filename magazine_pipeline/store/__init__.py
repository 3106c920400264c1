"""SQLite persistence for issues, stage data, published topics and errors."""

from magazine_pipeline.store.database import PipelineStore

__all__ = ["PipelineStore"]
