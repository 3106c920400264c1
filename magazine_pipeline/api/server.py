"""Layout bridge HTTP server consumed by the design plugin."""

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from magazine_pipeline.engine.approvals import ApprovalFlow
from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.engine.stages.figma_layout import apply_image_mapping
from magazine_pipeline.exceptions import InvalidTransitionError, MagazinePipelineError, NotFoundError
from magazine_pipeline.models.payloads import Card, ContentData, ImageData, LayoutData, parse_payload
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)


def _layout_cards(store: PipelineStore, issue_id: int, content: ContentData) -> list[Card]:
    """Cards to lay out, with image references from the newest layout or image data."""
    layout = store.get_stage_data(issue_id, Stage.FIGMA_LAYOUT)
    if layout is not None:
        return parse_payload(LayoutData, layout.payload, stage=str(Stage.FIGMA_LAYOUT)).cards

    images = store.get_stage_data(issue_id, Stage.IMAGE_GENERATION)
    if images is not None:
        mapping = parse_payload(ImageData, images.payload, stage=str(Stage.IMAGE_GENERATION)).image_mapping
        return apply_image_mapping(content.cards, mapping)

    return content.cards


def create_app(
    store: PipelineStore,
    approvals: ApprovalFlow,
    cors_origins: list[str] | None = None,
    on_shutdown: Callable[[], Awaitable[Any]] | None = None,
) -> FastAPI:
    """Build the layout bridge application.

    Args:
        store: Store to read issues and stage data from.
        approvals: Approval flow handling the "layout complete" signal.
        cors_origins: Allowed CORS origins; every origin when omitted.
        on_shutdown: Awaited when the server stops, inside its event loop.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("layout_bridge_started")
        yield
        if on_shutdown is not None:
            await on_shutdown()
        log.info("layout_bridge_stopped")

    app = FastAPI(title="Magazine Layout Bridge", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "service": "magazine-layout-bridge"}

    @app.get("/api/issues")
    async def list_layout_issues() -> list[dict[str, Any]]:
        """Issues waiting for layout, newest first."""
        return [
            {
                "id": issue.id,
                "issueNumber": issue.issue_number,
                "stage": str(issue.stage),
                "createdAt": issue.created_at,
            }
            for issue in store.list_issues_in_stage(Stage.FIGMA_LAYOUT)
        ]

    @app.get("/api/issues/{issue_id}/layout")
    async def get_layout(issue_id: int) -> dict[str, Any]:
        """Topic and cards of an issue in the shape the design plugin expects."""
        issue = store.get_issue(issue_id)
        if issue is None:
            raise HTTPException(status_code=404, detail="Issue not found")

        content_data = store.get_stage_data(issue_id, Stage.CONTENT_WRITING)
        if content_data is None:
            raise HTTPException(status_code=404, detail="Content data not found")

        try:
            content = parse_payload(ContentData, content_data.payload, stage=str(Stage.CONTENT_WRITING))
            cards = _layout_cards(store, issue_id, content)
        except MagazinePipelineError as e:
            log.error("layout_payload_invalid", issue_id=issue_id, error=e.message)
            raise HTTPException(status_code=422, detail=e.message) from e

        return {
            "issueNumber": issue.issue_number,
            "topic": {"title": content.topic.title, "subtitle": content.topic.subtitle},
            "cards": [
                {"type": card.type, "heading": card.heading, "body": card.body, "imageRef": card.image_ref}
                for card in cards
            ],
            "threadUrl": issue.thread_url,
        }

    @app.post("/api/issues/{issue_id}/complete")
    async def complete_layout(issue_id: int) -> dict[str, bool]:
        """Mark the layout done and move the issue to final output."""
        try:
            await approvals.complete_layout(issue_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message) from e
        except InvalidTransitionError as e:
            raise HTTPException(status_code=400, detail=e.message) from e
        except MagazinePipelineError as e:
            log.error("layout_complete_failed", issue_id=issue_id, error=e.message, exc_info=True)
            raise HTTPException(status_code=422, detail=e.message) from e

        log.info("layout_complete_received", issue_id=issue_id)
        return {"success": True}

    return app
