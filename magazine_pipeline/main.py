"""CLI entry point for the magazine pipeline."""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
import structlog

from magazine_pipeline.config.settings import PipelineSettings
from magazine_pipeline.engine.approvals import missing_images
from magazine_pipeline.engine.machine import Stage, stage_label
from magazine_pipeline.exceptions import ConfigurationError, MagazinePipelineError
from magazine_pipeline.models.payloads import ImageData, TopicSelectionData, parse_payload
from magazine_pipeline.pipeline import Pipeline, build_pipeline
from magazine_pipeline.store.database import PipelineStore
from magazine_pipeline.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

STAGE_CHOICE = click.Choice([stage.value for stage in Stage], case_sensitive=False)


@click.group()
@click.option("--config", default=None, help="Path to YAML configuration file")
@click.option("--log-level", default="WARNING", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """magazine: drive magazine issues through their stages."""
    configure_logging(log_level, json_output=False)

    try:
        if config is None:
            settings = PipelineSettings()
        else:
            settings = PipelineSettings.from_yaml(Path(config))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


async def _echo_retry(attempt: int, max_retries: int, error: Exception, delay: float) -> None:
    click.echo(f"Attempt {attempt}/{max_retries} failed: {error}. Retrying in {delay:g}s...", err=True)


def _run(ctx: click.Context, action: Callable[[Pipeline], Awaitable[Any]]) -> None:
    """Build the pipeline, run ``action`` on it and map errors to exit codes."""
    settings: PipelineSettings = ctx.obj["settings"]
    command = ctx.info_name

    async def runner() -> None:
        pipeline = build_pipeline(settings)
        try:
            await action(pipeline)
        finally:
            await pipeline.aclose()

    try:
        asyncio.run(runner())
    except MagazinePipelineError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("command_error", command=command, exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("command_unexpected", command=command, exc_info=True)
        sys.exit(1)


def _echo_topics(pipeline: Pipeline, issue_id: int) -> None:
    data = pipeline.store.get_stage_data(issue_id, Stage.TOPIC_SELECTION)
    if data is None:
        return
    selection = parse_payload(TopicSelectionData, data.payload, stage=str(Stage.TOPIC_SELECTION))
    for index, topic in enumerate(selection.topics):
        marker = "*" if selection.selected_index == index else " "
        click.echo(f" {marker} [{index}] {topic.title}" + (f" - {topic.subtitle}" if topic.subtitle else ""))


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create or migrate the database."""
    settings: PipelineSettings = ctx.obj["settings"]
    try:
        with PipelineStore(settings.database.path, wal=settings.database.wal):
            pass
    except MagazinePipelineError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    click.echo(f"Database ready at {settings.database.path}")


@cli.command()
@click.option("--channel", required=True, help="Channel the issue is started from")
@click.pass_context
def start(ctx: click.Context, channel: str) -> None:
    """Start a new issue and generate topic candidates."""

    async def action(pipeline: Pipeline) -> None:
        issue = await pipeline.approvals.start(channel, on_retry=_echo_retry)
        click.echo(f"Started issue #{issue.issue_number} (id {issue.id}). Topic candidates:")
        _echo_topics(pipeline, issue.id)

    _run(ctx, action)


@cli.command()
@click.argument("issue_id", type=int, required=False)
@click.option("--channel", default=None, help="Use the channel's active issue")
@click.pass_context
def status(ctx: click.Context, issue_id: int | None, channel: str | None) -> None:
    """Show the stage and latest error of an issue."""

    async def action(pipeline: Pipeline) -> None:
        issue = pipeline.operator.resolve_target(issue_id, channel)
        click.echo(pipeline.operator.summarize(issue))
        data = pipeline.store.get_stage_data(issue.id, issue.stage)
        if data is not None:
            click.echo(f"Latest {stage_label(issue.stage).lower()} data: {data.status}")
        if issue.stage == Stage.TOPIC_SELECTION:
            _echo_topics(pipeline, issue.id)

    _run(ctx, action)


@cli.command()
@click.pass_context
def active(ctx: click.Context) -> None:
    """List every issue that is not complete."""

    async def action(pipeline: Pipeline) -> None:
        issues = pipeline.operator.list_active()
        if not issues:
            click.echo("No active issues.")
            return
        click.echo(f"Active issues ({len(issues)}):")
        for issue in issues:
            topic = f" - {issue.topic_title}" if issue.topic_title else ""
            click.echo(f"  #{issue.issue_number} (id {issue.id}): {stage_label(issue.stage)}{topic}")

    _run(ctx, action)


@cli.command("select-topic")
@click.argument("issue_id", type=int)
@click.argument("index", type=int)
@click.pass_context
def select_topic(ctx: click.Context, issue_id: int, index: int) -> None:
    """Choose topic INDEX and write the card set."""

    async def action(pipeline: Pipeline) -> None:
        issue = await pipeline.approvals.select_topic(issue_id, index, on_retry=_echo_retry)
        click.echo(f"Issue #{issue.issue_number} moved to {stage_label(issue.stage)}.")

    _run(ctx, action)


@cli.command()
@click.argument("issue_id", type=int)
@click.option("--stage", type=STAGE_CHOICE, default=None, help="Stage to approve (defaults to the current one)")
@click.pass_context
def approve(ctx: click.Context, issue_id: int, stage: str | None) -> None:
    """Approve the latest output of a stage and advance."""

    async def action(pipeline: Pipeline) -> None:
        target = Stage(stage.upper()) if stage else pipeline.engine.get_current_stage(issue_id)
        issue = await pipeline.approvals.approve_stage(issue_id, target, on_retry=_echo_retry)
        click.echo(f"Issue #{issue.issue_number} moved to {stage_label(issue.stage)}.")

    _run(ctx, action)


@cli.command()
@click.argument("issue_id", type=int)
@click.option("--search-result", type=int, default=None, help="Generate the topic from this search result")
@click.pass_context
def regenerate(ctx: click.Context, issue_id: int, search_result: int | None) -> None:
    """Discard the current stage's output and generate it again."""

    async def action(pipeline: Pipeline) -> None:
        options = {} if search_result is None else {"search_result_index": search_result}
        data = await pipeline.approvals.regenerate(issue_id, on_retry=_echo_retry, **options)
        click.echo(f"Regenerated {stage_label(data.stage).lower()} data for issue {issue_id}.")

    _run(ctx, action)


@cli.command("attach-search")
@click.argument("issue_id", type=int)
@click.argument("results_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def attach_search(ctx: click.Context, issue_id: int, results_file: Path) -> None:
    """Use the search results in RESULTS_FILE (a JSON list) as topic sources."""
    try:
        results = json.loads(results_file.read_text())
    except (OSError, ValueError) as e:
        click.echo(f"Error: Cannot read search results from {results_file}: {e}", err=True)
        sys.exit(1)
    if not isinstance(results, list):
        click.echo("Error: Search results file must contain a JSON list", err=True)
        sys.exit(1)

    async def action(pipeline: Pipeline) -> None:
        data = await pipeline.approvals.attach_search_results(issue_id, results, on_retry=_echo_retry)
        selection = parse_payload(TopicSelectionData, data.payload, stage=str(Stage.TOPIC_SELECTION))
        if selection.mode == "classic":
            click.echo("No search results; generated topic candidates instead:")
            _echo_topics(pipeline, issue_id)
            return
        click.echo(f"Attached {len(selection.search_results)} search result(s) to issue {issue_id}:")
        for index, result in enumerate(selection.search_results):
            click.echo(f"  [{index}] {result.title} ({result.url})")
        click.echo(f"Run `magazine regenerate {issue_id} --search-result N` to write a topic from one.")

    _run(ctx, action)


@cli.command("edit-card")
@click.argument("issue_id", type=int)
@click.argument("index", type=int)
@click.option("--heading", default=None, help="New card heading")
@click.option("--body", default=None, help="New card body")
@click.pass_context
def edit_card(ctx: click.Context, issue_id: int, index: int, heading: str | None, body: str | None) -> None:
    """Replace the heading and/or body of card INDEX before approval."""
    fields = {name: value for name, value in (("heading", heading), ("body", body)) if value is not None}
    if not fields:
        raise click.UsageError("Give --heading, --body or both")

    async def action(pipeline: Pipeline) -> None:
        pipeline.approvals.edit_cards(issue_id, {index: fields})
        click.echo(f"Card {index} of issue {issue_id} updated. Run `magazine approve {issue_id}` when done.")

    _run(ctx, action)


@cli.command("assign-image")
@click.argument("issue_id", type=int)
@click.argument("card_index", type=int)
@click.argument("url")
@click.pass_context
def assign_image(ctx: click.Context, issue_id: int, card_index: int, url: str) -> None:
    """Record URL as the image of card CARD_INDEX."""

    async def action(pipeline: Pipeline) -> None:
        data = pipeline.approvals.assign_image(issue_id, card_index, url)
        missing = missing_images(parse_payload(ImageData, data.payload, stage=str(Stage.IMAGE_GENERATION)))
        click.echo(f"Image assigned to card {card_index} of issue {issue_id}.")
        if missing:
            click.echo(f"Cards still without images: {', '.join(map(str, missing))}")
        else:
            click.echo(f"Every card has an image. Run `magazine approve {issue_id}`.")

    _run(ctx, action)


@cli.command()
@click.argument("issue_id", type=int)
@click.pass_context
def retry(ctx: click.Context, issue_id: int) -> None:
    """Clear errors and re-run the current stage."""

    async def action(pipeline: Pipeline) -> None:
        data = await pipeline.operator.retry(issue_id, on_retry=_echo_retry)
        click.echo(f"Retried {stage_label(data.stage).lower()} for issue {issue_id}.")

    _run(ctx, action)


@cli.command()
@click.argument("issue_id", type=int)
@click.argument("stage", type=STAGE_CHOICE)
@click.pass_context
def reset(ctx: click.Context, issue_id: int, stage: str) -> None:
    """Move an issue to STAGE and clear its errors."""

    async def action(pipeline: Pipeline) -> None:
        issue = await pipeline.operator.reset(issue_id, stage.upper())
        click.echo(f"Issue #{issue.issue_number} reset to {stage_label(issue.stage)}. Run `magazine retry {issue_id}`.")

    _run(ctx, action)


@cli.command()
@click.argument("issue_id", type=int)
@click.pass_context
def cancel(ctx: click.Context, issue_id: int) -> None:
    """Cancel an issue."""

    async def action(pipeline: Pipeline) -> None:
        issue = await pipeline.operator.cancel(issue_id)
        click.echo(f"Issue #{issue.issue_number} cancelled.")

    _run(ctx, action)


@cli.command()
@click.argument("issue_id", type=int)
@click.pass_context
def errors(ctx: click.Context, issue_id: int) -> None:
    """List unresolved errors of an issue."""

    async def action(pipeline: Pipeline) -> None:
        unresolved = pipeline.operator.describe_errors(issue_id)
        if not unresolved:
            click.echo("No unresolved errors.")
            return
        for error in unresolved:
            click.echo(
                f"  [{error.id}] {stage_label(error.stage)}: {error.error_message} "
                f"(retries: {error.retry_count}, at {error.created_at})"
            )

    _run(ctx, action)


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides api.host)")
@click.option("--port", type=int, default=None, help="Bind port (overrides api.port)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the layout bridge API for the design plugin."""
    import uvicorn

    from magazine_pipeline.api.server import create_app

    settings: PipelineSettings = ctx.obj["settings"]
    try:
        pipeline = build_pipeline(settings)
    except MagazinePipelineError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    app = create_app(
        pipeline.store,
        pipeline.approvals,
        cors_origins=settings.api.cors_origins,
        on_shutdown=pipeline.aclose,
    )
    log.info("layout_bridge_starting", host=host or settings.api.host, port=port or settings.api.port)
    uvicorn.run(app, host=host or settings.api.host, port=port or settings.api.port)


if __name__ == "__main__":
    cli()
