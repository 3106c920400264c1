"""Wiring of the pipeline components from settings."""

from dataclasses import dataclass

import structlog

from magazine_pipeline.config.settings import PipelineSettings
from magazine_pipeline.engine.approvals import ApprovalFlow
from magazine_pipeline.engine.machine import StageMachine
from magazine_pipeline.engine.operator import OperatorControls
from magazine_pipeline.engine.recovery import RecoveryManager
from magazine_pipeline.engine.stages.dispatcher import StageDispatcher
from magazine_pipeline.engine.workflow import WorkflowEngine
from magazine_pipeline.providers.base import GenerationProvider, Notifier
from magazine_pipeline.providers.notifiers import LogNotifier, WebhookNotifier
from magazine_pipeline.providers.openai_compatible import OpenAICompatibleGenerator
from magazine_pipeline.store.database import PipelineStore

log = structlog.get_logger(__name__)


@dataclass
class Pipeline:
    """Every component of a running pipeline, sharing one store."""

    settings: PipelineSettings
    store: PipelineStore
    machine: StageMachine
    generator: GenerationProvider
    notifier: Notifier
    engine: WorkflowEngine
    recovery: RecoveryManager
    dispatcher: StageDispatcher
    approvals: ApprovalFlow
    operator: OperatorControls

    async def aclose(self) -> None:
        """Close HTTP clients and the store."""
        for component in (self.generator, self.notifier):
            aclose = getattr(component, "aclose", None)
            if aclose is not None:
                await aclose()
        self.store.close()


def create_generator(settings: PipelineSettings) -> GenerationProvider:
    config = settings.generation
    return OpenAICompatibleGenerator(
        base_url=config.base_url,
        model=config.model,
        api_key=config.api_key.get_secret_value() if config.api_key else None,
        timeout=config.timeout,
    )


def create_notifier(settings: PipelineSettings) -> Notifier:
    config = settings.notifications
    if config.webhook_url:
        return WebhookNotifier(config.webhook_url, timeout=config.timeout)
    return LogNotifier()


def build_pipeline(
    settings: PipelineSettings,
    store: PipelineStore | None = None,
    generator: GenerationProvider | None = None,
    notifier: Notifier | None = None,
    recovery: RecoveryManager | None = None,
) -> Pipeline:
    """Create and connect all pipeline components.

    Args:
        settings: Pipeline settings
        store: Open store to use instead of the configured database
        generator: Generation provider to use instead of the configured one
        notifier: Notifier to use instead of the configured one
        recovery: Recovery manager to use instead of one built from settings

    Returns:
        The assembled pipeline; call ``aclose()`` when done.
    """
    if store is None:
        store = PipelineStore(settings.database.path, wal=settings.database.wal).open()
    generator = generator or create_generator(settings)
    notifier = notifier or create_notifier(settings)
    recovery = recovery or RecoveryManager(store, configs=settings.retry)

    machine = StageMachine(include_image_generation=settings.workflow.include_image_generation)
    engine = WorkflowEngine(store, machine, notifier, label_prefix=settings.workflow.label_prefix)
    dispatcher = StageDispatcher.build(
        store,
        machine,
        generator,
        notifier,
        recovery,
        topic_count=settings.generation.topic_count,
    )
    approvals = ApprovalFlow(store, engine, dispatcher)
    operator = OperatorControls(store, engine, recovery, dispatcher)

    log.debug("pipeline_built", machine=repr(machine), database=str(settings.database.path))
    return Pipeline(
        settings=settings,
        store=store,
        machine=machine,
        generator=generator,
        notifier=notifier,
        engine=engine,
        recovery=recovery,
        dispatcher=dispatcher,
        approvals=approvals,
        operator=operator,
    )
