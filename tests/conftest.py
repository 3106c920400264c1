"""Pytest configuration and shared fixtures."""

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from magazine_pipeline.config.settings import PipelineSettings
from magazine_pipeline.engine.approvals import ApprovalFlow
from magazine_pipeline.engine.machine import StageMachine
from magazine_pipeline.engine.operator import OperatorControls
from magazine_pipeline.engine.recovery import RecoveryManager
from magazine_pipeline.engine.stages.dispatcher import StageDispatcher
from magazine_pipeline.engine.workflow import WorkflowEngine
from magazine_pipeline.providers.base import Notifier
from magazine_pipeline.store.database import PipelineStore
from tests.factories import FakeGenerator


@pytest.fixture
def store(tmp_path: Path) -> Iterator[PipelineStore]:
    """Open store backed by a temporary SQLite file."""
    pipeline_store = PipelineStore(tmp_path / "magazine.db").open()
    yield pipeline_store
    pipeline_store.close()


@pytest.fixture
def machine() -> StageMachine:
    return StageMachine()


@pytest.fixture
def notifier() -> AsyncMock:
    """Notifier whose calls can be asserted on."""
    return AsyncMock(spec=Notifier)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def sleep() -> AsyncMock:
    """Replacement for asyncio.sleep so backoff never waits."""
    return AsyncMock()


@pytest.fixture
def recovery(store: PipelineStore, sleep: AsyncMock) -> RecoveryManager:
    return RecoveryManager(store, sleep=sleep)


@pytest.fixture
def engine(store: PipelineStore, machine: StageMachine, notifier: AsyncMock) -> WorkflowEngine:
    return WorkflowEngine(store, machine, notifier)


@pytest.fixture
def dispatcher(
    store: PipelineStore,
    machine: StageMachine,
    generator: FakeGenerator,
    notifier: AsyncMock,
    recovery: RecoveryManager,
) -> StageDispatcher:
    return StageDispatcher.build(store, machine, generator, notifier, recovery)


@pytest.fixture
def approvals(store: PipelineStore, engine: WorkflowEngine, dispatcher: StageDispatcher) -> ApprovalFlow:
    return ApprovalFlow(store, engine, dispatcher)


@pytest.fixture
def operator(
    store: PipelineStore,
    engine: WorkflowEngine,
    recovery: RecoveryManager,
    dispatcher: StageDispatcher,
) -> OperatorControls:
    return OperatorControls(store, engine, recovery, dispatcher)


@pytest.fixture
def settings(tmp_path: Path) -> PipelineSettings:
    """Settings pointing at a temporary database."""
    return PipelineSettings(database={"path": str(tmp_path / "magazine.db")})
