"""
Self-Improvement Worker - Poll loop around the orchestrator.

Each iteration sweeps stale batches back into the queue, then claims and
processes at most one batch. Several workers may run against the same
database; only batch claiming is coordinated between them.
"""

import asyncio
import importlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_autotune.core.config import Settings, get_settings
from catalog_autotune.core.database import AsyncSessionLocal
from catalog_autotune.core.models import BatchStatus
from catalog_autotune.core.self_improvement.collaborators import CanarySubsetBuilder, PipelineRunner
from catalog_autotune.core.self_improvement.orchestrator import SelfImprovementOrchestrator
from catalog_autotune.core.self_improvement.rule_patch import JsonFileRulesRepository, RulesRepository
from catalog_autotune.core.self_improvement.store import SelfImprovementStore

logger = structlog.get_logger(__name__)


@dataclass
class WorkerIterationResult:
    recovered_runs: int = 0
    requeued_batches: int = 0
    batch_id: Optional[str] = None
    batch_status: Optional[BatchStatus] = None

    @property
    def idle(self) -> bool:
        return self.batch_id is None


def load_collaborator(path: str) -> Any:
    """
    Resolve a "package.module:attribute" path.

    Classes and factories are called without arguments; anything else is
    returned as is.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Invalid collaborator path '{path}'. Expected 'package.module:attribute'.")
    target = getattr(importlib.import_module(module_name), attribute)
    return target() if callable(target) else target


async def run_worker_iteration(
    session_factory: Callable[[], AsyncSession],
    pipeline_runner: PipelineRunner,
    rules: RulesRepository,
    canary_builder: Optional[CanarySubsetBuilder] = None,
    settings: Optional[Settings] = None,
) -> WorkerIterationResult:
    settings = settings or get_settings()
    result = WorkerIterationResult()

    async with session_factory() as db:
        recovery = await SelfImprovementStore(db).recover_stale_batches(
            settings.SELF_IMPROVE_STALE_AFTER_MINUTES
        )
        result.recovered_runs = recovery.recovered_runs
        result.requeued_batches = recovery.requeued_batches

        orchestrator = SelfImprovementOrchestrator(
            db,
            pipeline_runner,
            rules,
            canary_builder=canary_builder,
            settings=settings,
        )
        batch = await orchestrator.process_next_batch()
        if batch is not None:
            result.batch_id = str(batch.id)
            result.batch_status = batch.status

    return result


async def run_worker(
    pipeline_runner: Optional[PipelineRunner] = None,
    canary_builder: Optional[CanarySubsetBuilder] = None,
    rules: Optional[RulesRepository] = None,
    once: bool = False,
    poll_seconds: Optional[float] = None,
    settings: Optional[Settings] = None,
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
) -> WorkerIterationResult:
    """
    Run the worker loop.

    With once=True the loop stops after the first iteration, whether or not
    a batch was processed. Otherwise it sleeps poll_seconds whenever the
    queue is empty and runs until cancelled.
    """
    settings = settings or get_settings()
    poll = poll_seconds if poll_seconds is not None else settings.SELF_IMPROVE_WORKER_POLL_SECONDS
    if poll <= 0:
        raise ValueError("poll_seconds must be positive.")

    if pipeline_runner is None:
        if not settings.SELF_IMPROVE_PIPELINE_RUNNER:
            raise ValueError("SELF_IMPROVE_PIPELINE_RUNNER is required to run the worker.")
        pipeline_runner = load_collaborator(settings.SELF_IMPROVE_PIPELINE_RUNNER)
    if canary_builder is None and settings.SELF_IMPROVE_CANARY_BUILDER:
        canary_builder = load_collaborator(settings.SELF_IMPROVE_CANARY_BUILDER)
    rules = rules or JsonFileRulesRepository(settings.CATEGORY_RULES_PATH)

    logger.info("self_improvement_worker_started", once=once, poll_seconds=poll)

    while True:
        result = await run_worker_iteration(
            session_factory,
            pipeline_runner,
            rules,
            canary_builder=canary_builder,
            settings=settings,
        )

        if result.idle:
            logger.info(
                "self_improvement_worker_idle",
                recovered_runs=result.recovered_runs,
                requeued_batches=result.requeued_batches,
            )
        else:
            logger.info(
                "self_improvement_worker_processed",
                batch_id=result.batch_id,
                batch_status=result.batch_status.value,
            )

        if once:
            return result
        if result.idle:
            await asyncio.sleep(poll)
