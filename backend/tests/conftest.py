"""
Catalog Autotune - Test Fixtures
================================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from catalog_autotune.api.main import app
from catalog_autotune.api.self_improvement import get_rules_repository
from catalog_autotune.core.config import Settings
from catalog_autotune.core.database import Base, create_engine, create_session_factory, create_tables, get_db
from catalog_autotune.core.models import PipelineRunRecord, utcnow
from catalog_autotune.core.self_improvement.collaborators import (
    CanarySubsetBuilder,
    PipelineRunner,
    PipelineRunOutput,
    RunArtifact,
)
from catalog_autotune.core.self_improvement.rule_patch import JsonFileRulesRepository, serialize_rules


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    engine = create_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    await create_tables(engine)

    async with create_session_factory(engine)() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, rules_repository: JsonFileRulesRepository) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and rules file overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rules_repository] = lambda: rules_repository

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# Rules & Settings Fixtures
# ==========================================================================

SAMPLE_RULES: dict[str, Any] = {
    "version": "2026-01",
    "categories": [
        {
            "slug": "power-drills",
            "name": "Power Drills",
            "include_any": ["drill", "cordless drill"],
            "exclude_any": ["drill bit"],
            "strong_exclude_any": [],
            "auto_min_confidence": 0.8,
        },
        {
            "slug": "drill-bits",
            "name": "Drill Bits",
            "include_any": ["drill bit", "bit set"],
            "exclude_any": [],
            "strong_exclude_any": [],
        },
        {
            "slug": "uncategorized",
            "name": "Uncategorized",
            "include_any": [],
            "exclude_any": [],
            "strong_exclude_any": [],
            "auto_min_confidence": 0.86,
        },
    ],
}


@pytest.fixture
def rules_path(tmp_path: Path) -> Path:
    path = tmp_path / "category_rules.json"
    path.write_text(serialize_rules(SAMPLE_RULES), encoding="utf-8")
    return path


@pytest.fixture
def rules_repository(rules_path: Path) -> JsonFileRulesRepository:
    return JsonFileRulesRepository(rules_path)


@pytest.fixture
def loop_settings(tmp_path: Path, rules_path: Path) -> Settings:
    """Settings isolated from the environment, pointing every path into tmp_path."""
    catalog = tmp_path / "catalog.csv"
    catalog.write_text("sku,title\nA-1,Cordless drill 18V\n", encoding="utf-8")
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        CATALOG_INPUT_PATH=str(catalog),
        OUTPUT_DIR=str(tmp_path / "outputs"),
        CATEGORY_RULES_PATH=str(rules_path),
        CANARY_STATE_PATH=str(tmp_path / "outputs" / "canary_state.json"),
        CANARY_AUTO_ACCEPT_THRESHOLD=0.75,
        SELF_IMPROVE_CANARY_PARTIAL_APPLY_THRESHOLD=0.7,
        SELF_IMPROVE_RETRY_LIMIT=1,
        SELF_IMPROVE_GATE_MIN_SAMPLE_SIZE=0,
    )


# ==========================================================================
# Collaborator Fakes
# ==========================================================================

def passing_stats(auto_accepted_rate: float = 0.9, **extra: Any) -> dict[str, Any]:
    """Pipeline stats that clear the base quality gate."""
    return {
        "auto_accepted_rate": auto_accepted_rate,
        "fallback_category_rate": 0.01,
        "needs_review_rate": 0.1,
        "unique_products_processed": 200,
        "attribute_validation_fail_count": 0,
        "quality_gate": {
            "auto_accepted_rate_target": 0.4,
            "fallback_category_rate_target": 0.05,
            "needs_review_rate_target": 0.3,
            "attribute_validation_fail_rate_target": 0.1,
            "pre_qa_passed": True,
        },
        **extra,
    }


class ScriptedPipelineRunner(PipelineRunner):
    """
    Pipeline runner that replays a script of outcomes.

    Each entry is either a stats dict, persisted as a pipeline_runs row, or
    an exception instance, raised instead of running.
    """

    def __init__(self, db: AsyncSession, script: list[Any], with_hotlist: bool = True):
        self.db = db
        self.script = list(script)
        self.with_hotlist = with_hotlist
        self.calls: list[dict[str, str]] = []

    async def run(self, input_path: str, store_id: str, run_label: str) -> PipelineRunOutput:
        self.calls.append({"input_path": input_path, "store_id": store_id, "run_label": run_label})
        if not self.script:
            raise AssertionError(f"Unexpected pipeline run {run_label}")
        outcome = self.script.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome

        record = PipelineRunRecord(
            store_id=store_id,
            input_file_name=input_path,
            run_label=run_label,
            status="completed_pending_review",
            stats=outcome,
            finished_at=utcnow(),
        )
        self.db.add(record)
        await self.db.commit()

        artifacts = []
        if self.with_hotlist:
            artifacts.append(RunArtifact(
                key="confusion_hotlist_csv",
                format="confusion-csv",
                file_name=f"{record.id}-confusion-hotlist.csv",
            ))
        return PipelineRunOutput(run_id=record.id, artifacts=artifacts)


class RecordingCanaryBuilder(CanarySubsetBuilder):
    def __init__(self, subset_path: str):
        self.subset_path = subset_path
        self.calls: list[Optional[str]] = []

    async def build(
        self,
        input_path: str,
        sample_size: int,
        fixed_ratio: float,
        random_seed: int,
        hotlist_path: Optional[str],
    ) -> str:
        self.calls.append(hotlist_path)
        return self.subset_path


@pytest.fixture
def canary_builder(tmp_path: Path) -> RecordingCanaryBuilder:
    return RecordingCanaryBuilder(str(tmp_path / "canary_input.csv"))
