"""
Self-Improvement Loop
=====================

Queue, orchestrator, quality gate, harness, proposal generation, and the
apply/rollback machinery that tunes the category rules file between
pipeline runs.
"""

from catalog_autotune.core.self_improvement.orchestrator import (
    SelfImprovementOrchestrator,
    build_resume_plan,
    decide_attempt_status,
)
from catalog_autotune.core.self_improvement.phrase import (
    EnqueueIntent,
    PhraseParseError,
    StatusAllIntent,
    StatusOneIntent,
    parse_self_improvement_phrase,
)
from catalog_autotune.core.self_improvement.store import SelfImprovementStore

__all__ = [
    "EnqueueIntent",
    "PhraseParseError",
    "SelfImprovementOrchestrator",
    "SelfImprovementStore",
    "StatusAllIntent",
    "StatusOneIntent",
    "build_resume_plan",
    "decide_attempt_status",
    "parse_self_improvement_phrase",
]
