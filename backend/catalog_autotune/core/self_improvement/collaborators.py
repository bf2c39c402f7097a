"""
External collaborators of the self-improvement loop.

The categorization pipeline and the canary subset builder live outside this
package; the loop only depends on the interfaces below. The canary state
file is the small piece of shared state between consecutive canary loops.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from catalog_autotune.core.models import utcnow

CONFUSION_HOTLIST_FORMAT = "confusion-csv"
CONFUSION_HOTLIST_KEY = "confusion_hotlist_csv"


@dataclass
class RunArtifact:
    key: str
    format: str
    file_name: str


@dataclass
class PipelineRunOutput:
    run_id: str
    artifacts: list[RunArtifact] = field(default_factory=list)

    def find_confusion_hotlist(self) -> Optional[RunArtifact]:
        for artifact in self.artifacts:
            if artifact.format == CONFUSION_HOTLIST_FORMAT or artifact.key == CONFUSION_HOTLIST_KEY:
                return artifact
        return None


class PipelineRunner(ABC):
    """
    Runs the categorization pipeline over an input file.

    Implementations persist the run and its statistics to the pipeline_runs
    table; the loop reads them back by run id. Any exception is treated as a
    retryable runtime failure of the attempt.
    """

    @abstractmethod
    async def run(self, input_path: str, store_id: str, run_label: str) -> PipelineRunOutput:
        ...


class CanarySubsetBuilder(ABC):
    """Builds the deterministic canary input (fixed hotlist rows + seeded random sample)."""

    @abstractmethod
    async def build(
        self,
        input_path: str,
        sample_size: int,
        fixed_ratio: float,
        random_seed: int,
        hotlist_path: Optional[str],
    ) -> str:
        """Write the subset and return its path."""


# ==========================================================================
# Canary State
# ==========================================================================

@dataclass
class CanaryState:
    last_canary_run_id: str
    last_canary_hotlist_path: str
    updated_at: str


def read_canary_state(state_path: Union[str, Path]) -> Optional[CanaryState]:
    """Return the stored canary state, or None when there is no usable state yet."""
    path = Path(state_path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError):
        return None

    if not isinstance(raw, dict):
        return None
    values = [raw.get(name) for name in ("last_canary_run_id", "last_canary_hotlist_path", "updated_at")]
    if not all(isinstance(value, str) and value.strip() for value in values):
        return None
    return CanaryState(*values)


def resolve_hotlist_path(state_path: Union[str, Path], state: Optional[CanaryState]) -> Optional[str]:
    """Hotlist paths in the state file are relative to the state file's directory."""
    if state is None:
        return None
    hotlist = Path(state.last_canary_hotlist_path)
    if not hotlist.is_absolute():
        hotlist = Path(state_path).parent / hotlist
    return str(hotlist.resolve())


def write_canary_state(
    state_path: Union[str, Path],
    run_id: str,
    hotlist_path: str,
    now: Optional[datetime] = None,
) -> CanaryState:
    state = CanaryState(
        last_canary_run_id=run_id,
        last_canary_hotlist_path=hotlist_path,
        updated_at=(now or utcnow()).isoformat(),
    )
    path = Path(state_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(state), indent=2), encoding="utf-8")
    return state
