"""
Phrase Parser - Turns operator phrases into structured intents.

Supported commands:
- run <N> self-improvement <canary|full> loops
- show self-improvement batches
- show self-improvement batch <id>
"""

import re
from dataclasses import dataclass
from typing import Union

from catalog_autotune.core.models import LoopType

USAGE = (
    "run <N> self-improvement <canary|full> loops; "
    "show self-improvement batches; "
    "show self-improvement batch <id>"
)

STATUS_ALL_PATTERN = re.compile(r"^show\s+self-improvement\s+batches$", re.IGNORECASE)
STATUS_ONE_PATTERN = re.compile(r"^show\s+self-improvement\s+batch\s+([A-Za-z0-9-]+)$", re.IGNORECASE)
ENQUEUE_PATTERN = re.compile(r"^run\s+(\d+)\s+self-improvement\s+(canary|full)\s+loops?$", re.IGNORECASE)
KNOWN_PREFIX_PATTERN = re.compile(r"^(run\s+\d+\s+self-improvement|show\s+self-improvement)", re.IGNORECASE)


class PhraseParseError(ValueError):
    """Raised when a phrase does not map to a supported command."""


@dataclass(frozen=True)
class EnqueueIntent:
    count: int
    loop_type: LoopType


@dataclass(frozen=True)
class StatusAllIntent:
    pass


@dataclass(frozen=True)
class StatusOneIntent:
    batch_id: str


PhraseIntent = Union[EnqueueIntent, StatusAllIntent, StatusOneIntent]


def over_cap_message(count: int, max_loops: int) -> str:
    return (
        f"Requested count {count} exceeds max allowed {max_loops}. "
        f"Please request {max_loops} or fewer loops."
    )


def parse_self_improvement_phrase(phrase: str, max_loops: int) -> PhraseIntent:
    normalized = " ".join(phrase.split())

    if STATUS_ALL_PATTERN.match(normalized):
        return StatusAllIntent()

    match = STATUS_ONE_PATTERN.match(normalized)
    if match:
        return StatusOneIntent(batch_id=match.group(1))

    match = ENQUEUE_PATTERN.match(normalized)
    if match:
        count = int(match.group(1))
        if count <= 0:
            raise PhraseParseError("Loop count must be a positive integer.")
        if count > max_loops:
            raise PhraseParseError(over_cap_message(count, max_loops))
        return EnqueueIntent(count=count, loop_type=LoopType(match.group(2).lower()))

    if KNOWN_PREFIX_PATTERN.match(normalized):
        raise PhraseParseError(
            "Ambiguous self-improvement phrase. Use 'run <N> self-improvement <canary|full> loops', "
            "'show self-improvement batches', or 'show self-improvement batch <id>'."
        )

    raise PhraseParseError(f"Unrecognized phrase. Supported commands: {USAGE}.")
