"""
Rule Patch - Category rules repository and pure edit functions.

The category rules file is the one resource shared by every loop. It is
accessed only through a RulesRepository so writers can detect that the file
changed underneath them (compare-and-swap on the content hash) and so a
failed database commit can put the exact previous bytes back.
"""

import copy
import difflib
import hashlib
import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

LIST_FIELDS = ("include_any", "exclude_any", "strong_exclude_any")
NUMERIC_FIELDS = ("auto_min_confidence", "auto_min_margin")

RuleValue = Union[str, float, list[str], None]


class RulesVersionConflict(RuntimeError):
    """The rules file changed between read and write."""


@dataclass(frozen=True)
class RulesSnapshot:
    """Rules as read from storage, plus the exact bytes and their version."""

    content: str
    rules: dict[str, Any]
    version: str


@dataclass
class RulePatchResult:
    rules: dict[str, Any]
    old_value: RuleValue
    new_value: RuleValue


# ==========================================================================
# Serialization
# ==========================================================================

def serialize_rules(rules: dict[str, Any]) -> str:
    """Canonical on-disk form: 2-space JSON followed by a newline."""
    return json.dumps(rules, indent=2, ensure_ascii=False) + "\n"


def content_version(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def parse_rules(content: str) -> dict[str, Any]:
    rules = json.loads(content)
    if not isinstance(rules, dict) or not isinstance(rules.get("categories"), list):
        raise ValueError("Invalid category rules file: categories array is missing.")
    return rules


# ==========================================================================
# Repository
# ==========================================================================

class RulesRepository(ABC):
    """Storage for the category rules document."""

    @abstractmethod
    def read(self) -> RulesSnapshot:
        """Return the current rules and their version."""

    @abstractmethod
    def compare_and_swap(self, expected_version: str, rules: dict[str, Any]) -> str:
        """
        Replace the rules if the stored version still equals expected_version.

        Returns the new version. Raises RulesVersionConflict otherwise.
        """

    @abstractmethod
    def compare_and_swap_content(self, expected_version: str, content: str) -> str:
        """Like compare_and_swap, but writes the given text exactly as is."""

    @abstractmethod
    def restore(self, snapshot: RulesSnapshot) -> None:
        """Unconditionally put back the exact content of a previous snapshot."""


class JsonFileRulesRepository(RulesRepository):
    """Rules stored as a JSON file on local disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def read(self) -> RulesSnapshot:
        content = self.path.read_bytes().decode("utf-8")
        return RulesSnapshot(
            content=content,
            rules=parse_rules(content),
            version=content_version(content),
        )

    def compare_and_swap(self, expected_version: str, rules: dict[str, Any]) -> str:
        return self.compare_and_swap_content(expected_version, serialize_rules(rules))

    def compare_and_swap_content(self, expected_version: str, content: str) -> str:
        current = content_version(self.path.read_bytes().decode("utf-8"))
        if current != expected_version:
            raise RulesVersionConflict(
                f"Rules file {self.path} changed since it was read "
                f"(expected {expected_version[:12]}, found {current[:12]})."
            )
        self._write(content)
        return content_version(content)

    def restore(self, snapshot: RulesSnapshot) -> None:
        self._write(snapshot.content)

    def _write(self, content: str) -> None:
        # Write to a sibling temp file and rename so readers never see a partial file
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


# ==========================================================================
# Pure Edits
# ==========================================================================

def _normalize_term(value: str) -> str:
    return value.strip().lower()


def dedupe_terms(values: list[str]) -> list[str]:
    """Trim terms and drop case-insensitive duplicates, keeping first-seen order."""
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed:
            continue
        key = _normalize_term(trimmed)
        if key in seen:
            continue
        seen.add(key)
        output.append(trimmed)
    return output


def _find_category(rules: dict[str, Any], slug: Optional[str]) -> dict[str, Any]:
    for category in rules.get("categories", []):
        if category.get("slug") == slug:
            return category
    raise ValueError(f"Cannot apply proposal: unknown rule slug '{slug}'.")


def _as_number(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Expected numeric value for {field}.")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Expected numeric value for {field}.") from None


def apply_rule_patch(rules: dict[str, Any], payload: dict[str, Any]) -> RulePatchResult:
    """
    Apply a proposal payload to a copy of the rules.

    List fields accept add/remove/set, numeric fields accept set only.
    The input rules are never mutated.
    """
    updated = copy.deepcopy(rules)
    category = _find_category(updated, payload.get("target_slug"))
    field = payload.get("field")
    action = payload.get("action")
    value = payload.get("value")

    if field in LIST_FIELDS:
        if not isinstance(value, str):
            raise ValueError(f"Expected string value for {field}.")
        current = list(category.get(field) or [])
        old_value = list(current)

        if action == "add":
            category[field] = dedupe_terms(current + [value])
        elif action == "remove":
            remove_key = _normalize_term(value)
            category[field] = [term for term in current if _normalize_term(term) != remove_key]
        elif action == "set":
            category[field] = dedupe_terms([value])
        else:
            raise ValueError(f"Unsupported action '{action}' for field '{field}'.")

        return RulePatchResult(rules=updated, old_value=old_value, new_value=list(category[field]))

    if field in NUMERIC_FIELDS:
        if action != "set":
            raise ValueError(f"Only 'set' action is allowed for numeric field '{field}'.")
        new_value = _as_number(value, field)
        old_value = category.get(field)
        category[field] = new_value
        return RulePatchResult(rules=updated, old_value=old_value, new_value=new_value)

    raise ValueError(f"Unsupported proposal field '{field}'.")


def revert_rule_patch(rules: dict[str, Any], payload: dict[str, Any], old_value: RuleValue) -> dict[str, Any]:
    """
    Put old_value back into the field a payload targeted.

    A numeric field that did not exist before the patch is removed again.
    """
    updated = copy.deepcopy(rules)
    category = _find_category(updated, payload.get("target_slug"))
    field = payload.get("field")

    if field in LIST_FIELDS:
        if not isinstance(old_value, list):
            raise ValueError(f"Cannot restore list field '{field}' from {old_value!r}.")
        category[field] = dedupe_terms([str(term) for term in old_value])
        return updated

    if field in NUMERIC_FIELDS:
        if old_value is None:
            category.pop(field, None)
        elif isinstance(old_value, (int, float)) and not isinstance(old_value, bool):
            category[field] = old_value
        else:
            category[field] = _as_number(old_value, field)
        return updated

    raise ValueError(f"Unsupported proposal field '{field}'.")


def render_rules_diff(before: dict[str, Any], after: dict[str, Any]) -> str:
    return "".join(
        difflib.unified_diff(
            serialize_rules(before).splitlines(keepends=True),
            serialize_rules(after).splitlines(keepends=True),
            fromfile="rules.before.json",
            tofile="rules.after.json",
        )
    )
