"""
Rule Patch Tests
================

Pure edits on the category rules document and the JSON file repository.
"""

import copy
from pathlib import Path

import pytest

from catalog_autotune.core.self_improvement.rule_patch import (
    JsonFileRulesRepository,
    RulesVersionConflict,
    apply_rule_patch,
    content_version,
    dedupe_terms,
    render_rules_diff,
    revert_rule_patch,
    serialize_rules,
)

from conftest import SAMPLE_RULES


def category(rules: dict, slug: str) -> dict:
    return next(item for item in rules["categories"] if item["slug"] == slug)


class TestDedupeTerms:
    def test_keeps_first_seen_spelling(self):
        assert dedupe_terms([" Drill", "drill", "DRILL ", "saw", ""]) == ["Drill", "saw"]


class TestApplyRulePatch:
    def test_add_term_to_list_field(self):
        result = apply_rule_patch(SAMPLE_RULES, {
            "target_slug": "power-drills",
            "field": "include_any",
            "action": "add",
            "value": "hammer drill",
        })

        assert category(result.rules, "power-drills")["include_any"] == ["drill", "cordless drill", "hammer drill"]
        assert result.old_value == ["drill", "cordless drill"]
        assert result.new_value == ["drill", "cordless drill", "hammer drill"]

    def test_add_existing_term_is_deduplicated(self):
        result = apply_rule_patch(SAMPLE_RULES, {
            "target_slug": "power-drills",
            "field": "include_any",
            "action": "add",
            "value": "Drill",
        })
        assert category(result.rules, "power-drills")["include_any"] == ["drill", "cordless drill"]

    def test_remove_term_is_case_insensitive(self):
        result = apply_rule_patch(SAMPLE_RULES, {
            "target_slug": "power-drills",
            "field": "include_any",
            "action": "remove",
            "value": "CORDLESS DRILL",
        })
        assert category(result.rules, "power-drills")["include_any"] == ["drill"]

    def test_set_replaces_list(self):
        result = apply_rule_patch(SAMPLE_RULES, {
            "target_slug": "drill-bits",
            "field": "exclude_any",
            "action": "set",
            "value": "drill driver",
        })
        assert category(result.rules, "drill-bits")["exclude_any"] == ["drill driver"]

    def test_numeric_set_records_missing_old_value(self):
        result = apply_rule_patch(SAMPLE_RULES, {
            "target_slug": "drill-bits",
            "field": "auto_min_margin",
            "action": "set",
            "value": "0.12",
        })
        assert result.old_value is None
        assert category(result.rules, "drill-bits")["auto_min_margin"] == 0.12

    def test_input_is_not_mutated(self):
        before = copy.deepcopy(SAMPLE_RULES)
        apply_rule_patch(SAMPLE_RULES, {
            "target_slug": "power-drills",
            "field": "auto_min_confidence",
            "action": "set",
            "value": 0.7,
        })
        assert SAMPLE_RULES == before

    @pytest.mark.parametrize("payload, message", [
        ({"target_slug": "nope", "field": "include_any", "action": "add", "value": "x"}, "unknown rule slug"),
        ({"target_slug": "power-drills", "field": "name", "action": "set", "value": "x"}, "Unsupported proposal field"),
        ({"target_slug": "power-drills", "field": "include_any", "action": "append", "value": "x"}, "Unsupported action"),
        ({"target_slug": "power-drills", "field": "auto_min_margin", "action": "add", "value": 0.1}, "Only 'set'"),
        ({"target_slug": "power-drills", "field": "auto_min_margin", "action": "set", "value": "high"}, "numeric"),
        ({"target_slug": "power-drills", "field": "include_any", "action": "add", "value": 3}, "string value"),
    ])
    def test_invalid_payloads_are_rejected(self, payload, message):
        with pytest.raises(ValueError, match=message):
            apply_rule_patch(SAMPLE_RULES, payload)


class TestRevertRulePatch:
    def test_scalar_round_trip_is_byte_identical(self):
        payload = {"target_slug": "power-drills", "field": "auto_min_confidence", "action": "set", "value": 0.72}
        patched = apply_rule_patch(SAMPLE_RULES, payload)

        restored = revert_rule_patch(patched.rules, payload, patched.old_value)

        assert serialize_rules(restored) == serialize_rules(SAMPLE_RULES)

    def test_new_numeric_field_is_removed_again(self):
        payload = {"target_slug": "drill-bits", "field": "auto_min_margin", "action": "set", "value": 0.2}
        patched = apply_rule_patch(SAMPLE_RULES, payload)

        restored = revert_rule_patch(patched.rules, payload, patched.old_value)

        assert "auto_min_margin" not in category(restored, "drill-bits")

    def test_list_restore_is_deduplicated(self):
        payload = {"target_slug": "power-drills", "field": "include_any", "action": "add", "value": "driver"}
        patched = apply_rule_patch(SAMPLE_RULES, payload)

        restored = revert_rule_patch(patched.rules, payload, ["drill", "Drill", "cordless drill"])

        assert category(restored, "power-drills")["include_any"] == ["drill", "cordless drill"]

    def test_list_restore_needs_a_list(self):
        payload = {"target_slug": "power-drills", "field": "include_any", "action": "add", "value": "driver"}
        with pytest.raises(ValueError):
            revert_rule_patch(SAMPLE_RULES, payload, "drill")


class TestJsonFileRulesRepository:
    def test_read_reports_content_version(self, rules_repository, rules_path: Path):
        snapshot = rules_repository.read()

        assert snapshot.content == rules_path.read_text(encoding="utf-8")
        assert snapshot.version == content_version(snapshot.content)
        assert snapshot.rules == SAMPLE_RULES

    def test_compare_and_swap_writes_canonical_json(self, rules_repository, rules_path: Path):
        snapshot = rules_repository.read()
        updated = apply_rule_patch(snapshot.rules, {
            "target_slug": "power-drills",
            "field": "include_any",
            "action": "add",
            "value": "impact drill",
        }).rules

        new_version = rules_repository.compare_and_swap(snapshot.version, updated)

        assert rules_path.read_text(encoding="utf-8") == serialize_rules(updated)
        assert new_version == content_version(serialize_rules(updated))

    def test_compare_and_swap_detects_concurrent_edit(self, rules_repository, rules_path: Path):
        snapshot = rules_repository.read()
        rules_path.write_text(snapshot.content + "\n", encoding="utf-8")

        with pytest.raises(RulesVersionConflict):
            rules_repository.compare_and_swap(snapshot.version, snapshot.rules)

    def test_compare_and_swap_content_keeps_text_verbatim(self, rules_repository, rules_path: Path):
        snapshot = rules_repository.read()
        hand_written = snapshot.content.replace("\n", "\r\n").rstrip()

        new_version = rules_repository.compare_and_swap_content(snapshot.version, hand_written)

        assert rules_path.read_bytes() == hand_written.encode("utf-8")
        assert rules_repository.read().version == new_version

    def test_restore_puts_back_exact_bytes(self, rules_repository, rules_path: Path):
        snapshot = rules_repository.read()
        rules_path.write_text("{}", encoding="utf-8")

        rules_repository.restore(snapshot)

        assert rules_path.read_text(encoding="utf-8") == snapshot.content

    def test_invalid_document_is_rejected(self, tmp_path: Path):
        path = tmp_path / "rules.json"
        path.write_text('{"rules": []}', encoding="utf-8")
        with pytest.raises(ValueError, match="categories"):
            JsonFileRulesRepository(path).read()


def test_render_rules_diff_shows_changed_line():
    patched = apply_rule_patch(SAMPLE_RULES, {
        "target_slug": "power-drills",
        "field": "auto_min_confidence",
        "action": "set",
        "value": 0.7,
    }).rules

    diff = render_rules_diff(SAMPLE_RULES, patched)

    assert '-      "auto_min_confidence": 0.8' in diff
    assert '+      "auto_min_confidence": 0.7' in diff
