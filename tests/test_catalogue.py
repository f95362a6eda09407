# tests/test_catalogue.py
"""
Catalogue loading: the packaged YAML files compile, and every defect in a
custom file is fatal.
"""

import re

import pytest

from promptshield.engine.catalogue import (
    catalogue_stats,
    get_default_exemplars,
    get_default_rules,
    load_exemplars,
    load_rules,
    reload_catalogues,
)
from promptshield.engine.errors import CatalogueLoadFailure
from promptshield.engine.signals import SEVERITIES


def write(tmp_path, name, body):
    path = tmp_path / name
    path.write_text(body, encoding="utf-8")
    return path


VALID_RULE = """
rules:
  - id: only-rule
    regex: 'ignore\\s+everything'
    label: Only rule
    severity: high
    confidence: 0.9
"""


class TestPackagedCatalogues:

    def test_rules_compile(self):
        rules, probes = get_default_rules()
        assert len(rules) >= 15
        assert all(isinstance(r.pattern, re.Pattern) for r in rules)
        assert {p.id for p in probes} == {"leak-bait", "destructive-action", "adversarial-verbs"}

    def test_ids_unique(self):
        rules, probes = get_default_rules()
        ids = [r.id for r in rules] + [p.id for p in probes]
        assert len(ids) == len(set(ids))

    def test_exemplars_load(self):
        exemplars = get_default_exemplars()
        assert len(exemplars) == 15
        assert all(0.0 <= e.threshold <= 1.0 for e in exemplars)
        assert all(e.severity in SEVERITIES for e in exemplars)

    def test_base64_rule_is_case_sensitive(self):
        rules, _ = get_default_rules()
        rule = next(r for r in rules if r.id == "obfuscated-base64")
        assert not rule.pattern.flags & re.IGNORECASE

    def test_context_applicability(self):
        rules, _ = get_default_rules()
        code_exec = next(r for r in rules if r.id == "code-execution")
        assert code_exec.applies_to("terminal")
        assert not code_exec.applies_to("all")
        ignore = next(r for r in rules if r.id == "jailbreak-ignore-v2")
        assert ignore.applies_to("documentation")

    def test_reload_returns_fresh_objects(self):
        before = get_default_rules()
        reload_catalogues()
        after = get_default_rules()
        assert before is not after
        assert [r.id for r in before[0]] == [r.id for r in after[0]]

    def test_stats(self):
        rules, _ = get_default_rules()
        stats = catalogue_stats(rules)
        assert stats["total"] == len(rules)
        assert sum(stats["by_severity"].values()) == len(rules)


class TestCustomCatalogues:

    def test_valid_custom_file(self, tmp_path):
        rules, probes = load_rules(write(tmp_path, "rules.yml", VALID_RULE))
        assert [r.id for r in rules] == ["only-rule"]
        assert probes == ()
        assert rules[0].contexts == frozenset({"all"})

    @pytest.mark.parametrize("body,description", [
        ("rules: []\n", "empty catalogue"),
        ("- just\n- a list\n", "top level not a mapping"),
        ("rules: [\n", "broken YAML"),
        ("rules:\n  - id: r\n    regex: '(unclosed'\n    severity: high\n    confidence: 0.5\n", "invalid regex"),
        ("rules:\n  - id: r\n    regex: 'x'\n    severity: severe\n    confidence: 0.5\n", "unknown severity"),
        ("rules:\n  - id: r\n    regex: 'x'\n    severity: low\n    confidence: 1.5\n", "confidence out of range"),
        ("rules:\n  - id: r\n    regex: 'x'\n    severity: low\n", "missing confidence"),
        ("rules:\n  - regex: 'x'\n    severity: low\n    confidence: 0.5\n", "missing id"),
        (VALID_RULE + "  - id: only-rule\n    regex: 'y'\n    severity: low\n    confidence: 0.5\n", "duplicate id"),
    ])
    def test_defects_are_fatal(self, tmp_path, body, description):
        path = write(tmp_path, "rules.yml", body)
        with pytest.raises(CatalogueLoadFailure):
            load_rules(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogueLoadFailure, match="not found"):
            load_rules(tmp_path / "nope.yml")

    def test_exemplar_without_text(self, tmp_path):
        path = write(tmp_path, "ex.yml", "exemplars:\n  - id: e\n    text: ''\n    severity: low\n    threshold: 0.5\n")
        with pytest.raises(CatalogueLoadFailure):
            load_exemplars(path)
