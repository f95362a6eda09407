# promptshield/engine/catalogue.py
"""
Catalogue loader for data-driven detection.

Loads detection rules, keyword probes and attack exemplars from YAML files
once at startup and compiles them into immutable tuples. Rules are data, not
code: extending the catalogue never touches matcher logic.

Unlike a best-effort loader, any defect (missing file, bad YAML, invalid regex,
unknown severity, duplicate id) raises CatalogueLoadFailure. Running with a
partially loaded ruleset would silently weaken detection.

Usage:
    from promptshield.engine.catalogue import get_default_rules

    rules, probes = get_default_rules()
    for rule in rules:
        if rule.applies_to("code") and rule.pattern.search(text):
            ...
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

import yaml

from promptshield.engine.errors import CatalogueLoadFailure
from promptshield.engine.signals import SEVERITIES

DATA_DIR = Path(__file__).resolve().parent.parent / "data"
RULES_FILE = DATA_DIR / "rules.yml"
EXEMPLARS_FILE = DATA_DIR / "exemplars.yml"

PathLike = Union[str, Path]


@dataclass(frozen=True)
class DetectionRule:
    id: str
    pattern: "re.Pattern[str]"
    label: str
    severity: str
    confidence: float
    contexts: FrozenSet[str]
    bypass_notes: Tuple[str, ...] = ()
    mitigation: str = ""

    def applies_to(self, context: str) -> bool:
        return context in self.contexts or "all" in self.contexts


@dataclass(frozen=True)
class KeywordProbe:
    id: str
    label: str
    severity: str
    confidence: float
    keywords: Tuple[str, ...]
    min_hits: int
    contexts: FrozenSet[str]

    def applies_to(self, context: str) -> bool:
        return context in self.contexts or "all" in self.contexts


@dataclass(frozen=True)
class AttackExemplar:
    id: str
    text: str
    label: str
    severity: str
    threshold: float
    contexts: FrozenSet[str]

    def applies_to(self, context: str) -> bool:
        return context in self.contexts or "all" in self.contexts


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise CatalogueLoadFailure(f"Catalogue file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise CatalogueLoadFailure(f"Cannot read catalogue {path}: {e}") from e
    if not isinstance(data, dict):
        raise CatalogueLoadFailure(f"Catalogue {path} must be a mapping at top level")
    return data


def _entries(config: Dict[str, Any], section: str, source: Path, required: bool) -> List[Dict[str, Any]]:
    entries = config.get(section)
    if entries is None:
        if required:
            raise CatalogueLoadFailure(f"{source}: missing '{section}' section")
        return []
    if not isinstance(entries, list) or (required and not entries):
        raise CatalogueLoadFailure(f"{source}: '{section}' must be a non-empty list")
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or not entry.get("id"):
            raise CatalogueLoadFailure(f"{source}: {section}[{i}] needs an 'id'")
    return entries


def _severity(entry: Dict[str, Any], source: Path) -> str:
    severity = str(entry.get("severity", "")).lower()
    if severity not in SEVERITIES:
        raise CatalogueLoadFailure(
            f"{source}: '{entry['id']}' has unknown severity {entry.get('severity')!r}"
        )
    return severity


def _unit_float(entry: Dict[str, Any], key: str, source: Path) -> float:
    try:
        value = float(entry[key])
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogueLoadFailure(f"{source}: '{entry['id']}' needs a numeric '{key}'") from e
    if not 0.0 <= value <= 1.0:
        raise CatalogueLoadFailure(f"{source}: '{entry['id']}' {key}={value} outside [0, 1]")
    return value


def _contexts(entry: Dict[str, Any], source: Path) -> FrozenSet[str]:
    contexts = entry.get("contexts", ["all"])
    if not isinstance(contexts, list) or not contexts:
        raise CatalogueLoadFailure(f"{source}: '{entry['id']}' contexts must be a non-empty list")
    return frozenset(str(c) for c in contexts)


def _check_unique(ids: List[str], source: Path) -> None:
    seen = set()
    for item_id in ids:
        if item_id in seen:
            raise CatalogueLoadFailure(f"{source}: duplicate id '{item_id}'")
        seen.add(item_id)


def _compile_rules(config: Dict[str, Any], source: Path) -> Tuple[DetectionRule, ...]:
    """
    Compile rule entries.

    Input format (per rule):
        - id: str
          regex: str
          label: str
          severity: low|medium|high|critical
          confidence: float
          contexts: [str]          (default [all])
          ignore_case: bool        (default true)
          bypass_notes: [str]
          mitigation: str
    """
    rules = []
    for entry in _entries(config, "rules", source, required=True):
        if "regex" not in entry:
            raise CatalogueLoadFailure(f"{source}: rule '{entry['id']}' has no regex")
        flags = re.IGNORECASE if entry.get("ignore_case", True) else 0
        try:
            compiled = re.compile(str(entry["regex"]), flags)
        except re.error as e:
            raise CatalogueLoadFailure(f"{source}: rule '{entry['id']}' has invalid regex: {e}") from e
        rules.append(DetectionRule(
            id=str(entry["id"]),
            pattern=compiled,
            label=str(entry.get("label", entry["id"])),
            severity=_severity(entry, source),
            confidence=_unit_float(entry, "confidence", source),
            contexts=_contexts(entry, source),
            bypass_notes=tuple(str(n) for n in entry.get("bypass_notes", [])),
            mitigation=str(entry.get("mitigation", "")),
        ))
    return tuple(rules)


def _compile_probes(config: Dict[str, Any], source: Path) -> Tuple[KeywordProbe, ...]:
    probes = []
    for entry in _entries(config, "probes", source, required=False):
        keywords = entry.get("keywords")
        if not isinstance(keywords, list) or not keywords:
            raise CatalogueLoadFailure(f"{source}: probe '{entry['id']}' needs keywords")
        probes.append(KeywordProbe(
            id=str(entry["id"]),
            label=str(entry.get("label", entry["id"])),
            severity=_severity(entry, source),
            confidence=_unit_float(entry, "confidence", source),
            keywords=tuple(str(k).lower() for k in keywords),
            min_hits=max(1, int(entry.get("min_hits", 1))),
            contexts=_contexts(entry, source),
        ))
    return tuple(probes)


def _compile_exemplars(config: Dict[str, Any], source: Path) -> Tuple[AttackExemplar, ...]:
    exemplars = []
    for entry in _entries(config, "exemplars", source, required=True):
        text = str(entry.get("text", "")).strip()
        if not text:
            raise CatalogueLoadFailure(f"{source}: exemplar '{entry['id']}' has no text")
        exemplars.append(AttackExemplar(
            id=str(entry["id"]),
            text=text,
            label=str(entry.get("label", entry["id"])),
            severity=_severity(entry, source),
            threshold=_unit_float(entry, "threshold", source),
            contexts=_contexts(entry, source),
        ))
    return tuple(exemplars)


def load_rules(path: Optional[PathLike] = None) -> Tuple[Tuple[DetectionRule, ...], Tuple[KeywordProbe, ...]]:
    """Load rules and probes from a YAML file (packaged catalogue by default)."""
    source = Path(path) if path else RULES_FILE
    config = _load_yaml(source)
    rules = _compile_rules(config, source)
    probes = _compile_probes(config, source)
    _check_unique([r.id for r in rules] + [p.id for p in probes], source)
    return rules, probes


def load_exemplars(path: Optional[PathLike] = None) -> Tuple[AttackExemplar, ...]:
    """Load attack exemplars from a YAML file (packaged catalogue by default)."""
    source = Path(path) if path else EXEMPLARS_FILE
    exemplars = _compile_exemplars(_load_yaml(source), source)
    _check_unique([e.id for e in exemplars], source)
    return exemplars


@lru_cache(maxsize=1)
def get_default_rules() -> Tuple[Tuple[DetectionRule, ...], Tuple[KeywordProbe, ...]]:
    return load_rules()


@lru_cache(maxsize=1)
def get_default_exemplars() -> Tuple[AttackExemplar, ...]:
    return load_exemplars()


def reload_catalogues() -> None:
    """Drop the cached packaged catalogues (next access re-reads the files)."""
    get_default_rules.cache_clear()
    get_default_exemplars.cache_clear()


def catalogue_stats(items) -> Dict[str, Any]:
    by_severity = {severity: 0 for severity in SEVERITIES}
    for item in items:
        by_severity[item.severity] += 1
    return {"total": len(items), "by_severity": by_severity}
