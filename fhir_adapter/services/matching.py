from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rapidfuzz.distance import Jaro, Levenshtein

from fhir_adapter.services.rules import DecisionRules, FieldRule, MatchAlgorithm, MatchRule

DEFAULT_EDIT_DISTANCE_THRESHOLD = 2
DEFAULT_JARO_WINKLER_THRESHOLD = 0.85
WINKLER_PREFIX_SCALE = 0.1
WINKLER_PREFIX_CAP = 4
WINKLER_BOOST_THRESHOLD = 0.7


class MatchLevel(str, Enum):
    AUTO_MATCH = "auto-match"
    POTENTIAL_MATCH = "potential-match"
    NO_MATCH = "no-match"


@dataclass(slots=True)
class MatchScore:
    total_score: float
    field_scores: dict[str, float] = field(default_factory=dict)
    match_level: MatchLevel = MatchLevel.NO_MATCH
    details: str = "no matching rule produced a score"


@dataclass(slots=True)
class DuplicateMatch:
    patient: dict[str, Any]
    score: MatchScore


def levenshtein_distance(left: str, right: str) -> int:
    return Levenshtein.distance(left.casefold(), right.casefold())


def jaro_winkler_similarity(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    s1 = left.casefold()
    s2 = right.casefold()
    jaro = Jaro.similarity(s1, s2)
    if jaro < WINKLER_BOOST_THRESHOLD:
        return jaro

    prefix = 0
    for a, b in zip(s1[:WINKLER_PREFIX_CAP], s2[:WINKLER_PREFIX_CAP]):
        if a != b:
            break
        prefix += 1
    return jaro + WINKLER_PREFIX_SCALE * prefix * (1.0 - jaro)


def compare_field(left: str | None, right: str | None, rule: FieldRule) -> float:
    if left is None and right is None:
        return rule.null_handling_both_missing.score(rule.weight)
    if left is None or right is None:
        return rule.null_handling_one_missing.score(rule.weight)

    if rule.algorithm is MatchAlgorithm.EXACT:
        return rule.weight if left.casefold() == right.casefold() else 0.0
    if rule.algorithm is MatchAlgorithm.LEVENSHTEIN:
        threshold = rule.threshold if rule.threshold is not None else DEFAULT_EDIT_DISTANCE_THRESHOLD
        return rule.weight if levenshtein_distance(left, right) <= threshold else 0.0
    if rule.algorithm is MatchAlgorithm.JARO_WINKLER:
        threshold = rule.threshold if rule.threshold is not None else DEFAULT_JARO_WINKLER_THRESHOLD
        return rule.weight if jaro_winkler_similarity(left, right) >= threshold else 0.0
    return 0.0


def classify(total_score: float, rule: MatchRule) -> MatchLevel:
    if total_score >= rule.auto_match_threshold:
        return MatchLevel.AUTO_MATCH
    if total_score >= rule.potential_match_threshold:
        return MatchLevel.POTENTIAL_MATCH
    return MatchLevel.NO_MATCH


def score_rule(patient: dict[str, Any], candidate: dict[str, Any], rule: MatchRule) -> MatchScore:
    field_scores: dict[str, float] = {}
    for name, field_rule in rule.field_rules.items():
        field_scores[name] = compare_field(field_rule.extract(patient), field_rule.extract(candidate), field_rule)

    total_score = sum(field_scores.values())
    return MatchScore(
        total_score=total_score,
        field_scores=field_scores,
        match_level=classify(total_score, rule),
        details=f"{rule.matching_type.value} rule: score {total_score:g}",
    )


class DuplicateDetector:
    """Scores a patient against registry candidates using weighted field rules."""

    def __init__(self, rules: DecisionRules | Sequence[MatchRule]) -> None:
        self.rules: list[MatchRule] = list(rules.rules if isinstance(rules, DecisionRules) else rules)

    def best_match_score(self, patient: dict[str, Any], candidate: dict[str, Any]) -> MatchScore:
        best: MatchScore | None = None
        for rule in self.rules:
            score = score_rule(patient, candidate, rule)
            # strict comparison keeps the earliest rule on ties
            if best is None or score.total_score > best.total_score:
                best = score
        return best if best is not None else MatchScore(total_score=0.0)

    def find_potential_duplicates(self, patient: dict[str, Any], search_results: Any) -> list[DuplicateMatch]:
        matches: list[DuplicateMatch] = []
        for candidate in iter_patients(search_results):
            score = self.best_match_score(patient, candidate)
            if score.match_level is not MatchLevel.NO_MATCH:
                matches.append(DuplicateMatch(patient=candidate, score=score))
        matches.sort(key=lambda match: match.score.total_score, reverse=True)
        return matches


def iter_patients(search_results: Any) -> Iterable[dict[str, Any]]:
    if isinstance(search_results, dict):
        resources = [entry.get("resource") for entry in search_results.get("entry") or [] if isinstance(entry, dict)]
    elif isinstance(search_results, (list, tuple)):
        resources = list(search_results)
    else:
        resources = []
    return [
        resource
        for resource in resources
        if isinstance(resource, dict) and resource.get("resourceType") == "Patient"
    ]
