import pytest

from fhir_adapter.services.matching import (
    DuplicateDetector,
    MatchLevel,
    classify,
    compare_field,
    jaro_winkler_similarity,
    levenshtein_distance,
)
from fhir_adapter.services.rules import FieldRule, MatchRule, parse_decision_rules


def _patient(family: str | None = None, birth_date: str | None = None, **extra) -> dict:
    patient = {"resourceType": "Patient", **extra}
    if family is not None:
        patient["name"] = [{"use": "official", "family": family}]
    if birth_date is not None:
        patient["birthDate"] = birth_date
    return patient


def _bundle(*patients: dict) -> dict:
    return {"resourceType": "Bundle", "type": "searchset", "entry": [{"resource": p} for p in patients]}


BOUNDARY_RULES = parse_decision_rules(
    {
        "rules": [
            {
                "matchingType": "probabilistic",
                "fields": {
                    "family": {"algorithm": "exact", "weight": 10, "null_handling": "moderate", "espath": "family"},
                    "birthDate": {
                        "algorithm": "exact",
                        "weight": 10,
                        "null_handling": "conservative",
                        "espath": "birthDate",
                    },
                },
                "autoMatchThreshold": 15,
                "potentialMatchThreshold": 8,
            }
        ]
    }
)


def test_boundary_scenario_classifies_and_orders_candidates() -> None:
    detector = DuplicateDetector(BOUNDARY_RULES)
    new = _patient("Moyo", "2024-01-05")
    candidate_a = _patient("Moyo", id="a")
    candidate_b = _patient("moyo", "2024-01-05", id="b")
    candidate_c = _patient("Ncube", "2023-12-31", id="c")

    matches = detector.find_potential_duplicates(new, _bundle(candidate_a, candidate_b, candidate_c))

    assert [match.patient["id"] for match in matches] == ["b", "a"]
    assert matches[0].score.total_score == 20
    assert matches[0].score.match_level is MatchLevel.AUTO_MATCH
    assert matches[1].score.total_score == 10
    assert matches[1].score.match_level is MatchLevel.POTENTIAL_MATCH
    assert matches[1].score.field_scores == {"family": 10, "birthDate": 0}


def test_candidates_accept_plain_lists_and_skip_non_patients() -> None:
    detector = DuplicateDetector(BOUNDARY_RULES)
    new = _patient("Moyo", "2024-01-05")
    results = [{"resourceType": "Organization", "id": "org"}, _patient("Moyo", "2024-01-05", id="p")]

    matches = detector.find_potential_duplicates(new, results)

    assert [match.patient["id"] for match in matches] == ["p"]


def test_empty_candidate_set_is_not_an_error() -> None:
    detector = DuplicateDetector(BOUNDARY_RULES)
    assert detector.find_potential_duplicates(_patient("Moyo"), {"resourceType": "Bundle"}) == []
    assert detector.find_potential_duplicates(_patient("Moyo"), None) == []


def test_levenshtein_reference_values() -> None:
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert levenshtein_distance("", "") == 0
    assert levenshtein_distance("MOYO", "moyo") == 0


def test_jaro_winkler_reference_values() -> None:
    assert jaro_winkler_similarity("MARTHA", "MARHTA") == pytest.approx(0.961, abs=0.01)
    assert jaro_winkler_similarity("martha", "MARTHA") == pytest.approx(1.0)
    assert jaro_winkler_similarity("", "MARTHA") == 0.0


@pytest.mark.parametrize(
    ("handling", "expected"),
    [("conservative", 0.0), ("moderate", 4.0), ("greedy", 8.0)],
)
def test_null_handling_scales_weight(handling: str, expected: float) -> None:
    rule = FieldRule.model_validate(
        {"algorithm": "exact", "weight": 8, "null_handling": handling, "null_handling_both": handling, "espath": "gender"}
    )
    assert compare_field("male", None, rule) == expected
    assert compare_field(None, None, rule) == expected


def test_both_missing_uses_its_own_handling() -> None:
    rule = FieldRule.model_validate(
        {
            "algorithm": "exact",
            "weight": 8,
            "null_handling": "greedy",
            "null_handling_both": "conservative",
            "espath": "gender",
        }
    )
    assert compare_field(None, "female", rule) == 8
    assert compare_field(None, None, rule) == 0


def test_edit_distance_uses_default_threshold_when_unset() -> None:
    rule = FieldRule.model_validate({"algorithm": "edit-distance", "weight": 5, "espath": "family"})
    assert rule.threshold is None
    assert compare_field("Chikomo", "Chikoma", rule) == 5
    assert compare_field("Chikomo", "Chiko", rule) == 5
    assert compare_field("Chikomo", "Chi", rule) == 0


def test_zero_threshold_is_respected() -> None:
    rule = FieldRule.model_validate({"algorithm": "levenshtein", "threshold": 0, "weight": 5, "espath": "family"})
    assert compare_field("Moyo", "Moyo", rule) == 5
    assert compare_field("Moyo", "Moya", rule) == 0


def test_phonetic_similarity_threshold_is_inclusive() -> None:
    rule = FieldRule.model_validate(
        {"algorithm": "phonetic-similarity", "threshold": 0.85, "weight": 7, "espath": "family"}
    )
    assert compare_field("MARTHA", "MARHTA", rule) == 7
    assert compare_field("MARTHA", "ZULU", rule) == 0


def test_classify_boundaries_are_inclusive() -> None:
    rule = BOUNDARY_RULES.rules[0]
    assert classify(15, rule) is MatchLevel.AUTO_MATCH
    assert classify(14.9, rule) is MatchLevel.POTENTIAL_MATCH
    assert classify(8, rule) is MatchLevel.POTENTIAL_MATCH
    assert classify(7.9, rule) is MatchLevel.NO_MATCH


def test_first_rule_wins_ties() -> None:
    fields = {"family": {"algorithm": "exact", "weight": 10, "espath": "family"}}
    first = MatchRule.model_validate(
        {"matchingType": "deterministic", "fields": fields, "autoMatchThreshold": 10, "potentialMatchThreshold": 5}
    )
    second = MatchRule.model_validate(
        {"matchingType": "probabilistic", "fields": fields, "autoMatchThreshold": 20, "potentialMatchThreshold": 5}
    )
    detector = DuplicateDetector([first, second])

    score = detector.best_match_score(_patient("Moyo"), _patient("Moyo"))

    assert score.total_score == 10
    assert score.match_level is MatchLevel.AUTO_MATCH
    assert score.details.startswith("deterministic")


def test_higher_scoring_rule_replaces_earlier_one() -> None:
    low = MatchRule.model_validate(
        {
            "matchingType": "deterministic",
            "fields": {"gender": {"algorithm": "exact", "weight": 1, "espath": "gender"}},
            "autoMatchThreshold": 10,
            "potentialMatchThreshold": 5,
        }
    )
    high = MatchRule.model_validate(
        {
            "matchingType": "probabilistic",
            "fields": {"family": {"algorithm": "exact", "weight": 10, "espath": "family"}},
            "autoMatchThreshold": 10,
            "potentialMatchThreshold": 5,
        }
    )
    detector = DuplicateDetector([low, high])

    score = detector.best_match_score(_patient("Moyo", gender="male"), _patient("Moyo", gender="male"))

    assert score.total_score == 10
    assert score.details.startswith("probabilistic")


def test_identifier_extractors_compare_by_system() -> None:
    rules = parse_decision_rules(
        {
            "rules": [
                {
                    "matchingType": "deterministic",
                    "fields": {"neotreeId": {"algorithm": "exact", "weight": 10, "espath": "identifier.neotreeId"}},
                    "autoMatchThreshold": 10,
                    "potentialMatchThreshold": 10,
                }
            ]
        }
    )
    new = _patient(identifier=[{"system": "urn:neotree:impilo-id", "value": "N-1"}])
    same = _patient(id="x", identifier=[{"system": "urn:neotree:impilo-id", "value": "N-1"}])
    other_system = _patient(id="y", identifier=[{"system": "urn:impilo:uid", "value": "N-1"}])

    matches = DuplicateDetector(rules).find_potential_duplicates(new, [same, other_system])

    assert [match.patient["id"] for match in matches] == ["x"]
