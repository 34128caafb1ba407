import json
from pathlib import Path

import pytest

from fhir_adapter.core.errors import ConfigurationError
from fhir_adapter.services.rules import (
    FieldPath,
    MatchAlgorithm,
    MatchingType,
    NullHandling,
    load_decision_rules,
    parse_decision_rules,
)

DEFAULT_RULES_PATH = Path(__file__).resolve().parents[1] / "config" / "decision_rules.json"


def test_default_rules_file_loads() -> None:
    rules = load_decision_rules(DEFAULT_RULES_PATH)

    assert [rule.matching_type for rule in rules.rules] == [
        MatchingType.DETERMINISTIC,
        MatchingType.DETERMINISTIC,
        MatchingType.PROBABILISTIC,
    ]
    family = rules.rules[2].field_rules["family"]
    assert family.algorithm is MatchAlgorithm.JARO_WINKLER
    assert family.extractor_path is FieldPath.FAMILY
    assert family.null_handling_one_missing is NullHandling.CONSERVATIVE


def test_algorithm_aliases_are_normalised() -> None:
    rules = parse_decision_rules(
        {
            "rules": [
                {
                    "matchingType": "probabilistic",
                    "fields": {
                        "family": {"algorithm": "edit-distance", "weight": 3, "espath": "family"},
                        "given": {"algorithm": "phonetic-similarity", "weight": 2, "espath": "given"},
                    },
                    "autoMatchThreshold": 5,
                    "potentialMatchThreshold": 3,
                }
            ]
        }
    )
    fields = rules.rules[0].field_rules
    assert fields["family"].algorithm is MatchAlgorithm.LEVENSHTEIN
    assert fields["given"].algorithm is MatchAlgorithm.JARO_WINKLER


def test_unique_fields_keeps_first_definition() -> None:
    rules = parse_decision_rules(
        {
            "rules": [
                {
                    "matchingType": "deterministic",
                    "fields": {"family": {"algorithm": "exact", "weight": 10, "espath": "family"}},
                    "autoMatchThreshold": 10,
                    "potentialMatchThreshold": 10,
                },
                {
                    "matchingType": "probabilistic",
                    "fields": {
                        "family": {"algorithm": "jaro-winkler", "weight": 2, "espath": "family"},
                        "gender": {"algorithm": "exact", "weight": 1, "espath": "gender"},
                    },
                    "autoMatchThreshold": 3,
                    "potentialMatchThreshold": 2,
                },
            ]
        }
    )

    unique = rules.unique_fields()

    assert list(unique) == ["family", "gender"]
    assert unique["family"].weight == 10


def test_extractors_read_fhir_patient_fields() -> None:
    rules = load_decision_rules(DEFAULT_RULES_PATH)
    fields = rules.unique_fields()
    patient = {
        "resourceType": "Patient",
        "identifier": [
            {"system": "urn:neotree:impilo-id", "value": "N-7"},
            {"system": "urn:impilo:uid", "value": "I-7"},
        ],
        "name": [{"use": "temp", "family": "Old"}, {"use": "official", "family": "Dube", "given": ["Rudo"]}],
        "birthDate": "2024-02-10",
        "gender": "female",
    }

    assert fields["neotreeId"].extract(patient) == "N-7"
    assert fields["patientId"].extract(patient) == "I-7"
    assert fields["family"].extract(patient) == "Dube"
    assert fields["given"].extract(patient) == "Rudo"
    assert fields["birthDate"].extract(patient) == "2024-02-10"
    assert fields["gender"].extract(patient) == "female"
    assert fields["given"].extract({"resourceType": "Patient"}) is None


@pytest.mark.parametrize(
    "raw",
    [
        {"rules": [{"matchingType": "fuzzy", "fields": {}, "autoMatchThreshold": 1, "potentialMatchThreshold": 1}]},
        {
            "rules": [
                {
                    "matchingType": "deterministic",
                    "fields": {"x": {"algorithm": "soundex", "weight": 1, "espath": "family"}},
                    "autoMatchThreshold": 1,
                    "potentialMatchThreshold": 1,
                }
            ]
        },
        {
            "rules": [
                {
                    "matchingType": "deterministic",
                    "fields": {"x": {"algorithm": "exact", "weight": 1, "espath": "address.city"}},
                    "autoMatchThreshold": 1,
                    "potentialMatchThreshold": 1,
                }
            ]
        },
        {"rules": "not-a-list"},
    ],
)
def test_invalid_rules_raise_configuration_error(raw) -> None:
    with pytest.raises(ConfigurationError):
        parse_decision_rules(raw)


def test_missing_or_malformed_file_raises_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_decision_rules(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_decision_rules(broken)

    valid = tmp_path / "valid.json"
    valid.write_text(json.dumps({"rules": []}), encoding="utf-8")
    assert load_decision_rules(valid).rules == []
