"""Decision rules for patient matching.

Rules are read from a JSON document shaped like::

    {"rules": [{"matchingType": "probabilistic",
                "fields": {"family": {"algorithm": "jaro-winkler", "threshold": 0.85,
                                      "weight": 10, "null_handling": "moderate",
                                      "null_handling_both": "conservative",
                                      "espath": "family"}},
                "autoMatchThreshold": 15, "potentialMatchThreshold": 8}]}
"""

from __future__ import annotations

import json
from collections.abc import Callable
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fhir_adapter.core.config import get_settings
from fhir_adapter.core.errors import ConfigurationError

NEOTREE_ID_SYSTEM = "urn:neotree:impilo-id"
IMPILO_UID_SYSTEM = "urn:impilo:uid"

ALGORITHM_ALIASES = {
    "edit-distance": "levenshtein",
    "phonetic-similarity": "jaro-winkler",
}


class MatchingType(str, Enum):
    DETERMINISTIC = "deterministic"
    PROBABILISTIC = "probabilistic"


class MatchAlgorithm(str, Enum):
    EXACT = "exact"
    LEVENSHTEIN = "levenshtein"
    JARO_WINKLER = "jaro-winkler"


class NullHandling(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    GREEDY = "greedy"

    def score(self, weight: float) -> float:
        if self is NullHandling.GREEDY:
            return weight
        if self is NullHandling.MODERATE:
            return weight * 0.5
        return 0.0


class FieldPath(str, Enum):
    NEOTREE_ID = "identifier.neotreeId"
    PATIENT_ID = "identifier.patientId"
    BIRTH_DATE = "birthDate"
    FAMILY = "family"
    GIVEN = "given"
    GENDER = "gender"


Extractor = Callable[[dict[str, Any]], "str | None"]


def _identifier_value(system: str) -> Extractor:
    def extract(patient: dict[str, Any]) -> str | None:
        for identifier in patient.get("identifier") or []:
            if isinstance(identifier, dict) and identifier.get("system") == system:
                return _text(identifier.get("value"))
        return None

    return extract


def _last_name(patient: dict[str, Any]) -> dict[str, Any] | None:
    names = patient.get("name")
    if not isinstance(names, list) or not names:
        return None
    last = names[-1]
    return last if isinstance(last, dict) else None


def _family(patient: dict[str, Any]) -> str | None:
    name = _last_name(patient)
    return _text(name.get("family")) if name else None


def _given(patient: dict[str, Any]) -> str | None:
    name = _last_name(patient)
    if not name:
        return None
    given = name.get("given")
    if isinstance(given, list) and given:
        return _text(given[0])
    return None


EXTRACTORS: dict[FieldPath, Extractor] = {
    FieldPath.NEOTREE_ID: _identifier_value(NEOTREE_ID_SYSTEM),
    FieldPath.PATIENT_ID: _identifier_value(IMPILO_UID_SYSTEM),
    FieldPath.BIRTH_DATE: lambda patient: _text(patient.get("birthDate")),
    FieldPath.FAMILY: _family,
    FieldPath.GIVEN: _given,
    FieldPath.GENDER: lambda patient: _text(patient.get("gender")),
}


class FieldRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    algorithm: MatchAlgorithm
    threshold: float | None = None
    weight: float
    null_handling_one_missing: NullHandling = Field(default=NullHandling.CONSERVATIVE, alias="null_handling")
    null_handling_both_missing: NullHandling = Field(default=NullHandling.CONSERVATIVE, alias="null_handling_both")
    extractor_path: FieldPath = Field(alias="espath")
    fhirpath: str | None = None
    description: str | None = None

    @field_validator("algorithm", mode="before")
    @classmethod
    def _resolve_algorithm_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            return ALGORITHM_ALIASES.get(value, value)
        return value

    def extract(self, patient: dict[str, Any]) -> str | None:
        return EXTRACTORS[self.extractor_path](patient)


class MatchRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    matching_type: MatchingType = Field(alias="matchingType")
    description: str | None = None
    field_rules: dict[str, FieldRule] = Field(alias="fields")
    auto_match_threshold: float = Field(alias="autoMatchThreshold")
    potential_match_threshold: float = Field(alias="potentialMatchThreshold")


class DecisionRules(BaseModel):
    rules: list[MatchRule] = Field(default_factory=list)

    def unique_fields(self) -> dict[str, FieldRule]:
        """First definition of each field name across all rules."""
        fields: dict[str, FieldRule] = {}
        for rule in self.rules:
            for name, field_rule in rule.field_rules.items():
                fields.setdefault(name, field_rule)
        return fields


def load_decision_rules(path: str | Path) -> DecisionRules:
    rules_path = Path(path)
    try:
        raw = json.loads(rules_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"decision rules file not found: {rules_path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"decision rules file is not valid JSON: {exc.msg}", {"path": str(rules_path)}) from exc
    return parse_decision_rules(raw)


def parse_decision_rules(raw: Any) -> DecisionRules:
    try:
        return DecisionRules.model_validate(raw)
    except ValueError as exc:
        raise ConfigurationError(f"invalid decision rules: {exc}") from exc


@lru_cache
def get_decision_rules() -> DecisionRules:
    return load_decision_rules(get_settings().decision_rules_path)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return str(value)
