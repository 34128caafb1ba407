from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from fhir_adapter.services.rules import DecisionRules, FieldRule, NullHandling

CRITICAL_WEIGHT = 7


@dataclass(slots=True)
class MissingDataReport:
    uid: str | None
    missing_fields: list[str] = field(default_factory=list)
    critical_fields_missing: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def can_proceed(self) -> bool:
        return not self.critical_fields_missing


def is_critical_field(rule: FieldRule) -> bool:
    return rule.weight >= CRITICAL_WEIGHT or rule.null_handling_one_missing is NullHandling.CONSERVATIVE


def analyze_missing_data(patient: dict[str, Any], uid: str | None, rules: DecisionRules) -> MissingDataReport:
    report = MissingDataReport(uid=uid)
    for name, rule in rules.unique_fields().items():
        if rule.extract(patient) is not None:
            continue
        report.missing_fields.append(name)
        if is_critical_field(rule):
            report.critical_fields_missing.append(name)
        report.warnings.append(f"{name} (weight: {rule.weight:g}, handling: {rule.null_handling_one_missing.value})")
    return report


def merge_patient_data(new_patient: dict[str, Any], existing_patient: dict[str, Any]) -> dict[str, Any]:
    """Fill gaps in ``new_patient`` from a matched registry patient.

    Values already present on the new patient always win.
    """
    merged = copy.deepcopy(new_patient)

    if not merged.get("identifier") and existing_patient.get("identifier"):
        merged["identifier"] = copy.deepcopy(existing_patient["identifier"])

    for key in ("birthDate", "gender"):
        if not merged.get(key) and existing_patient.get(key):
            merged[key] = existing_patient[key]

    names = merged.get("name")
    has_family = bool(names) and isinstance(names[0], dict) and bool(names[0].get("family"))
    if not has_family and existing_patient.get("name"):
        merged["name"] = copy.deepcopy(existing_patient["name"])

    return merged
