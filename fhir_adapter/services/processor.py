from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

from fhir_adapter.core.config import get_settings
from fhir_adapter.core.errors import AdapterError, ValidationError, describe_error
from fhir_adapter.services.bundles import create_transaction_bundle
from fhir_adapter.services.matching import DuplicateDetector, MatchLevel
from fhir_adapter.services.missing_data import analyze_missing_data, merge_patient_data
from fhir_adapter.services.registry_client import get_registry_client
from fhir_adapter.services.rules import DecisionRules, get_decision_rules
from fhir_adapter.services.translator import translate_entry

logger = logging.getLogger(__name__)


class PatientRegistry(Protocol):
    async def search_patients(self, params: dict[str, str]) -> dict[str, Any]: ...

    async def send_bundle(self, bundle: dict[str, Any]) -> dict[str, Any]: ...


@dataclass(slots=True)
class ProcessOutcome:
    uid: str
    action: str
    match_level: MatchLevel
    matched_id: str | None
    match_score: float | None
    response: dict[str, Any]


class EntryProcessor:
    """Translate, resolve against the registry, and submit one Neotree entry.

    Safe to call repeatedly for the same entry: a previously submitted patient
    comes back from the candidate search and resolves as an auto-match update.
    """

    def __init__(self, registry: PatientRegistry, rules: DecisionRules, *, facility_id: str) -> None:
        self.registry = registry
        self.rules = rules
        self.detector = DuplicateDetector(rules)
        self.facility_id = facility_id

    async def __call__(self, entry: dict[str, Any]) -> ProcessOutcome:
        return await self.process(entry)

    async def process(self, entry: dict[str, Any]) -> ProcessOutcome:
        uid = str(entry.get("uid") or "")
        patient = translate_entry(entry, facility_id=self.facility_id)

        report = analyze_missing_data(patient, uid, self.rules)
        if not report.can_proceed:
            raise ValidationError(
                f"critical fields missing: [{', '.join(report.critical_fields_missing)}]",
                {"uid": uid, "missing_fields": report.missing_fields},
            )

        final_patient = patient
        match_level = MatchLevel.NO_MATCH
        matched_id: str | None = None
        match_score: float | None = None

        params = search_params(patient)
        if params:
            try:
                results = await self.registry.search_patients(params)
            except AdapterError as exc:
                logger.warning("candidate search failed uid=%s error=%s; treating as new", uid, describe_error(exc))
                results = None

            matches = self.detector.find_potential_duplicates(patient, results) if results else []
            if matches:
                best = matches[0]
                match_level = best.score.match_level
                match_score = best.score.total_score
                existing_id = best.patient.get("id")
                if match_level is MatchLevel.AUTO_MATCH:
                    final_patient = merge_patient_data(patient, best.patient)
                    if existing_id:
                        final_patient["id"] = existing_id
                    matched_id = existing_id
                    logger.info(
                        "auto-match uid=%s existing_id=%s score=%s", uid, existing_id, best.score.total_score
                    )
                elif match_level is MatchLevel.POTENTIAL_MATCH:
                    matched_id = existing_id
                    logger.warning(
                        "potential duplicate uid=%s existing_id=%s score=%s; creating new patient for review",
                        uid,
                        existing_id,
                        best.score.total_score,
                    )

        response = await self.registry.send_bundle(create_transaction_bundle(final_patient))
        action = "updated" if final_patient.get("id") else "created"
        logger.info("processed entry uid=%s action=%s", uid, action)
        return ProcessOutcome(
            uid=uid,
            action=action,
            match_level=match_level,
            matched_id=matched_id,
            match_score=match_score,
            response=response,
        )


def search_params(patient: dict[str, Any]) -> dict[str, str]:
    params: dict[str, str] = {}
    identifiers = patient.get("identifier") or []
    if identifiers and isinstance(identifiers[0], dict) and identifiers[0].get("value"):
        first = identifiers[0]
        params["identifier"] = f"{first.get('system')}|{first['value']}"
    if patient.get("birthDate"):
        params["birthdate"] = str(patient["birthDate"])
    return params


@lru_cache
def get_processor() -> EntryProcessor:
    return EntryProcessor(get_registry_client(), get_decision_rules(), facility_id=get_settings().facility_id)
