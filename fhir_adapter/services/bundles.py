from __future__ import annotations

from typing import Any
from uuid import uuid4


def create_transaction_bundle(patient: dict[str, Any]) -> dict[str, Any]:
    patient_id = patient.get("id")
    if patient_id:
        entry = {
            "fullUrl": f"Patient/{patient_id}",
            "resource": patient,
            "request": {"method": "PUT", "url": f"Patient/{patient_id}"},
        }
    else:
        entry = {
            "fullUrl": f"urn:uuid:{uuid4()}",
            "resource": patient,
            "request": {"method": "POST", "url": "Patient"},
        }
    return {"resourceType": "Bundle", "type": "transaction", "entry": [entry]}


def failed_entries(response: dict[str, Any]) -> list[dict[str, Any]]:
    if response.get("type") != "transaction-response":
        return []
    return [
        entry
        for entry in response.get("entry") or []
        if not str(((entry or {}).get("response") or {}).get("status", "")).startswith("2")
    ]
