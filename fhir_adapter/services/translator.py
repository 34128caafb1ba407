from __future__ import annotations

from datetime import datetime
from typing import Any

from fhir_adapter.core.errors import TransformationError, ValidationError
from fhir_adapter.services.rules import IMPILO_UID_SYSTEM, NEOTREE_ID_SYSTEM

CLIENT_REGISTRY_TAG_SYSTEM = "http://openclientregistry.org/fhir/clientid"
GENDER_CODES = {"M": "male", "F": "female", "U": "unknown", "O": "other"}


def to_entry(payload: Any, natural_key_ref: str | None = None) -> dict[str, Any]:
    """Unwrap a stored session document into a Neotree entry."""
    if not isinstance(payload, dict):
        raise ValidationError("invalid session data")

    inner = payload.get("data", payload)
    if not isinstance(inner, dict):
        raise ValidationError("invalid session payload")

    entry = dict(inner)
    if natural_key_ref:
        entry["impilo_uid"] = natural_key_ref
    return entry


def field_value(entries: Any, name: str) -> Any:
    item = entries.get(name) if isinstance(entries, dict) else None
    if not isinstance(item, dict):
        return None
    values = item.get("values")
    if not isinstance(values, dict):
        return None
    raw = values.get("value")
    if not isinstance(raw, list) or not raw:
        return None
    return raw[0]


def translate_entry(entry: dict[str, Any], *, facility_id: str) -> dict[str, Any]:
    uid = _text(entry.get("uid"))
    if not uid:
        raise ValidationError("entry is missing uid")
    if not entry.get("script"):
        raise ValidationError(f"missing script data for entry {uid}", {"uid": uid})

    entries = entry.get("entries")
    if entries is not None and not isinstance(entries, dict):
        raise TransformationError("entry fields must be an object", {"uid": uid})

    identifiers = [{"system": NEOTREE_ID_SYSTEM, "value": uid}]
    impilo_uid = _text(entry.get("impilo_uid"))
    if impilo_uid:
        identifiers.append({"system": IMPILO_UID_SYSTEM, "value": impilo_uid})

    patient: dict[str, Any] = {
        "resourceType": "Patient",
        "meta": {"tag": [{"system": CLIENT_REGISTRY_TAG_SYSTEM, "code": facility_id}]},
        "identifier": identifiers,
        "name": _build_names(uid, entries),
        "gender": map_gender(_text(field_value(entries, "Gender"))) or "unknown",
        "managingOrganization": {"reference": f"Organization/{facility_id}"},
    }
    birth_date = extract_date(_text(field_value(entries, "DOBTOB")))
    if birth_date:
        patient["birthDate"] = birth_date
    return patient


def map_gender(code: str | None) -> str | None:
    if not code:
        return None
    return GENDER_CODES.get(code.upper(), "unknown")


def extract_date(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return None


def _build_names(uid: str, entries: Any) -> list[dict[str, Any]]:
    first = _text(field_value(entries, "BabyFirst"))
    last = _text(field_value(entries, "BabyLast"))
    if first or last:
        name: dict[str, Any] = {"use": "official"}
        if last:
            name["family"] = last
        if first:
            name["given"] = [first]
        return [name]

    mother_first = _text(field_value(entries, "MotherFirstName"))
    if mother_first:
        return [{"use": "temp", "family": mother_first}]
    return [{"use": "temp", "family": uid}]


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
