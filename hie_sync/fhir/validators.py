from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from dateutil import parser as dateutil_parser
from fhir.resources.observation import Observation as ObservationModel
from fhir.resources.patient import Patient as PatientModel
from pydantic import ValidationError

from hie_sync.fhir.identifiers import IdentifierKind, is_program_id
from hie_sync.fhir.resources import VALUE_FIELDS

VALID_GENDERS = ("male", "female", "other", "unknown")
OBSERVATION_STATUSES = (
    "registered",
    "preliminary",
    "final",
    "amended",
    "corrected",
    "cancelled",
    "entered-in-error",
    "unknown",
)
MAX_AGE_YEARS = 120

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")
_WHITESPACE = re.compile(r"\s+")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def sanitize_string(value):
    if value is None:
        return None
    text = _WHITESPACE.sub(" ", str(value))
    return _CONTROL_CHARS.sub("", text).strip()


def _sanitize_codings(codings: list[dict] | None) -> list[dict] | None:
    if codings is None:
        return None
    return [
        {key: sanitize_string(val) if isinstance(val, str) else val for key, val in coding.items()}
        for coding in codings
    ]


def sanitize_patient(patient: dict) -> dict:
    sanitized = copy.deepcopy(patient)
    for ident in sanitized.get("identifier") or []:
        for key in ("system", "value"):
            if ident.get(key) is not None:
                ident[key] = sanitize_string(ident[key])
    for name in sanitized.get("name") or []:
        if name.get("family") is not None:
            name["family"] = sanitize_string(name["family"])
        if name.get("given"):
            name["given"] = [sanitize_string(g) for g in name["given"]]
    for address in sanitized.get("address") or []:
        if address.get("text") is not None:
            address["text"] = sanitize_string(address["text"])
    return sanitized


def sanitize_observation(observation: dict) -> dict:
    sanitized = copy.deepcopy(observation)
    code = sanitized.get("code") or {}
    if code.get("coding") is not None:
        code["coding"] = _sanitize_codings(code["coding"])
    for category in sanitized.get("category") or []:
        if category.get("coding") is not None:
            category["coding"] = _sanitize_codings(category["coding"])
    if isinstance(sanitized.get("valueString"), str):
        sanitized["valueString"] = sanitize_string(sanitized["valueString"])
    for component in sanitized.get("component") or []:
        if isinstance(component.get("valueString"), str):
            component["valueString"] = sanitize_string(component["valueString"])
        comp_code = component.get("code") or {}
        if comp_code.get("coding") is not None:
            comp_code["coding"] = _sanitize_codings(comp_code["coding"])
    return sanitized


def _is_valid_iso_date(value: str) -> bool:
    if not _ISO_DATE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _years_before(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:  # 29 February
        return today.replace(year=today.year - years, day=28)


def _reference_ok(reference: str, resource_type: str) -> bool:
    prefix = f"{resource_type}/"
    return reference.startswith(prefix) and len(reference.strip()) > len(prefix)


def _structural_errors(model, resource: dict) -> list[str]:
    try:
        model.model_validate(resource)
    except ValidationError as exc:
        return [f"FHIR structure: {err['loc']}: {err['msg']}" for err in exc.errors()]
    return []


def validate_patient(patient: dict, today: date | None = None) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []
    today = today or datetime.now(timezone.utc).date()

    if patient.get("resourceType") != "Patient":
        errors.append("Resource type must be 'Patient'")

    identifiers = patient.get("identifier") or []
    if not identifiers:
        errors.append("Patient must have at least one identifier")
    for index, ident in enumerate(identifiers, start=1):
        if not ident.get("system"):
            errors.append(f"Identifier {index}: system is required")
        if not str(ident.get("value") or "").strip():
            errors.append(f"Identifier {index}: value is required")
        if ident.get("system") == IdentifierKind.PROGRAM_ID.system and ident.get("value"):
            if not is_program_id(str(ident["value"])):
                errors.append(
                    f"Invalid program identifier format: {ident['value']}. "
                    "Expected PP-DD-SS-YYYY-P-XXXXX (e.g. 00-0A-34-2025-N-01031)"
                )

    names = patient.get("name") or []
    if not names:
        warnings.append("Patient should have at least one name")

    birth_date = patient.get("birthDate")
    if birth_date:
        if not _is_valid_iso_date(str(birth_date)):
            errors.append(f"Invalid birthDate format: {birth_date}. Expected YYYY-MM-DD")
        else:
            parsed = date.fromisoformat(birth_date)
            if parsed > today:
                errors.append("Birth date cannot be in the future")
            elif parsed < _years_before(today, MAX_AGE_YEARS):
                warnings.append(f"Birth date is more than {MAX_AGE_YEARS} years ago")

    gender = patient.get("gender")
    if gender is not None and gender not in VALID_GENDERS:
        errors.append(f"Invalid gender: {gender}. Must be one of: {', '.join(VALID_GENDERS)}")

    org_ref = (patient.get("managingOrganization") or {}).get("reference")
    if org_ref is not None and not _reference_ok(str(org_ref), "Organization"):
        errors.append(
            f"Invalid managingOrganization reference format: {org_ref}. Expected 'Organization/{{id}}'"
        )

    if not errors:
        errors.extend(_structural_errors(PatientModel, patient))
    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def validate_observation(observation: dict) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []

    if observation.get("resourceType") != "Observation":
        errors.append("Resource type must be 'Observation'")

    status = observation.get("status")
    if not status:
        errors.append("Observation status is required")
    elif status not in OBSERVATION_STATUSES:
        errors.append(f"Invalid observation status: {status}")

    codings = (observation.get("code") or {}).get("coding") or []
    if not codings:
        errors.append("Observation code is required")
    for index, coding in enumerate(codings, start=1):
        if not coding.get("code"):
            errors.append(f"Code coding {index}: code is required")

    subject_ref = (observation.get("subject") or {}).get("reference")
    if not subject_ref:
        errors.append("Observation subject reference is required")
    elif not _reference_ok(str(subject_ref), "Patient"):
        errors.append("Subject reference must be in format 'Patient/{id}'")

    present = [
        name
        for name in VALUE_FIELDS
        if observation.get(name) is not None and observation.get(name) != []
    ]
    if not present:
        errors.append("Observation must have exactly one value (" + ", ".join(VALUE_FIELDS) + ")")
    elif len(present) > 1:
        errors.append(f"Observation has more than one value: {', '.join(present)}")

    effective = observation.get("effectiveDateTime")
    if effective:
        try:
            dateutil_parser.isoparse(str(effective))
        except (ValueError, OverflowError):
            errors.append(f"Invalid effectiveDateTime format: {effective}")
    else:
        warnings.append("Observation should have effectiveDateTime")

    if not observation.get("category"):
        warnings.append("Observation should have a category")

    if not errors:
        errors.extend(_structural_errors(ObservationModel, observation))
    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
