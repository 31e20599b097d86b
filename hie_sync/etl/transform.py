from __future__ import annotations

import json
import math
import re
from datetime import date, datetime, timezone

from dateutil import parser as dateutil_parser

from hie_sync.fhir.identifiers import IdentifierKind
from hie_sync.fhir.resources import CanonicalObservation, CanonicalPatient, ObservationValue

OBSERVATION_ID_PREFIX = "neonatal-question-"
DATA_KEY_SYSTEM = "urn:neotree:data-key"
CATEGORY_SYSTEM = "urn:neotree:question-category"
FHIR_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"

_MYSQL_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")

STANDARD_CATEGORIES = {
    "vital signs": ("vital-signs", "Vital Signs"),
    "vitals": ("vital-signs", "Vital Signs"),
    "laboratory": ("laboratory", "Laboratory"),
    "lab": ("laboratory", "Laboratory"),
    "exam": ("exam", "Exam"),
    "examination": ("exam", "Exam"),
    "procedure": ("procedure", "Procedure"),
    "survey": ("survey", "Survey"),
    "therapy": ("therapy", "Therapy"),
    "activity": ("activity", "Activity"),
    "social-history": ("social-history", "Social History"),
    "imaging": ("imaging", "Imaging"),
}


def _clean(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_gender(value) -> str:
    text = (_clean(value) or "").lower()
    if text in ("m", "male"):
        return "male"
    if text in ("f", "female"):
        return "female"
    if text == "other":
        return "other"
    return "unknown"


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_datetime(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _to_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = _clean(value)
    if not text:
        return None
    try:
        if _MYSQL_DATETIME.match(text):
            # source timestamps are formatted in UTC without an offset
            return datetime.strptime(text, "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)
        return _to_utc(dateutil_parser.parse(text))
    except (ValueError, OverflowError):
        return None


def normalize_birth_date(value) -> str | None:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    parsed = _parse_datetime(value)
    return parsed.strftime("%Y-%m-%d") if parsed else None


def format_datetime(value) -> str | None:
    parsed = _parse_datetime(value)
    return parsed.strftime("%Y-%m-%dT%H:%M:%SZ") if parsed else None


def patient_identifiers(row: dict) -> tuple[tuple[str, str], ...]:
    candidates = (
        (IdentifierKind.PRIMARY_HEALTH_ID, row.get("phid")),
        (IdentifierKind.PROGRAM_ID, row.get("impilo_neotree_id") or row.get("neotree_id")),
        (IdentifierKind.LEGACY_ID, row.get("patient_id")),
        (IdentifierKind.PERSON_ID, row.get("person_id")),
    )
    return tuple(
        (kind.system, _clean(value)) for kind, value in candidates if _clean(value)
    )


def patient_row_to_resource(row: dict, source_tag: str | None = None) -> CanonicalPatient:
    facility_id = _clean(row.get("facility_id"))
    return CanonicalPatient(
        identifiers=patient_identifiers(row),
        source_tag=source_tag,
        given_name=_clean(row.get("firstname")),
        family_name=_clean(row.get("lastname")),
        gender=normalize_gender(row.get("sex")),
        birth_date=normalize_birth_date(row.get("birthdate")),
        address=_clean(row.get("address")),
        managing_organization_ref=f"Organization/{facility_id}" if facility_id else None,
    )


def observation_resource_id(source_id) -> str:
    return f"{OBSERVATION_ID_PREFIX}{source_id}"


def _load_data(raw) -> dict:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def _round_half_up(number: float) -> int:
    return math.floor(number + 0.5)


def extract_value(data: dict, value_type: str | None, display_value=None) -> ObservationValue | None:
    values = [v for v in (data.get("values") or []) if isinstance(v, dict)]
    if not values:
        text = _clean(display_value)
        return ObservationValue("valueString", text) if text else None

    first = values[0]
    raw = first.get("value")
    text = _clean(first.get("valueText")) or _clean(raw)
    kind = (value_type or "").lower()

    if kind == "number":
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            number = float(raw)
        else:
            try:
                number = float(str(raw))
            except (TypeError, ValueError):
                number = math.nan
        if math.isfinite(number):
            return ObservationValue("valueInteger", _round_half_up(number))
        return ObservationValue("valueString", text) if text else None

    if kind == "boolean":
        flag = raw if isinstance(raw, bool) else str(raw).strip().lower() == "true"
        return ObservationValue("valueBoolean", flag)

    if kind in ("date", "datetime"):
        formatted = format_datetime(raw)
        if formatted:
            return ObservationValue("valueDateTime", formatted)
        return ObservationValue("valueString", text) if text else None

    if len(values) > 1:
        components = []
        for v in values:
            code = _clean(v.get("value"))
            label = _clean(v.get("valueText")) or _clean(v.get("label"))
            if not (code or label):
                continue
            coding = {"code": code} if code else {}
            if label:
                coding["display"] = label
            components.append({"code": {"coding": [coding]}, "valueString": label or code})
        return ObservationValue("component", tuple(components)) if components else None

    return ObservationValue("valueString", text) if text else None


def build_category(category_display, category_id) -> tuple:
    if category_id is None or _clean(category_id) is None:
        return ()
    display = _clean(category_display)
    codings = []
    standard = _standard_category(display)
    if standard:
        codings.append({"system": FHIR_CATEGORY_SYSTEM, "code": standard[0], "display": standard[1]})
    custom = {"system": CATEGORY_SYSTEM, "code": str(category_id).strip()}
    if display:
        custom["display"] = display
    codings.append(custom)
    return ({"coding": codings},)


def _standard_category(display: str | None) -> tuple[str, str] | None:
    if not display:
        return None
    normalized = display.lower()
    if normalized in STANDARD_CATEGORIES:
        return STANDARD_CATEGORIES[normalized]
    for key, value in STANDARD_CATEGORIES.items():
        if key in normalized or normalized in key:
            return value
    return None


def observation_row_to_resource(
    row: dict,
    patient_resource_id: str | None,
    source_tag: str | None = None,
) -> CanonicalObservation:
    """Map a source question row onto an observation about a registry patient.

    ``patient_resource_id`` must come from the registry; construction fails
    when it is missing.
    """
    data_key = _clean(row.get("data_key"))
    coding = {"system": DATA_KEY_SYSTEM}
    if data_key:
        coding["code"] = data_key
        coding["display"] = _clean(row.get("display_key")) or data_key

    raw_source = row.get("data")
    if isinstance(raw_source, dict):
        raw_source = json.dumps(raw_source)
    encounter_id = _clean(row.get("neonatal_care_id"))

    return CanonicalObservation(
        id=observation_resource_id(row["id"]),
        subject_id=patient_resource_id,
        code={"coding": [coding]},
        status="final",
        category=build_category(row.get("category"), row.get("category_id")),
        effective_time=format_datetime(row.get("date_time_admission")),
        value=extract_value(_load_data(row.get("data")), row.get("type"), row.get("display_value")),
        raw_source=_clean(raw_source),
        encounter_ref=f"Encounter/{encounter_id}" if encounter_id else None,
        source_tag=source_tag,
    )


def parent_search_identifier(row: dict) -> str | None:
    """Best identifier for finding a question row's patient in the MPI."""
    for key in ("phid", "impilo_neotree_id", "person_id", "patient_id"):
        value = _clean(row.get(key))
        if value:
            return value
    return None
