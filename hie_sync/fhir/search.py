"""Read-side lookups against the registries.

Patients are searched in the MPI and returned in a flattened shape with a
duplicate-risk assessment, so a caller can decide whether a new record is
safe to create. Observations are searched in the SHR and normalized to the
shape this service writes, whichever client wrote them.
"""
from __future__ import annotations

import re

from hie_sync.core.config import MPI_CHANNEL_PATH, SHR_CHANNEL_PATH
from hie_sync.core.errors import PermanentMediatorError
from hie_sync.etl.transform import CATEGORY_SYSTEM, DATA_KEY_SYSTEM, FHIR_CATEGORY_SYSTEM
from hie_sync.fhir.identifiers import IdentifierKind, is_program_id, kind_of_system, search_systems
from hie_sync.fhir.resources import (
    CLIENT_ID_TAG_SYSTEM,
    ENCOUNTER_EXTENSION_URL,
    RAW_SOURCE_EXTENSION_URL,
    normalize_resource_id,
)

LOINC_SYSTEM = "http://loinc.org"
UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)
DEFAULT_FUZZY_THRESHOLD = 0.85
IDENTIFIER_KEYS = {
    IdentifierKind.PRIMARY_HEALTH_ID: "phid",
    IdentifierKind.PROGRAM_ID: "neotreeId",
    IdentifierKind.LEGACY_ID: "patientId",
    IdentifierKind.PERSON_ID: "personId",
}

LOINC_TO_DATA_KEY = {
    "8310-5": ("Temperature", "Temperature (oC)", "Cel"),
    "8339-4": ("BirthWeight", "Birth Weight (g)", "g"),
    "29463-7": ("CurrentWeight", "Current Weight (g)", "g"),
    "8302-2": ("Length", "Length (cm)", "cm"),
    "9843-4": ("OFC", "Head Circumference (cm)", "cm"),
    "8867-4": ("HeartRate", "Heart Rate (bpm)", "/min"),
    "9279-1": ("RespRate", "Respiratory Rate (bpm)", "/min"),
    "2708-6": ("SpO2", "Oxygen Saturation (%)", "%"),
    "8480-6": ("SystolicBP", "Systolic Blood Pressure (mmHg)", "mm[Hg]"),
    "8462-4": ("DiastolicBP", "Diastolic Blood Pressure (mmHg)", "mm[Hg]"),
    "9272-6": ("Apgar1", "Apgar score at 1 minute", None),
    "9274-2": ("Apgar5", "Apgar score at 5 minute", None),
    "9271-8": ("Apgar10", "Apgar score at 10 minute", None),
    "11884-4": ("GestationalAge", "Gestational Age (weeks)", "wk"),
    "11885-1": ("GestationalAgeDays", "Gestational Age (days)", "d"),
    "2339-0": ("BloodGlucose", "Blood Glucose (mmol/L)", "mmol/L"),
    "2345-7": ("BloodGlucoseMass", "Blood Glucose (mg/dL)", "mg/dL"),
}

STANDARD_TO_QUESTION_CATEGORY = {
    "vital-signs": ("66", "Vital Signs"),
    "laboratory": ("67", "Laboratory"),
    "exam": ("68", "Examination"),
    "survey": ("69", "Survey"),
    "procedure": ("70", "Procedure"),
    "therapy": ("71", "Therapy"),
    "activity": ("72", "Activity"),
    "social-history": ("73", "Social History"),
    "imaging": ("74", "Imaging"),
}

_PRIMITIVE_VALUES = (
    ("valueInteger", "integer"),
    ("valueString", "string"),
    ("valueBoolean", "boolean"),
    ("valueDateTime", "dateTime"),
    ("valueDate", "date"),
)


# patients


def simplify_patient(resource: dict) -> dict:
    identifiers = {}
    for ident in resource.get("identifier") or []:
        key = IDENTIFIER_KEYS.get(kind_of_system(ident.get("system")))
        if key and ident.get("value") and key not in identifiers:
            identifiers[key] = ident["value"]

    name = (resource.get("name") or [{}])[0]
    given = name.get("given") or []
    org_ref = (resource.get("managingOrganization") or {}).get("reference")
    source = next(
        (t.get("code") for t in (resource.get("meta") or {}).get("tag") or [] if t.get("system") == CLIENT_ID_TAG_SYSTEM),
        None,
    )
    return {
        "id": resource.get("id") or "",
        "identifiers": identifiers,
        "name": {"given": given[0] if given else None, "family": name.get("family")},
        "gender": resource.get("gender"),
        "birthDate": resource.get("birthDate"),
        "facility": org_ref.split("/", 1)[1] if org_ref and "/" in org_ref else org_ref,
        "source": source,
    }


def name_orderings(full_name: str) -> list[tuple[str, str]]:
    """Both plausible (given, family) splits of a free-text name.

    Two words are tried in both orders. Longer names try first-word-given and
    last-word-family. Raises ``ValueError`` for a single word.
    """
    parts = full_name.split()
    if len(parts) < 2:
        raise ValueError("name must contain at least two parts")
    if len(parts) == 2:
        return [(parts[0], parts[1]), (parts[1], parts[0])]
    return [(parts[0], " ".join(parts[1:])), (" ".join(parts[:-1]), parts[-1])]


def match_confidence(search_type: str, count: int) -> str:
    if count == 0:
        return "low"
    if search_type == "identifier":
        return "high"
    if search_type == "demographics" and count == 1:
        return "high"
    return "medium"


def duplicate_risk(search_type: str, count: int) -> str:
    if count == 0:
        return "none"
    if search_type == "identifier":
        return "high"
    if search_type == "demographics":
        return "high" if count >= 3 else "medium"
    if search_type == "fuzzy":
        if count > 3:
            return "high"
        return "medium" if count >= 2 else "low"
    return "medium" if count >= 2 else "low"


def build_search_response(query: dict, patients: list[dict], search_type: str) -> dict:
    count = len(patients)
    risk = duplicate_risk(search_type, count)
    if count == 0:
        message = "No matching patients found. Safe to create new record."
    elif search_type == "identifier" and count == 1:
        message = f"Patient already exists - do not create a duplicate. Use existing ID: {patients[0]['id']}"
    elif search_type == "identifier":
        message = f"Found {count} patients with this identifier - do not create a duplicate. Review existing records."
    elif risk == "high":
        message = f"Found {count} matching patient(s). High risk of duplicate - review before creating."
    elif risk == "medium":
        message = f"Found {count} similar patient(s). Review matches before creating."
    else:
        message = None
    return {
        "query": {k: v for k, v in query.items() if v is not None},
        "found": count > 0,
        "count": count,
        "confidence": match_confidence(search_type, count),
        "duplicateRisk": risk,
        "patients": patients,
        "message": message,
    }


def _dedupe(patients: list[dict]) -> list[dict]:
    seen: set[str] = set()
    unique = []
    for patient in patients:
        if patient["id"] and patient["id"] not in seen:
            seen.add(patient["id"])
            unique.append(patient)
    return unique


def _demographic_params(given=None, family=None, birth_date=None, gender=None) -> dict:
    params = {"given": given, "family": family, "birthdate": birth_date, "gender": gender}
    return {k: v for k, v in params.items() if v}


# observations


def observation_search_params(identifier: str) -> dict:
    """SHR search parameters selecting a patient's observations by any identifier form."""
    value = identifier.strip()
    if "|" in value:
        return {"subject.identifier": value}
    if is_program_id(value):
        return {"subject.identifier": f"{IdentifierKind.PROGRAM_ID.system}|{value}"}
    if UUID_PATTERN.match(value):
        return {"subject.identifier": f"{IdentifierKind.LEGACY_ID.system}|{value}"}
    return {"subject": f"Patient/{normalize_resource_id(value)}"}


def observation_origin(observation: dict) -> str:
    codings = (observation.get("code") or {}).get("coding") or []
    extensions = observation.get("extension") or []
    if (
        str(observation.get("id") or "").startswith("neonatal-question-")
        or any(c.get("system") == DATA_KEY_SYSTEM for c in codings)
        or any(e.get("url") == RAW_SOURCE_EXTENSION_URL for e in extensions)
    ):
        return "bridge"
    if (
        any(c.get("system") == LOINC_SYSTEM for c in codings)
        or "valueQuantity" in observation
        or "encounter" in observation
        or observation.get("identifier")
        or "neotree-mobile" in str((observation.get("meta") or {}).get("source") or "")
    ):
        return "mobile"
    return "unknown"


def _observation_value(observation: dict) -> dict:
    quantity = observation.get("valueQuantity")
    if quantity is not None:
        value = quantity.get("value")
        out = {"value": round(value) if isinstance(value, (int, float)) else value, "valueType": "integer"}
        unit = quantity.get("unit") or quantity.get("code")
        if unit:
            out["unit"] = unit
        return out
    for key, value_type in _PRIMITIVE_VALUES:
        if key in observation:
            return {"value": observation[key], "valueType": value_type}
    if observation.get("component"):
        return {"value": "component", "valueType": "component", "components": observation["component"]}
    return {"value": None, "valueType": "unknown"}


def _observation_categories(observation: dict) -> list[dict]:
    categories = []
    for category in observation.get("category") or []:
        for coding in category.get("coding") or []:
            categories.append(
                {k: coding.get(k) for k in ("system", "code", "display") if coding.get(k) is not None}
            )
            if coding.get("system") == FHIR_CATEGORY_SYSTEM:
                mapped = STANDARD_TO_QUESTION_CATEGORY.get(coding.get("code"))
                if mapped:
                    categories.append({"system": CATEGORY_SYSTEM, "code": mapped[0], "display": mapped[1]})
    return categories


def _encounter_reference(observation: dict) -> str | None:
    encounter = (observation.get("encounter") or {}).get("reference")
    if encounter:
        return encounter
    for ext in observation.get("extension") or []:
        if ext.get("url") == ENCOUNTER_EXTENSION_URL:
            return (ext.get("valueReference") or {}).get("reference")
    return None


def normalize_observation(observation: dict) -> dict:
    """Flatten an SHR observation into the shape this service writes.

    Mobile observations coded in LOINC are mapped onto the equivalent data key
    where one is known; quantities are rounded to integers like ours.
    """
    origin = observation_origin(observation)
    codings = (observation.get("code") or {}).get("coding") or []
    primary = codings[0] if codings else {}
    code = primary.get("code") or ""
    display = primary.get("display") or code
    out = {"id": observation.get("id"), "source": origin, "status": observation.get("status") or "unknown"}
    for key in ("effectiveDateTime", "issued"):
        if observation.get(key):
            out[key] = observation[key]

    if origin == "mobile" and primary.get("system") == LOINC_SYSTEM:
        out["loincCode"] = code
        mapped = LOINC_TO_DATA_KEY.get(code)
        if mapped:
            code, display = mapped[0], mapped[1]
        else:
            display = primary.get("display") or (observation.get("code") or {}).get("text") or code
    out["code"] = code
    out["display"] = display

    categories = _observation_categories(observation)
    if categories:
        out["category"] = categories
    out.update(_observation_value(observation))

    subject = (observation.get("subject") or {}).get("reference")
    if subject:
        out["subject"] = subject
    encounter = _encounter_reference(observation)
    if encounter:
        out["encounter"] = encounter
    if observation.get("extension"):
        out["extensions"] = observation["extension"]
    return out


class RegistrySearch:
    """Patient lookups in the MPI and observation lookups in the SHR."""

    def __init__(self, client, mpi_channel: str = MPI_CHANNEL_PATH, shr_channel: str = SHR_CHANNEL_PATH):
        self.client = client
        self.mpi_channel = mpi_channel
        self.shr_channel = shr_channel

    async def _patients(self, params: dict) -> list[dict]:
        found = await self.client.search(self.mpi_channel, "Patient", params)
        return [simplify_patient(r) for r in found if r.get("resourceType", "Patient") == "Patient"]

    async def by_identifier(self, identifier: str) -> dict:
        value = identifier.strip()
        patients: list[dict] = []
        for kind in search_systems(value):
            patients = await self._patients({"identifier": f"{kind.system}|{value}"})
            if patients:
                break
        return build_search_response({"identifier": value}, patients, "identifier")

    async def by_demographics(self, given=None, family=None, birth_date=None, gender=None) -> dict:
        params = _demographic_params(given, family, birth_date, gender)
        if not params:
            raise ValueError("at least one of given, family, birthDate or gender is required")
        patients = await self._patients(params)
        query = {"given": given, "family": family, "birthDate": birth_date, "gender": gender}
        return build_search_response(query, patients, "demographics")

    async def fuzzy(self, given=None, family=None, birth_date=None, threshold: float = DEFAULT_FUZZY_THRESHOLD) -> dict:
        """Lenient name search; spelling variants are left to the MPI's own matching rules.

        ``threshold`` is echoed back with the query for the caller's records.
        """
        if not given and not family:
            raise ValueError("given or family is required")
        patients = await self._patients(_demographic_params(given, family, birth_date))
        query = {"given": given, "family": family, "birthDate": birth_date, "threshold": threshold}
        return build_search_response(query, patients, "fuzzy")

    async def by_name(self, name: str, birth_date=None, gender=None, search_type: str = "demographics") -> dict:
        orderings = name_orderings(name)
        patients: list[dict] = []
        for given, family in orderings:
            patients.extend(await self._patients(_demographic_params(given, family, birth_date, gender)))
        response = build_search_response(
            {"name": name, "birthDate": birth_date, "gender": gender}, _dedupe(patients), search_type
        )
        if response["message"]:
            tried = " and ".join(f'"{g} {f}"' for g, f in orderings)
            response["message"] += f" (searched {tried})"
        return response

    async def search(self, identifier=None, name=None, given=None, family=None, birth_date=None, gender=None) -> dict:
        if name and len(name.split()) >= 2:
            return await self.by_name(name, birth_date, gender, search_type="flexible")
        if identifier:
            response = await self.by_identifier(identifier)
            patients = response["patients"]
        else:
            params = _demographic_params(given, family, birth_date, gender)
            if not params:
                raise ValueError("at least one search parameter is required")
            patients = await self._patients(params)
        query = {
            "identifier": identifier, "given": given, "family": family, "birthDate": birth_date, "gender": gender,
        }
        return build_search_response(query, patients, "flexible")

    async def observations_for(self, identifier: str, category=None, code=None, last_updated=None) -> dict:
        params = observation_search_params(identifier)
        filters = {"category": category, "code": code, "_lastUpdated": last_updated}
        params.update({k: v for k, v in filters.items() if v})
        found = await self.client.search(self.shr_channel, "Observation", params)
        observations = [normalize_observation(o) for o in found if o.get("resourceType", "Observation") == "Observation"]
        return {"identifier": identifier.strip(), "total": len(observations), "observations": observations}

    async def observation(self, observation_id: str) -> dict | None:
        try:
            response = await self.client.get(f"{self.shr_channel.rstrip('/')}/Observation/{observation_id}")
        except PermanentMediatorError as exc:
            if exc.status == 404:
                return None
            raise
        return response.body
