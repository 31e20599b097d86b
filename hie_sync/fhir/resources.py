from __future__ import annotations

from dataclasses import dataclass

from hie_sync.core.errors import MappingError, MissingSubjectReference

CLIENT_ID_TAG_SYSTEM = "http://openclientregistry.org/fhir/clientid"
RAW_SOURCE_EXTENSION_URL = "urn:neotree:question-metadata"
ENCOUNTER_EXTENSION_URL = "urn:neotree:neonatal-care-reference"

VALUE_FIELDS = ("valueInteger", "valueString", "valueBoolean", "valueDateTime", "component")


def _source_meta(source_tag: str | None) -> dict:
    if not source_tag:
        return {}
    return {"meta": {"tag": [{"system": CLIENT_ID_TAG_SYSTEM, "code": source_tag}]}}


@dataclass(frozen=True)
class CanonicalPatient:
    identifiers: tuple[tuple[str, str], ...]
    source_tag: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    gender: str | None = None
    birth_date: str | None = None
    address: str | None = None
    managing_organization_ref: str | None = None

    def to_fhir(self) -> dict:
        resource: dict = {"resourceType": "Patient", **_source_meta(self.source_tag)}
        if self.identifiers:
            resource["identifier"] = [
                {"system": system, "value": value} for system, value in self.identifiers
            ]
        name: dict = {}
        if self.family_name:
            name["family"] = self.family_name
        if self.given_name:
            name["given"] = [self.given_name]
        if name:
            resource["name"] = [name]
        if self.gender:
            resource["gender"] = self.gender
        if self.birth_date:
            resource["birthDate"] = self.birth_date
        if self.address:
            resource["address"] = [{"text": self.address}]
        if self.managing_organization_ref:
            resource["managingOrganization"] = {"reference": self.managing_organization_ref}
        return resource


@dataclass(frozen=True)
class ObservationValue:
    """Exactly one of the value[x] forms, or a component list."""

    kind: str  # one of VALUE_FIELDS
    value: object

    def __post_init__(self):
        if self.kind not in VALUE_FIELDS:
            raise MappingError(f"unsupported observation value kind: {self.kind}")

    def to_fhir(self) -> dict:
        if self.kind == "component":
            return {"component": [dict(c) for c in self.value]}
        return {self.kind: self.value}


@dataclass(frozen=True)
class CanonicalObservation:
    id: str
    subject_id: str
    code: dict
    status: str = "final"
    category: tuple = ()
    effective_time: str | None = None
    value: ObservationValue | None = None
    raw_source: str | None = None
    encounter_ref: str | None = None
    source_tag: str | None = None

    def __post_init__(self):
        # subject must be a registry-assigned id, never a source-database id
        if not self.subject_id or not str(self.subject_id).strip():
            raise MissingSubjectReference(
                f"observation {self.id} requires a resolved registry patient id"
            )

    @property
    def subject_ref(self) -> str:
        return f"Patient/{self.subject_id}"

    def to_fhir(self) -> dict:
        resource: dict = {
            "resourceType": "Observation",
            "id": self.id,
            "status": self.status,
            "code": self.code,
            "subject": {"reference": self.subject_ref},
            **_source_meta(self.source_tag),
        }
        if self.category:
            resource["category"] = list(self.category)
        if self.effective_time:
            resource["effectiveDateTime"] = self.effective_time
        if self.value is not None:
            resource.update(self.value.to_fhir())
        extensions = []
        if self.raw_source:
            extensions.append({"url": RAW_SOURCE_EXTENSION_URL, "valueString": self.raw_source})
        if self.encounter_ref:
            extensions.append(
                {"url": ENCOUNTER_EXTENSION_URL, "valueReference": {"reference": self.encounter_ref}}
            )
        if extensions:
            resource["extension"] = extensions
        return resource


def normalize_resource_id(raw) -> str | None:
    """Strip a ``Type/`` prefix and any ``/_history`` suffix from a returned id."""
    if raw is None:
        return None
    text = str(raw).strip()
    parts = [part for part in text.split("/") if part]
    if len(parts) >= 2 and parts[0][:1].isupper():
        return parts[1]
    return parts[0] if parts else None
