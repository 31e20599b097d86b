import pytest

from hie_sync.core.errors import MissingSubjectReference
from hie_sync.etl.transform import (
    extract_value,
    normalize_gender,
    observation_row_to_resource,
    parent_search_identifier,
    patient_row_to_resource,
)
from hie_sync.fhir.identifiers import (
    IdentifierKind,
    KNOWN_KINDS,
    best_identifier,
    classify,
    is_program_id,
    search_systems,
)


def _question_row(**overrides):
    row = {
        "id": 42,
        "category": "Vital signs",
        "category_id": "vitals",
        "type": "number",
        "data_key": "Weight",
        "display_key": "Birth weight",
        "display_value": "1200",
        "neonatal_care_id": 7,
        "patient_id": "P1",
        "data": '{"values": [{"value": 1199.5}]}',
        "date_time_admission": "2025-01-10 08:00:00",
        "impilo_neotree_id": "00-0A-34-2025-N-01031",
        "person_id": "X1",
        "phid": None,
    }
    row.update(overrides)
    return row


def test_patient_row_identifiers_follow_authority_order():
    row = {
        "patient_id": "P1",
        "person_id": "X1",
        "phid": "AB12CD34",
        "impilo_neotree_id": "00-0A-34-2025-N-01031",
        "firstname": " Baby ",
        "lastname": "Doe",
        "sex": "M",
        "birthdate": "2025-01-10",
        "facility_id": "FAC1",
    }
    patient = patient_row_to_resource(row, source_tag="neotree").to_fhir()

    assert [i["system"] for i in patient["identifier"]] == [k.system for k in KNOWN_KINDS]
    assert patient["name"] == [{"family": "Doe", "given": ["Baby"]}]
    assert patient["gender"] == "male"
    assert patient["birthDate"] == "2025-01-10"
    assert patient["managingOrganization"] == {"reference": "Organization/FAC1"}
    assert patient["meta"]["tag"][0]["code"] == "neotree"


def test_patient_row_skips_empty_identifiers():
    patient = patient_row_to_resource({"patient_id": "P1", "phid": "  ", "sex": None}).to_fhir()
    assert patient["identifier"] == [{"system": IdentifierKind.LEGACY_ID.system, "value": "P1"}]
    assert patient["gender"] == "unknown"


@pytest.mark.parametrize(
    "raw, expected",
    [("M", "male"), ("female", "female"), ("F", "female"), ("Other", "other"), ("", "unknown"), (None, "unknown"), ("x", "unknown")],
)
def test_gender_normalization(raw, expected):
    assert normalize_gender(raw) == expected


def test_observation_is_keyed_by_source_row_and_references_registry_patient():
    observation = observation_row_to_resource(_question_row(), "shr-9", source_tag="neotree").to_fhir()

    assert observation["id"] == "neonatal-question-42"
    assert observation["subject"] == {"reference": "Patient/shr-9"}
    assert observation["valueInteger"] == 1200
    assert observation["effectiveDateTime"] == "2025-01-10T08:00:00Z"
    assert observation["code"]["coding"][0] == {
        "system": "urn:neotree:data-key",
        "code": "Weight",
        "display": "Birth weight",
    }
    codes = [c["code"] for c in observation["category"][0]["coding"]]
    assert codes == ["vital-signs", "vitals"]
    urls = [e["url"] for e in observation["extension"]]
    assert urls == ["urn:neotree:question-metadata", "urn:neotree:neonatal-care-reference"]
    assert "issued" not in observation


def test_observation_mapping_is_deterministic():
    row = _question_row()
    assert observation_row_to_resource(row, "shr-9").to_fhir() == observation_row_to_resource(row, "shr-9").to_fhir()


@pytest.mark.parametrize("patient_id", [None, "", "   "])
def test_observation_without_registry_patient_fails(patient_id):
    with pytest.raises(MissingSubjectReference):
        observation_row_to_resource(_question_row(), patient_id)


def test_value_extraction_by_type():
    assert extract_value({"values": [{"value": "2.5"}]}, "number").value == 3
    assert extract_value({"values": [{"value": "abc", "valueText": "abc"}]}, "number").kind == "valueString"
    assert extract_value({"values": [{"value": "true"}]}, "boolean").value is True
    assert extract_value({"values": [{"value": "2025-01-10 08:00:00"}]}, "datetime").value == "2025-01-10T08:00:00Z"
    assert extract_value({}, "string", display_value="Seen").value == "Seen"
    assert extract_value({}, "string") is None

    multi = extract_value(
        {"values": [{"value": "A", "valueText": "Apnoea"}, {"value": None}, {"value": "J", "valueText": "Jaundice"}]},
        "dropdown",
    )
    assert multi.kind == "component"
    assert [c["valueString"] for c in multi.value] == ["Apnoea", "Jaundice"]


def test_program_id_year_bounds():
    assert is_program_id("00-0A-34-1900-N-01031")
    assert is_program_id("00-0A-34-2100-N-01031")
    assert not is_program_id("00-0A-34-1899-N-01031")
    assert not is_program_id("00-0A-34-2101-N-01031")


def test_identifier_classification_and_search_order():
    assert classify("AB12CD34") is IdentifierKind.PRIMARY_HEALTH_ID
    assert classify("00-0A-34-2025-N-01031") is IdentifierKind.PROGRAM_ID
    assert classify("P-77") is IdentifierKind.OPAQUE
    assert search_systems("AB12CD34") == [IdentifierKind.PRIMARY_HEALTH_ID]
    assert search_systems("P-77") == list(KNOWN_KINDS)


def test_best_identifier_ignores_listing_order():
    resource = {
        "identifier": [
            {"system": IdentifierKind.PERSON_ID.system, "value": "X1"},
            {"system": "urn:other", "value": "zzz"},
            {"system": IdentifierKind.PROGRAM_ID.system, "value": "00-0A-34-2025-N-01031"},
        ]
    }
    assert best_identifier(resource) == (IdentifierKind.PROGRAM_ID, "00-0A-34-2025-N-01031")
    assert best_identifier({"identifier": []}) is None


def test_parent_search_identifier_prefers_stronger_ids():
    assert parent_search_identifier(_question_row(phid="AB12CD34")) == "AB12CD34"
    assert parent_search_identifier(_question_row()) == "00-0A-34-2025-N-01031"
    assert parent_search_identifier(_question_row(impilo_neotree_id=None)) == "X1"
    assert parent_search_identifier(_question_row(impilo_neotree_id=None, person_id=None)) == "P1"
