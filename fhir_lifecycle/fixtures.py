"""Patient and Condition lifecycle fixtures.

Each function returns the ordered steps for one resource's lifecycle:
create, read, update, patch, search, validate, (version read), delete, and a
final read that must no longer succeed. Steps after create require the
created id.
"""
from pathlib import Path
from typing import List, Optional, Union

from fhir_lifecycle.client import SystemClient, resource_id_from
from fhir_lifecycle.payloads import (
    build_condition,
    build_patient,
    build_patient_with_condition_bundle,
    build_transaction_bundle,
)
from fhir_lifecycle.runner import FixtureStep
from fhir_lifecycle.schemas import FixtureState, OperationResult

PATIENT_NAME = "Mohanad Al Badri"
PATIENT_GENDER = "male"
PATIENT_BIRTH_DATE = "1992-01-01"

PATIENT_REFERENCE = "Patient/mohanad-albadri"
DIAGNOSIS_CODE = "44054006"
DIAGNOSIS_DISPLAY = "Diabetes mellitus type 2"
DIAGNOSIS_TEXT = "Type 2 Diabetes Mellitus"

CREATED = frozenset({201})
OK = frozenset({200})
OK_OR_CREATED = frozenset({200, 201})
DELETED = frozenset({200, 204})
GONE = frozenset({404, 410})

PathLike = Union[str, Path]


def capture_id(resource_type: str):
    """Extractor storing the created resource's id in FixtureState.resource_id."""
    def extract(result: OperationResult, state: FixtureState) -> None:
        state.resource_id = resource_id_from(result, resource_type)
    return extract


def capture_version(result: OperationResult, state: FixtureState) -> None:
    version = result.lookup("meta.versionId")
    if version is not None:
        state.version_tag = str(version)


def expect_field(path: str, expected, contains: bool = False):
    """Verifier comparing one body field (dotted path) against `expected`."""
    def verify(result: OperationResult, state: FixtureState) -> None:
        actual = result.lookup(path)
        if contains:
            if actual is None or expected not in str(actual):
                raise AssertionError(f"Expected '{path}' to contain {expected!r}, got {actual!r}")
        elif actual != expected:
            raise AssertionError(f"Expected '{path}' == {expected!r}, got {actual!r}")
    return verify


def entry_types(result: OperationResult) -> List[str]:
    """resourceType of each entry in a search Bundle; malformed entries are left out."""
    entries = result.lookup("entry", default=[])
    if not isinstance(entries, list):
        return []
    resources = [entry.get("resource") for entry in entries if isinstance(entry, dict)]
    return [resource.get("resourceType") for resource in resources if isinstance(resource, dict)]


def expect_entry_of_type(resource_type: str):
    """Verifier requiring a search Bundle with at least one entry of `resource_type`."""
    def verify(result: OperationResult, state: FixtureState) -> None:
        types = entry_types(result)
        if resource_type not in types:
            raise AssertionError(f"Expected a {resource_type} entry in the search Bundle, got {types}")
    return verify


def expect_same_version(result: OperationResult, state: FixtureState) -> None:
    actual = result.lookup("meta.versionId")
    if str(actual) != state.version_tag:
        raise AssertionError(f"Expected meta.versionId {state.version_tag!r}, got {actual!r}")


def patient_lifecycle(
    name: str = PATIENT_NAME,
    gender: str = PATIENT_GENDER,
    birth_date: str = PATIENT_BIRTH_DATE,
    system: Optional[SystemClient] = None,
    document_path: Optional[PathLike] = None,
) -> List[FixtureStep]:
    """
    Steps for the Patient lifecycle.

    Args:
        name, gender, birth_date: fields of the Patient under test.
        system: when given, transaction bundle steps are included.
        document_path: when given, a JSON document (usually a Bundle) is posted
            to the server base before the delete step.
    """
    updated_name = f"{name} Updated"
    patched_name = f"{name} Patched"
    search_term = name.split()[0]

    steps = [
        FixtureStep(
            name="Create Patient",
            action=lambda client, state: client.create(build_patient(name, gender, birth_date)),
            expected_status=CREATED,
            extract=capture_id("Patient"),
        ),
        FixtureStep(
            name="Read Patient",
            action=lambda client, state: client.read(state.resource_id),
            expected_status=OK,
            requires=("resource_id",),
            verify=expect_field("name[0].text", search_term, contains=True),
            extract=capture_version,
        ),
        FixtureStep(
            name="Update Patient",
            action=lambda client, state: client.replace(
                state.resource_id, build_patient(updated_name, gender, birth_date)
            ),
            expected_status=OK,
            requires=("resource_id",),
            verify=expect_field("name[0].text", updated_name),
        ),
        FixtureStep(
            name="Patch Patient name",
            action=lambda client, state: client.patch(state.resource_id, "/name/0/text", patched_name),
            expected_status=OK,
            requires=("resource_id",),
            verify=expect_field("name[0].text", patched_name),
        ),
        FixtureStep(
            name="Search Patient by name",
            action=lambda client, state: client.search_by_reference("name", search_term),
            expected_status=OK,
            requires=("resource_id",),
            verify=expect_entry_of_type("Patient"),
        ),
        FixtureStep(
            name="Validate Patient",
            action=lambda client, state: client.validate(build_patient(name, gender, birth_date)),
            expected_status=OK,
        ),
        FixtureStep(
            name="Read Patient version",
            action=lambda client, state: client.read_version(state.resource_id, state.version_tag),
            expected_status=OK,
            requires=("resource_id", "version_tag"),
            verify=expect_same_version,
        ),
    ]

    if system is not None:
        steps.extend([
            FixtureStep(
                name="Send transaction Bundle",
                action=lambda client, state: system.transaction(build_transaction_bundle([
                    ("POST", "Patient", build_patient(name, gender, birth_date)),
                ])),
                expected_status=OK,
            ),
            FixtureStep(
                name="Create Patient with Condition Bundle",
                action=lambda client, state: system.transaction(build_patient_with_condition_bundle(
                    PATIENT_REFERENCE.split("/", 1)[1], gender, "1992-05-15", DIAGNOSIS_TEXT,
                )),
                expected_status=OK,
            ),
        ])
        if document_path is not None:
            steps.append(FixtureStep(
                name="Post document to server",
                action=lambda client, state: system.post_document(document_path),
                expected_status=OK_OR_CREATED,
            ))

    steps.extend([
        FixtureStep(
            name="Delete Patient",
            action=lambda client, state: client.delete(state.resource_id),
            expected_status=DELETED,
            requires=("resource_id",),
        ),
        FixtureStep(
            name="Read deleted Patient",
            action=lambda client, state: client.read(state.resource_id),
            expected_status=GONE,
            requires=("resource_id",),
        ),
    ])
    return steps


def condition_lifecycle(
    patient_reference: str = PATIENT_REFERENCE,
    code: str = DIAGNOSIS_CODE,
    display: str = DIAGNOSIS_DISPLAY,
    text: str = DIAGNOSIS_TEXT,
    document_path: Optional[PathLike] = None,
) -> List[FixtureStep]:
    """
    Steps for the Condition lifecycle.

    Args:
        patient_reference: subject of the Condition, e.g. 'Patient/mohanad-albadri'.
        code, display, text: SNOMED CT coding and free text of the diagnosis.
        document_path: when given, a Condition JSON document is posted to the
            collection before the delete step.
    """
    updated_text = "Updated Type 2 Diabetes"
    patched_text = "Patched Diagnosis Text"

    steps = [
        FixtureStep(
            name="Create Condition",
            action=lambda client, state: client.create(build_condition(patient_reference, code, display, text)),
            expected_status=CREATED,
            extract=capture_id("Condition"),
        ),
        FixtureStep(
            name="Read Condition",
            action=lambda client, state: client.read(state.resource_id),
            expected_status=OK,
            requires=("resource_id",),
            verify=_all(expect_field("resourceType", "Condition"), expect_field("code.text", text)),
            extract=capture_version,
        ),
        FixtureStep(
            name="Update Condition",
            action=lambda client, state: client.replace(
                state.resource_id, build_condition(patient_reference, code, display, updated_text)
            ),
            expected_status=OK,
            requires=("resource_id",),
            verify=expect_field("code.text", updated_text),
        ),
        FixtureStep(
            name="Patch Condition text",
            action=lambda client, state: client.patch(state.resource_id, "/code/text", patched_text),
            expected_status=OK,
            requires=("resource_id",),
            verify=expect_field("code.text", patched_text),
        ),
        FixtureStep(
            name="Search Conditions by patient",
            action=lambda client, state: client.search_by_reference("subject", patient_reference),
            expected_status=OK,
            requires=("resource_id",),
            verify=expect_entry_of_type("Condition"),
        ),
        FixtureStep(
            name="Validate Condition",
            action=lambda client, state: client.validate({
                "resourceType": "Condition",
                "subject": {"reference": patient_reference},
                "code": {"text": text},
            }),
            expected_status=OK,
        ),
    ]

    if document_path is not None:
        steps.append(FixtureStep(
            name="Create Condition from document",
            action=lambda client, state: client.create_from_external_document(document_path),
            expected_status=CREATED,
        ))

    steps.extend([
        FixtureStep(
            name="Delete Condition",
            action=lambda client, state: client.delete(state.resource_id),
            expected_status=DELETED,
            requires=("resource_id",),
        ),
        FixtureStep(
            name="Read deleted Condition",
            action=lambda client, state: client.read(state.resource_id),
            expected_status=GONE,
            requires=("resource_id",),
        ),
    ])
    return steps


def _all(*verifiers):
    def verify(result: OperationResult, state: FixtureState) -> None:
        for check in verifiers:
            check(result, state)
    return verify
