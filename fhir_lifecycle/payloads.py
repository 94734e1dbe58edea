"""Builders for the resource payloads the lifecycle fixtures send.

Payloads are plain dicts. Nothing here checks FHIR conformance; that is the
server's job through `$validate`.
"""
import json
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from fhir_lifecycle.client import read_document_bytes

SNOMED_SYSTEM = "http://snomed.info/sct"

Payload = Dict[str, Any]


def build_patient(name: str, gender: str, birth_date: str, resource_id: Optional[str] = None) -> Payload:
    """Patient with a single official name given as free text."""
    patient: Payload = {
        "resourceType": "Patient",
        "name": [{"use": "official", "text": name}],
        "gender": gender,
        "birthDate": birth_date,
    }
    if resource_id:
        patient["id"] = resource_id
    return patient


def build_condition(patient_reference: str, code: str, display: str, text: str) -> Payload:
    """Condition for `patient_reference` coded in SNOMED CT."""
    return {
        "resourceType": "Condition",
        "subject": {"reference": patient_reference},
        "code": {
            "text": text,
            "coding": [{"system": SNOMED_SYSTEM, "code": code, "display": display}],
        },
    }


def build_transaction_bundle(entries: Iterable[Tuple[str, str, Payload]]) -> Payload:
    """
    Transaction Bundle from (method, url, resource) triples.

    Args:
        entries: e.g. [("PUT", "Patient/p1", patient), ("POST", "Condition", condition)].
    """
    return {
        "resourceType": "Bundle",
        "type": "transaction",
        "entry": [
            {"resource": resource, "request": {"method": method, "url": url}}
            for method, url, resource in entries
        ],
    }


def build_patient_with_condition_bundle(
    patient_id: str,
    gender: str,
    birth_date: str,
    condition_text: str,
) -> Payload:
    """Bundle that upserts Patient/{patient_id} and posts a Condition referencing it."""
    patient = {"resourceType": "Patient", "id": patient_id, "gender": gender, "birthDate": birth_date}
    condition = {
        "resourceType": "Condition",
        "subject": {"reference": f"Patient/{patient_id}"},
        "code": {"text": condition_text},
    }
    return build_transaction_bundle([
        ("PUT", f"Patient/{patient_id}", patient),
        ("POST", "Condition", condition),
    ])


def load_document(path: Union[str, Path]) -> Payload:
    """Load a UTF-8 JSON document as a payload."""
    return json.loads(read_document_bytes(path).decode("utf-8"))
