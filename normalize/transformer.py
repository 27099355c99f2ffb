# normalize/transformer.py
from typing import Dict, List, Optional, Sequence

from models.lab_test import LabTestRecord

# Server payloads seen in the wild, mapped to canonical field names
_INBOUND_ALIASES = {
    "visit_id": ("visit_id", "visitId"),
    "patient_id": ("patient_id", "patientId"),
    "test_name": ("test_name", "testName", "name"),
    "result": ("result",),
    "reference_range": ("reference_range", "referenceRange"),
    "status": ("status",),
    "remote_id": ("test_id", "testId", "id"),
}


def to_wire(record: LabTestRecord) -> Dict:
    """
    Convert a canonical record into the remote service's request body.
    """
    return {
        "visit_id": record.visit_id,
        "patient_id": record.patient_id,
        "test_name": record.test_name,
        "result": record.result,
        "reference_range": record.reference_range,
        "status": record.status.value,
    }


def wrap_batch(records: Sequence[LabTestRecord], visit_id: int, patient_id: str) -> Dict:
    return {
        "visit_id": visit_id,
        "patient_id": patient_id,
        "tests": [to_wire(r) for r in records],
    }


def from_wire(payload: Dict) -> Dict:
    """
    Map a server payload onto canonical field names.
    Unknown keys are dropped; remote_id is None when the server sent none.
    """
    out = {}
    for field, aliases in _INBOUND_ALIASES.items():
        for alias in aliases:
            if payload.get(alias) not in (None, ""):
                out[field] = payload[alias]
                break
    out.setdefault("remote_id", None)
    return out


def record_from_wire(payload: Dict, visit_id: Optional[int] = None) -> LabTestRecord:
    data = from_wire(payload)
    data.pop("remote_id", None)
    if visit_id is not None:
        data.setdefault("visit_id", visit_id)
    return LabTestRecord(**data)


def created_items(body) -> Optional[List[Dict]]:
    """Created list from a batch response, or None when the body has none"""
    if isinstance(body, list):
        return [item for item in body if isinstance(item, dict)]
    if isinstance(body, dict) and isinstance(body.get("created"), list):
        return [item for item in body["created"] if isinstance(item, dict)]
    return None
