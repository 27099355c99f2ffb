# catalog.py
from collections import OrderedDict
from typing import Dict, Iterable, List, NamedTuple, Optional

from errors import ValidationFailed
from models.lab_test import LabTestRecord, parse_visit_id


class CatalogTest(NamedTuple):
    id: str
    name: str
    category: str
    test_name: str


COMMON_LAB_TESTS = [
    CatalogTest("cbc", "Complete Blood Count (CBC)", "Hematology", "Complete Blood Count (CBC)"),
    CatalogTest("hb", "Hemoglobin", "Hematology", "Hemoglobin"),
    CatalogTest("wbc", "White Blood Cell Count", "Hematology", "White Blood Cell Count"),
    CatalogTest("platelet", "Platelet Count", "Hematology", "Platelet Count"),
    CatalogTest("esr", "ESR", "Hematology", "Erythrocyte Sedimentation Rate"),
    CatalogTest("glucose_fasting", "Glucose Fasting", "Biochemistry", "Glucose Fasting"),
    CatalogTest("glucose_pp", "Glucose PP", "Biochemistry", "Glucose Post Prandial"),
    CatalogTest("hba1c", "HbA1c", "Biochemistry", "Glycated Hemoglobin"),
    CatalogTest("lipid", "Lipid Profile", "Biochemistry", "Lipid Profile"),
    CatalogTest("liver", "Liver Function Test", "Biochemistry", "Liver Function Test"),
    CatalogTest("kidney", "Kidney Function Test", "Biochemistry", "Kidney Function Test"),
    CatalogTest("urine_routine", "Urine Routine", "Urine", "Urine Routine"),
    CatalogTest("urine_culture", "Urine Culture", "Urine", "Urine Culture"),
    CatalogTest("microalbumin", "Microalbumin", "Urine", "Microalbumin"),
    CatalogTest("ecg", "ECG", "Cardiac", "Electrocardiogram"),
    CatalogTest("echo", "Echocardiogram", "Cardiac", "Echocardiogram"),
    CatalogTest("troponin", "Troponin", "Cardiac", "Troponin"),
    CatalogTest("xray_chest", "X-Ray Chest", "Imaging", "X-Ray Chest"),
    CatalogTest("usg_abdomen", "USG Abdomen", "Imaging", "Ultrasonography Abdomen"),
    CatalogTest("ct_scan", "CT Scan", "Imaging", "Computed Tomography Scan"),
    CatalogTest("mri", "MRI", "Imaging", "Magnetic Resonance Imaging"),
    CatalogTest("t3", "T3", "Thyroid", "Triiodothyronine"),
    CatalogTest("t4", "T4", "Thyroid", "Thyroxine"),
    CatalogTest("tsh", "TSH", "Thyroid", "Thyroid Stimulating Hormone"),
    CatalogTest("covid", "COVID-19 Test", "Viral", "SARS-CoV-2 RT-PCR"),
    CatalogTest("dengue", "Dengue Test", "Viral", "Dengue NS1 Antigen"),
    CatalogTest("malaria", "Malaria Test", "Parasitic", "Malaria Parasite"),
    CatalogTest("typhoid", "Typhoid Test", "Bacterial", "Widal Test"),
]

_BY_ID = {t.id: t for t in COMMON_LAB_TESTS}


def get_test(test_id: str) -> Optional[CatalogTest]:
    return _BY_ID.get(test_id)


def by_category() -> Dict[str, List[CatalogTest]]:
    """Catalog grouped by category, in catalog order"""
    groups: Dict[str, List[CatalogTest]] = OrderedDict()
    for test in COMMON_LAB_TESTS:
        groups.setdefault(test.category, []).append(test)
    return groups


def records_for(visit_id, patient_id: str, test_ids: Iterable[str]) -> List[LabTestRecord]:
    """Fresh pending records for the selected catalog tests"""
    vid = parse_visit_id(visit_id)
    records = []
    for test_id in test_ids:
        test = get_test(test_id)
        if test is None:
            raise ValidationFailed(f"Unknown lab test id: {test_id!r}")
        records.append(LabTestRecord(visit_id=vid, patient_id=patient_id, test_name=test.test_name))
    if not records:
        raise ValidationFailed("No lab tests selected")
    return records
