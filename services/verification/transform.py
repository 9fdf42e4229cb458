# services/verification/transform.py
from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, List, Mapping, Optional, Tuple

from services.verification.flags import to_ui_flag
from services.verification.models import (
    LabInfo,
    PatientInfo,
    ProcessedReport,
    RawReportEnvelope,
    TestResult,
)

# canonical key -> accepted upstream spellings (first hit wins)
_PATIENT_KEYS: Dict[str, Tuple[str, ...]] = {
    "name": ("name", "patient_name"),
    "patient_id": ("patient_id", "patientId"),
    "age": ("age",),
    "gender": ("gender", "sex"),
    "phone": ("phone", "phone_number"),
}
_LAB_KEYS: Dict[str, Tuple[str, ...]] = {
    "lab_id": ("lab_id", "labId"),
    "requested_by": ("requested_by", "requestedBy"),
    "requested_date": ("requested_date", "requestedDate"),
    "collected_date": ("collected_date", "collectedDate"),
    "analysis_date": ("analysis_date", "analysisDate"),
    "validated_by": ("validated_by", "validatedBy"),
}
_TEST_KEYS: Dict[str, Tuple[str, ...]] = {
    "category": ("category",),
    "test_name": ("test_name", "testName", "name"),
    "result": ("result", "value"),
    "unit": ("unit",),
    "reference_range": ("reference_range", "referenceRange"),
}


def _safe_str(x: Any) -> str:
    if x is None:
        return ""
    if isinstance(x, str):
        return x.strip()
    return str(x).strip()


def _as_mapping(x: Any) -> Mapping[str, Any]:
    return x if isinstance(x, Mapping) else {}


def _pick(d: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return None


def _string_fields(raw: Mapping[str, Any], key_map: Dict[str, Tuple[str, ...]]) -> Dict[str, str]:
    return {canon: _safe_str(_pick(raw, *aliases)) for canon, aliases in key_map.items()}


def _derive_status(meta: Mapping[str, Any]) -> str:
    status = _safe_str(meta.get("status")).lower()
    if status == "verified" or meta.get("verified_at") or meta.get("is_verified") is True:
        return "verified"
    if status in ("processing", "pending"):
        return "processing"
    if status in ("failed", "error"):
        return "error"
    return "completed"


def _derive_progress(meta: Mapping[str, Any], status: str) -> int:
    raw = _pick(meta, "processing_progress", "progress")
    if raw is None:
        return 0 if status == "processing" else 100
    try:
        return max(0, min(100, int(float(raw))))
    except (TypeError, ValueError):
        return 0


def _uploader(meta: Mapping[str, Any]) -> Optional[str]:
    up = meta.get("uploader")
    if isinstance(up, Mapping):
        up = up.get("name") or up.get("id")
    s = _safe_str(up)
    return s or None


def transform_test_results(report_id: str, raw_tests: Any) -> Tuple[TestResult, ...]:
    """
    Ids are `{report_id}_{index}` unless transmitted, so the transform stays
    deterministic. A repeated id is replaced by the positional id, suffixed
    until it is unique within the report.
    """
    if not isinstance(raw_tests, list):
        return ()

    out: List[TestResult] = []
    seen = set()
    for idx, raw in enumerate(raw_tests):
        t = _as_mapping(raw)
        test_id = _safe_str(t.get("id")) or f"{report_id}_{idx}"
        if test_id in seen:
            test_id = f"{report_id}_{idx}"
            n = 1
            while test_id in seen:
                test_id = f"{report_id}_{idx}_{n}"
                n += 1
        seen.add(test_id)
        out.append(
            TestResult(
                id=test_id,
                flag=to_ui_flag(t.get("flag")),
                **_string_fields(t, _TEST_KEYS),
            )
        )
    return tuple(out)


def transform_report(envelope: RawReportEnvelope, report_id: Optional[str] = None) -> ProcessedReport:
    """
    Convert a raw `GET report` envelope into a fully defaulted draft.

    Pure: the input is never mutated and identical input always yields an
    equal draft. Every optional upstream field is resolved here; nothing past
    this function needs to handle missing keys.
    """
    env = _as_mapping(envelope)
    meta = _as_mapping(_pick(env, "report", "metadata")) or env
    extracted = _as_mapping(_pick(env, "extracted_data", "extractedData"))
    if not extracted:
        extracted = _as_mapping(meta.get("extracted_data"))

    rid = _safe_str(report_id) or _safe_str(meta.get("id"))
    if not rid:
        raise ValueError("report envelope carries no id")

    status = _derive_status(meta)
    patient = _as_mapping(_pick(extracted, "patient_info", "patientInfo"))
    lab = _as_mapping(_pick(extracted, "lab_info", "labInfo"))

    return ProcessedReport(
        id=rid,
        filename=_safe_str(_pick(meta, "original_filename", "filename", "file_name")),
        status=status,
        processing_progress=_derive_progress(meta, status),
        patient_info=PatientInfo(**_string_fields(patient, _PATIENT_KEYS)),
        lab_info=LabInfo(**_string_fields(lab, _LAB_KEYS)),
        test_results=transform_test_results(rid, _pick(extracted, "test_results", "testResults")),
        raw_extracted=deepcopy(dict(extracted)),
        uploader=_uploader(meta),
    )
