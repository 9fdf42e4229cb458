# services/verification/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Tuple, TypedDict, TypeVar


T = TypeVar("T")

BATCH_STATUSES = ("pending", "processing", "completed", "failed")
BATCH_ACTIVE_STATUSES = ("pending", "processing")
FILE_STATUSES = ("pending", "processing", "completed", "failed", "processed")
REPORT_STATUSES = ("processing", "completed", "verified", "error")
UI_FLAGS = ("high", "low", "critical", "normal")


# --- Raw upstream shapes (every key optional) ---
class RawPatientInfo(TypedDict, total=False):
    name: Optional[str]
    patient_id: Optional[str]
    age: Optional[str]
    gender: Optional[str]
    phone: Optional[str]


class RawLabInfo(TypedDict, total=False):
    lab_id: Optional[str]
    requested_by: Optional[str]
    requested_date: Optional[str]
    collected_date: Optional[str]
    analysis_date: Optional[str]
    validated_by: Optional[str]


class RawTestResult(TypedDict, total=False):
    id: Optional[str]
    category: Optional[str]
    test_name: Optional[str]
    result: Optional[str]
    unit: Optional[str]
    reference_range: Optional[str]
    flag: Optional[str]


class RawExtraction(TypedDict, total=False):
    patient_info: Optional[RawPatientInfo]
    lab_info: Optional[RawLabInfo]
    test_results: Optional[List[RawTestResult]]


class RawReportEnvelope(TypedDict, total=False):
    report: Optional[Dict[str, Any]]
    extracted_data: Optional[RawExtraction]


# --- Server-owned read models ---
@dataclass(frozen=True)
class Batch:
    id: str
    name: str
    status: str
    total_reports: int
    processed_reports: int
    failed_reports: int
    created_at: Optional[str] = None
    processing_started_at: Optional[str] = None
    processing_completed_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in BATCH_ACTIVE_STATUSES


@dataclass(frozen=True)
class FileStatus:
    id: str
    filename: str
    status: str
    error_message: Optional[str] = None
    processed_at: Optional[str] = None


@dataclass(frozen=True)
class ExtractionSummary:
    has_patient_info: bool = False
    has_lab_info: bool = False
    test_count: int = 0
    categories: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PatientRef:
    id: str
    name: str
    patient_id: str


@dataclass(frozen=True)
class ReportCandidate:
    id: str
    filename: str
    processing_time: float
    summary: ExtractionSummary
    batch_id: str
    batch_name: str = ""
    patient: Optional[PatientRef] = None
    processed_at: Optional[str] = None
    uploader: Optional[str] = None


@dataclass(frozen=True)
class Page(Generic[T]):
    items: Tuple[T, ...]
    current_page: int
    last_page: int
    per_page: int
    total: int

    @classmethod
    def empty(cls, per_page: int) -> "Page[T]":
        return cls(items=(), current_page=1, last_page=1, per_page=per_page, total=0)


# --- Editable draft ---
@dataclass(frozen=True)
class PatientInfo:
    name: str = ""
    patient_id: str = ""
    age: str = ""
    gender: str = ""
    phone: str = ""


@dataclass(frozen=True)
class LabInfo:
    lab_id: str = ""
    requested_by: str = ""
    requested_date: str = ""
    collected_date: str = ""
    analysis_date: str = ""
    validated_by: str = ""


@dataclass(frozen=True)
class TestResult:
    id: str
    category: str = ""
    test_name: str = ""
    result: str = ""
    unit: str = ""
    reference_range: str = ""
    flag: Optional[str] = None

    __test__ = False  # not a pytest test class


@dataclass(frozen=True)
class ProcessedReport:
    id: str
    filename: str
    status: str
    processing_progress: int
    patient_info: PatientInfo
    lab_info: LabInfo
    test_results: Tuple[TestResult, ...]
    # passthrough, needed for the commit payload only
    raw_extracted: Dict[str, Any] = field(default_factory=dict)
    uploader: Optional[str] = None

    @property
    def is_submittable(self) -> bool:
        return self.status == "completed"
