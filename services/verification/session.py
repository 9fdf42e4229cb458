# services/verification/session.py
from __future__ import annotations

from dataclasses import fields, replace
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from services.verification.models import UI_FLAGS, LabInfo, PatientInfo, ProcessedReport, TestResult

PATIENT_FIELDS = tuple(f.name for f in fields(PatientInfo))
LAB_FIELDS = tuple(f.name for f in fields(LabInfo))
TEST_FIELDS = tuple(f.name for f in fields(TestResult) if f.name != "id")


def _as_text(value: Optional[str]) -> str:
    return "" if value is None else str(value)


def group_by_category(tests: Iterable[TestResult]) -> Dict[str, List[TestResult]]:
    """Category -> tests, categories in first-seen order."""
    grouped: Dict[str, List[TestResult]] = {}
    for t in tests:
        grouped.setdefault(t.category, []).append(t)
    return grouped


class ReviewSession:
    """
    In-memory drafts for one review session plus the single selected report.

    Every mutation goes through `_apply`, which builds a new frozen draft and
    swaps it into the collection by id. The collection is the only store; the
    selection is just an id, so switching away and back keeps edits.
    """

    def __init__(self, reports: Iterable[ProcessedReport] = ()) -> None:
        self._reports: List[ProcessedReport] = []
        self.selected_id: Optional[str] = None
        self.replace_all(reports)

    # --- collection ---
    @property
    def reports(self) -> List[ProcessedReport]:
        return list(self._reports)

    @property
    def selected(self) -> Optional[ProcessedReport]:
        if self.selected_id is None:
            return None
        return self.get(self.selected_id)

    def get(self, report_id: str) -> Optional[ProcessedReport]:
        for r in self._reports:
            if r.id == report_id:
                return r
        return None

    def __contains__(self, report_id: object) -> bool:
        return any(r.id == report_id for r in self._reports)

    def __len__(self) -> int:
        return len(self._reports)

    def replace_all(self, reports: Iterable[ProcessedReport]) -> None:
        """Full re-fetch: drop every draft (and unsaved edit) we held."""
        deduped: Dict[str, ProcessedReport] = {}
        for r in reports:
            deduped[r.id] = r
        self._reports = list(deduped.values())
        if self.selected_id is not None and self.selected_id not in self:
            self.selected_id = None

    def merge(self, reports: Iterable[ProcessedReport]) -> List[str]:
        """Append drafts for unseen ids; existing drafts are left as they are."""
        added = []
        for r in reports:
            if r.id not in self:
                self._reports.append(r)
                added.append(r.id)
        return added

    # --- selection ---
    def select(self, report_id: str) -> ProcessedReport:
        report = self.get(report_id)
        if report is None:
            raise KeyError(f"report not in session: {report_id}")
        self.selected_id = report_id
        return report

    def clear_selection(self) -> None:
        self.selected_id = None

    def next_pending(self, exclude: Optional[str] = None) -> Optional[ProcessedReport]:
        """First draft still awaiting verification, in collection order."""
        for r in self._reports:
            if r.status == "completed" and r.id != exclude:
                return r
        return None

    # --- reducer ---
    def _apply(self, report_id: str, fn: Callable[[ProcessedReport], ProcessedReport]) -> ProcessedReport:
        for i, r in enumerate(self._reports):
            if r.id == report_id:
                updated = fn(r)
                self._reports[i] = updated
                return updated
        raise KeyError(f"report not in session: {report_id}")

    def _apply_selected(self, fn: Callable[[ProcessedReport], ProcessedReport]) -> Optional[ProcessedReport]:
        if self.selected_id is None:
            return None
        return self._apply(self.selected_id, fn)

    # --- field edits on the selected draft ---
    def update_patient_field(self, field_name: str, value: Optional[str]) -> Optional[ProcessedReport]:
        if field_name not in PATIENT_FIELDS:
            raise ValueError(f"unknown patient field: {field_name}")
        return self._apply_selected(
            lambda r: replace(r, patient_info=replace(r.patient_info, **{field_name: _as_text(value)}))
        )

    def update_lab_field(self, field_name: str, value: Optional[str]) -> Optional[ProcessedReport]:
        if field_name not in LAB_FIELDS:
            raise ValueError(f"unknown lab field: {field_name}")
        return self._apply_selected(
            lambda r: replace(r, lab_info=replace(r.lab_info, **{field_name: _as_text(value)}))
        )

    def update_test_result(self, test_id: str, field_name: str, value: Optional[str]) -> Optional[ProcessedReport]:
        if field_name not in TEST_FIELDS:
            raise ValueError(f"unknown test result field: {field_name}")
        if field_name == "flag":
            if value is not None and value not in UI_FLAGS:
                raise ValueError(f"invalid flag: {value!r}")
            new_value = value
        else:
            new_value = _as_text(value)

        def fn(r: ProcessedReport) -> ProcessedReport:
            if not any(t.id == test_id for t in r.test_results):
                raise KeyError(f"test result not in report {r.id}: {test_id}")
            return replace(
                r,
                test_results=tuple(
                    replace(t, **{field_name: new_value}) if t.id == test_id else t for t in r.test_results
                ),
            )

        return self._apply_selected(fn)

    def add_test_result(self, category: str) -> Optional[ProcessedReport]:
        def fn(r: ProcessedReport) -> ProcessedReport:
            taken = {t.id for t in r.test_results}
            new_id = f"{r.id}_{uuid4().hex[:8]}"
            while new_id in taken:
                new_id = f"{r.id}_{uuid4().hex[:8]}"
            return replace(r, test_results=r.test_results + (TestResult(id=new_id, category=_as_text(category)),))

        return self._apply_selected(fn)

    def remove_test_result(self, test_id: str) -> Optional[ProcessedReport]:
        return self._apply_selected(
            lambda r: replace(r, test_results=tuple(t for t in r.test_results if t.id != test_id))
        )

    def add_category(self, name: str) -> Optional[ProcessedReport]:
        """New category = one blank test result tagged with the upper-cased name."""
        category = (name or "").strip().upper()
        if not category:
            raise ValueError("category name is empty")
        return self.add_test_result(category)

    # --- status ---
    def mark_verified(self, report_id: str) -> ProcessedReport:
        # only the submission controller calls this, after the commit succeeded
        return self._apply(report_id, lambda r: replace(r, status="verified", processing_progress=100))
