from __future__ import annotations

import asyncio
from copy import deepcopy
from typing import Any, Dict, List, Optional

import pytest

from services.verification.models import Batch, ExtractionSummary, FileStatus, Page, ReportCandidate


def make_batch(batch_id: str = "B1", status: str = "processing", total: int = 2, processed: int = 0, failed: int = 0) -> Batch:
    return Batch(
        id=batch_id,
        name=f"Batch {batch_id}",
        status=status,
        total_reports=total,
        processed_reports=processed,
        failed_reports=failed,
    )


def make_candidate(report_id: str, batch_id: str = "B1") -> ReportCandidate:
    return ReportCandidate(
        id=report_id,
        filename=f"{report_id}.pdf",
        processing_time=12,
        summary=ExtractionSummary(has_patient_info=True, has_lab_info=True, test_count=2, categories=("BIOCHEMISTRY",)),
        batch_id=batch_id,
    )


def make_envelope(report_id: str, status: str = "completed", name: str = "Jane Smith") -> Dict[str, Any]:
    return {
        "report": {"id": report_id, "original_filename": f"{report_id}.pdf", "status": status, "uploader": "uploader@clinic"},
        "extracted_data": {
            "patient_info": {"name": name, "patient_id": "PT001", "age": "45 Y", "gender": "Female", "phone": "012345678"},
            "lab_info": {"lab_id": "LT001", "requested_by": "Dr. Wilson"},
            "test_results": [
                {"category": "BIOCHEMISTRY", "test_name": "Glucose", "result": "6.5", "unit": "mmol/L",
                 "reference_range": "(3.9-6.1)", "flag": "H"},
                {"category": "HEMATOLOGY", "test_name": "Hemoglobin", "result": "12.5", "unit": "g/dL",
                 "reference_range": "(12.0-15.5)", "flag": None},
            ],
            "raw_text": "GLUCOSE 6.5 H",
        },
    }


def _page(items: List[Any], page: int, per_page: int) -> Page:
    total = len(items)
    last = max(1, -(-total // per_page))
    start = (page - 1) * per_page
    return Page(items=tuple(items[start : start + per_page]), current_page=page, last_page=last, per_page=per_page, total=total)


class FakeBackend:
    """In-memory ReviewBackend. `fail[method] = exc` makes that method raise."""

    def __init__(self) -> None:
        self.batches: Dict[str, List[Batch]] = {}
        self.queue: Dict[str, List[ReportCandidate]] = {}
        self.files: Dict[str, List[FileStatus]] = {}
        self.reports: Dict[str, Dict[str, Any]] = {}
        self.pdfs: Dict[str, bytes] = {}
        self.pdf_delays: Dict[str, float] = {}
        self.verified: Dict[str, Dict[str, Any]] = {}
        self.fail: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    def add_report(self, report_id: str, batch_id: Optional[str] = "B1", status: str = "completed", **kw: Any) -> None:
        self.reports[report_id] = make_envelope(report_id, status=status, **kw)
        self.pdfs[report_id] = f"%PDF-{report_id}".encode()
        if batch_id is not None and status == "completed":
            self.queue.setdefault(batch_id, []).append(make_candidate(report_id, batch_id))

    def set_status(self, batch_id: str, *batches: Batch) -> None:
        # returned in order; the last one repeats
        self.batches[batch_id] = list(batches)

    async def _enter(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        await asyncio.sleep(0)
        if name in self.fail:
            raise self.fail[name]

    async def get_batch_status(self, batch_id: str) -> Batch:
        await self._enter("get_batch_status", batch_id)
        seq = self.batches[batch_id]
        return seq.pop(0) if len(seq) > 1 else seq[0]

    async def get_verification_queue(self, batch_id: str, page: int, per_page: int) -> Page[ReportCandidate]:
        await self._enter("get_verification_queue", batch_id, page, per_page)
        return _page(self.queue.get(batch_id, []), page, per_page)

    async def get_batch_files(self, batch_id: str, page: int, per_page: int) -> Page[FileStatus]:
        await self._enter("get_batch_files", batch_id, page, per_page)
        return _page(self.files.get(batch_id, []), page, per_page)

    async def retry_failed(self, batch_id: str) -> Dict[str, Any]:
        await self._enter("retry_failed", batch_id)
        return {"success": True}

    async def get_report(self, report_id: str) -> Dict[str, Any]:
        await self._enter("get_report", report_id)
        return deepcopy(self.reports[report_id])

    async def verify_report(self, report_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("verify_report", report_id)
        self.verified[report_id] = payload
        self.reports[report_id]["report"]["status"] = "verified"
        for cands in self.queue.values():
            cands[:] = [c for c in cands if c.id != report_id]
        return {"success": True, "message": "Report verified successfully"}

    async def get_report_pdf(self, report_id: str) -> bytes:
        await self._enter("get_report_pdf", report_id)
        if report_id in self.pdf_delays:
            await asyncio.sleep(self.pdf_delays[report_id])
        return self.pdfs[report_id]


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
