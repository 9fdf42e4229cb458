# services/verification/backend.py
from __future__ import annotations

from typing import Any, Dict, Protocol

from services.verification.models import Batch, FileStatus, Page, RawReportEnvelope, ReportCandidate


class ReviewBackend(Protocol):
    """Persistence boundary consumed by the review workflow. Every call may raise a ReviewError."""

    async def get_batch_status(self, batch_id: str) -> Batch: ...

    async def get_verification_queue(self, batch_id: str, page: int, per_page: int) -> Page[ReportCandidate]: ...

    async def get_batch_files(self, batch_id: str, page: int, per_page: int) -> Page[FileStatus]: ...

    async def retry_failed(self, batch_id: str) -> Dict[str, Any]: ...

    async def get_report(self, report_id: str) -> RawReportEnvelope: ...

    async def verify_report(self, report_id: str, payload: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get_report_pdf(self, report_id: str) -> bytes: ...
