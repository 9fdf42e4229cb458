# apps/review_ui/adapters.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx

from apps.common.settings import AppSettings
from services.verification.errors import (
    ForbiddenError,
    NetworkError,
    NotFoundError,
    ReviewError,
    UnauthorizedError,
    ValidationFailedError,
)
from services.verification.models import (
    Batch,
    ExtractionSummary,
    FileStatus,
    Page,
    PatientRef,
    RawReportEnvelope,
    ReportCandidate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# --- Parsing helpers ---
def _s(x: Any) -> str:
    return "" if x is None else str(x)


def _opt(x: Any) -> Optional[str]:
    return None if x is None or x == "" else str(x)


def _i(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def _unwrap(body: Any) -> Any:
    # {"success": true, "data": {...}} -> {...}
    if isinstance(body, dict) and "success" in body and isinstance(body.get("data"), dict):
        return body["data"]
    return body


def parse_batch(body: Dict[str, Any]) -> Batch:
    b = _unwrap(body)
    if isinstance(b, dict) and isinstance(b.get("batch"), dict):
        b = b["batch"]
    return Batch(
        id=_s(b.get("id")),
        name=_s(b.get("name")),
        status=_s(b.get("status") or "pending").lower(),
        total_reports=_i(b.get("total_reports")),
        processed_reports=_i(b.get("processed_reports")),
        failed_reports=_i(b.get("failed_reports")),
        created_at=_opt(b.get("created_at")),
        processing_started_at=_opt(b.get("processing_started_at")),
        processing_completed_at=_opt(b.get("processing_completed_at")),
    )


def parse_file_status(item: Dict[str, Any]) -> FileStatus:
    return FileStatus(
        id=_s(item.get("id")),
        filename=_s(item.get("original_filename") or item.get("filename")),
        status=_s(item.get("status") or "pending").lower(),
        error_message=_opt(item.get("error_message")),
        processed_at=_opt(item.get("processed_at")),
    )


def parse_candidate(item: Dict[str, Any]) -> ReportCandidate:
    summary = item.get("extracted_data_summary") or {}
    patient = item.get("patient")
    batch = item.get("batch") or {}
    uploader = item.get("uploader")
    if isinstance(uploader, dict):
        uploader = uploader.get("name")
    try:
        processing_time = float(item.get("processing_time") or 0)
    except (TypeError, ValueError):
        processing_time = 0.0

    return ReportCandidate(
        id=_s(item.get("id")),
        filename=_s(item.get("original_filename") or item.get("filename")),
        processing_time=processing_time,
        summary=ExtractionSummary(
            has_patient_info=bool(summary.get("has_patient_info")),
            has_lab_info=bool(summary.get("has_lab_info")),
            test_count=_i(summary.get("test_count")),
            categories=tuple(_s(c) for c in summary.get("categories") or ()),
        ),
        batch_id=_s(batch.get("id") or item.get("batch_id")),
        batch_name=_s(batch.get("name")),
        patient=(
            PatientRef(id=_s(patient.get("id")), name=_s(patient.get("name")), patient_id=_s(patient.get("patient_id")))
            if isinstance(patient, dict)
            else None
        ),
        processed_at=_opt(item.get("processed_at")),
        uploader=_opt(uploader),
    )


def parse_page(body: Any, parse_item: Callable[[Dict[str, Any]], T], per_page: int) -> Page[T]:
    """
    Accepts the wrapped form {success, data: {data: [...], ...}} and the bare
    paginator form {data: [...], current_page, last_page, total}.
    """
    p = _unwrap(body)
    if isinstance(p, list):
        items = [parse_item(x) for x in p if isinstance(x, dict)]
        return Page(items=tuple(items), current_page=1, last_page=1, per_page=per_page, total=len(items))
    if not isinstance(p, dict) or not isinstance(p.get("data"), list):
        logger.warning("unexpected paginated response shape: %s", type(p).__name__)
        return Page.empty(per_page)

    items: List[T] = [parse_item(x) for x in p["data"] if isinstance(x, dict)]
    return Page(
        items=tuple(items),
        current_page=max(1, _i(p.get("current_page"), 1)),
        last_page=max(1, _i(p.get("last_page"), 1)),
        per_page=_i(p.get("per_page"), per_page),
        total=_i(p.get("total"), len(items)),
    )


def error_from_response(resp: httpx.Response) -> ReviewError:
    try:
        body = resp.json()
    except ValueError:
        body = {"message": resp.text}
    if not isinstance(body, dict):
        body = {}

    message = body.get("message")
    if not isinstance(message, str):
        message = None
    status = resp.status_code

    if status == 401:
        return UnauthorizedError(message, status=status)
    if status == 403:
        return ForbiddenError(message, status=status)
    if status == 404:
        return NotFoundError(message, status=status)
    if status in (400, 422):
        errors = body.get("errors")
        return ValidationFailedError(message, field_errors=errors if isinstance(errors, dict) else None, status=status)
    return NetworkError(message or f"HTTP {status}: {resp.reason_phrase}", status=status)


class HttpReviewBackend:
    """`ReviewBackend` over JSON/HTTP with a bearer credential."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout_s,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "HttpReviewBackend":
        return cls(settings.api_base_url, token=settings.api_token, timeout_s=settings.request_timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpReviewBackend":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"Cannot connect to server at {self.base_url}: {e}") from e
        if resp.is_error:
            raise error_from_response(resp)
        return resp

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = await self._request(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"Malformed response from {path}") from e

    # --- ReviewBackend ---
    async def get_batch_status(self, batch_id: str) -> Batch:
        return parse_batch(await self._json("GET", f"/batches/{batch_id}/status"))

    async def get_verification_queue(self, batch_id: str, page: int, per_page: int) -> Page[ReportCandidate]:
        body = await self._json(
            "GET",
            f"/batches/{batch_id}/reports-for-verification",
            params={"page": page, "per_page": per_page},
        )
        return parse_page(body, parse_candidate, per_page)

    async def get_batch_files(self, batch_id: str, page: int, per_page: int) -> Page[FileStatus]:
        body = await self._json("GET", f"/batches/{batch_id}/files", params={"page": page, "per_page": per_page})
        return parse_page(body, parse_file_status, per_page)

    async def retry_failed(self, batch_id: str) -> Dict[str, Any]:
        body = await self._json("POST", f"/batches/{batch_id}/retry-failed")
        return body if isinstance(body, dict) else {"success": True}

    async def get_report(self, report_id: str) -> RawReportEnvelope:
        body = _unwrap(await self._json("GET", f"/reports/{report_id}"))
        if not isinstance(body, dict):
            raise NetworkError(f"Malformed report payload for {report_id}")
        return body  # type: ignore[return-value]

    async def verify_report(self, report_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._json("POST", f"/reports/{report_id}/verify", json=payload)
        if isinstance(body, dict) and body.get("success") is False:
            errors = body.get("errors")
            raise ValidationFailedError(body.get("message"), field_errors=errors if isinstance(errors, dict) else None)
        return body if isinstance(body, dict) else {"success": True}

    async def get_report_pdf(self, report_id: str) -> bytes:
        resp = await self._request("GET", f"/reports/{report_id}/pdf", headers={"Accept": "application/pdf"})
        return resp.content
