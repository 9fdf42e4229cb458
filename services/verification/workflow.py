# services/verification/workflow.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from services.verification.backend import ReviewBackend
from services.verification.errors import ReviewError, UnauthorizedError
from services.verification.models import Page, ProcessedReport, ReportCandidate
from services.verification.paginator import VerificationQueuePaginator
from services.verification.session import ReviewSession
from services.verification.status_tracker import DEFAULT_POLL_INTERVAL_S, BatchStatusTracker
from services.verification.submission import SubmissionOutcome, VerificationSubmissionController
from services.verification.transform import transform_report

logger = logging.getLogger(__name__)


def format_processing_time(seconds: Any) -> str:
    try:
        s = max(0, int(float(seconds)))
    except (TypeError, ValueError):
        return "-"
    if s < 60:
        return f"{s}s"
    return f"{s // 60}m {s % 60}s"


@dataclass(frozen=True)
class RouteState:
    """Addressable position of the workflow, mirrored into the URL query."""

    batch_id: Optional[str] = None
    report_id: Optional[str] = None

    def to_query(self) -> Dict[str, str]:
        q = {}
        if self.batch_id:
            q["batchId"] = self.batch_id
        if self.report_id:
            q["reportId"] = self.report_id
        return q

    @classmethod
    def from_query(cls, params: Mapping[str, Any]) -> "RouteState":
        def first(*keys: str) -> Optional[str]:
            for k in keys:
                v = params.get(k)
                if isinstance(v, (list, tuple)):
                    v = v[0] if v else None
                if v is not None and str(v).strip():
                    return str(v).strip()
            return None

        return cls(batch_id=first("batchId", "batch_id", "batch"), report_id=first("reportId", "report_id", "id"))


@dataclass(frozen=True)
class PreviewState:
    report_id: Optional[str] = None
    content: Optional[bytes] = None
    error: Optional[str] = None
    loading: bool = False


class VerificationWorkflow:
    """
    Wires the tracker, paginator, session and submission controller for one
    batch (or one standalone report when no batch id is given).
    """

    def __init__(
        self,
        backend: ReviewBackend,
        *,
        batch_id: Optional[str] = None,
        report_id: Optional[str] = None,
        reviewer: str = "reviewer",
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        queue_per_page: int = 10,
        files_per_page: int = 20,
        auto_refresh: bool = True,
    ) -> None:
        if not batch_id and not report_id:
            raise ValueError("either batch_id or report_id is required")

        self.backend = backend
        self.batch_id = batch_id
        self.session = ReviewSession()
        self.preview = PreviewState()
        self.exit_to: Optional[str] = None
        self.error: Optional[str] = None

        self._route_report_id = report_id
        self._replace_on_next_load = False
        self._preview_generation = 0
        self._closed = False

        self.paginator: Optional[VerificationQueuePaginator] = None
        self.tracker: Optional[BatchStatusTracker] = None
        if batch_id:
            self.paginator = VerificationQueuePaginator(
                backend, batch_id, queue_per_page=queue_per_page, files_per_page=files_per_page
            )
            self.paginator.add_queue_listener(self._on_queue_loaded)
            self.tracker = BatchStatusTracker(
                backend,
                batch_id,
                paginator=self.paginator,
                poll_interval_s=poll_interval_s,
                auto_refresh=auto_refresh,
            )

        self.submission = VerificationSubmissionController(
            backend,
            self.session,
            reviewer=reviewer,
            batch_mode=bool(batch_id),
            on_advance=self._load_preview,
        )

    # --- lifecycle ---
    @property
    def in_batch(self) -> bool:
        return self.paginator is not None

    async def mount(self) -> None:
        self.error = None
        # auto-selection during the first queue load moves _route_report_id
        rid = self._route_report_id
        if self.paginator is None or self.tracker is None:
            await self._load_single(self._route_report_id or "")
            return

        await asyncio.gather(
            self.tracker.refresh(include_queue=False),
            self.paginator.fetch_queue(),
            self.paginator.fetch_files(),
        )
        self.tracker.start()

        # deep link to a report that is not on the first queue page
        if rid and rid not in self.session:
            draft = await self._fetch_draft(rid)
            if draft is not None:
                self.session.merge([draft])
                await self.select(rid)

    async def teardown(self) -> None:
        self._closed = True
        if self.tracker is not None:
            await self.tracker.stop()

    async def reload(self) -> None:
        """Full re-fetch of the current queue page; unsaved edits are discarded."""
        self.error = None
        if self.paginator is None:
            await self._load_single(self.session.selected_id or self._route_report_id or "")
            return
        self._route_report_id = self.session.selected_id
        self._replace_on_next_load = True
        await self.paginator.fetch_queue()

    # --- drafts ---
    async def _fetch_draft(self, report_id: str) -> Optional[ProcessedReport]:
        try:
            envelope = await self.backend.get_report(report_id)
        except ReviewError as e:
            logger.warning("report fetch failed report=%s: %s", report_id, e)
            self.error = e.user_message
            if isinstance(e, UnauthorizedError):
                raise
            return None
        return transform_report(envelope, report_id)

    async def _load_single(self, report_id: str) -> None:
        draft = await self._fetch_draft(report_id)
        if draft is None:
            return
        self.session.replace_all([draft])
        await self.select(draft.id)

    async def _on_queue_loaded(self, page: Page[ReportCandidate]) -> None:
        if self._closed:
            return

        ids = [c.id for c in page.items]
        if self._replace_on_next_load:
            wanted = ids
        else:
            wanted = [i for i in ids if i not in self.session]

        drafts = await asyncio.gather(*(self._fetch_draft(i) for i in wanted))
        fresh = [d for d in drafts if d is not None]

        if self._replace_on_next_load:
            self._replace_on_next_load = False
            self.session.replace_all(fresh)
        else:
            self.session.merge(fresh)

        if self.session.selected_id is None:
            preferred = self._route_report_id
            if preferred and preferred in self.session:
                await self.select(preferred)
            else:
                first = next((i for i in ids if i in self.session), None)
                if first is not None:
                    await self.select(first)

    # --- selection / preview ---
    async def select(self, report_id: str) -> ProcessedReport:
        report = self.session.select(report_id)
        self._route_report_id = report_id
        await self._load_preview(report_id)
        return report

    async def _load_preview(self, report_id: str) -> None:
        self._preview_generation += 1
        generation = self._preview_generation
        self.preview = PreviewState(report_id=report_id, loading=True)

        try:
            content = await self.backend.get_report_pdf(report_id)
        except ReviewError as e:
            if not self._closed and generation == self._preview_generation:
                self.preview = PreviewState(report_id=report_id, error=e.user_message)
            if isinstance(e, UnauthorizedError):
                raise
            return

        if self._closed or generation != self._preview_generation:
            logger.debug("discarding stale preview for report=%s", report_id)
            return
        self.preview = PreviewState(report_id=report_id, content=content)

    # --- actions ---
    async def submit(self, notes: str = "") -> SubmissionOutcome:
        outcome = await self.submission.submit(notes)
        if outcome.next_report_id:
            self._route_report_id = outcome.next_report_id
        if outcome.navigate_to:
            await self._exit(outcome.navigate_to)
        return outcome

    async def defer(self) -> SubmissionOutcome:
        outcome = self.submission.defer()
        await self._exit(outcome.navigate_to)
        return outcome

    async def _exit(self, route: Optional[str]) -> None:
        # leaving the view: nothing may keep polling behind it
        self.exit_to = route
        await self.teardown()

    async def refresh(self) -> None:
        if self.tracker is not None:
            await self.tracker.refresh()
            self.tracker.start()
        if self.paginator is not None:
            await self.paginator.fetch_files()

    async def retry_failed(self) -> bool:
        if self.tracker is None:
            return False
        ok = await self.tracker.retry_failed()
        if ok and self.paginator is not None:
            await self.paginator.fetch_files()
        return ok

    async def set_auto_refresh(self, enabled: bool) -> None:
        if self.tracker is not None:
            await self.tracker.set_auto_refresh(enabled)

    # --- views ---
    @property
    def route(self) -> RouteState:
        return RouteState(batch_id=self.batch_id, report_id=self.session.selected_id or self._route_report_id)

    @property
    def errors(self) -> List[str]:
        msgs = [
            self.error,
            self.tracker.error if self.tracker else None,
            self.paginator.queue_error if self.paginator else None,
            self.paginator.files_error if self.paginator else None,
            self.submission.error,
            self.preview.error,
        ]
        out: List[str] = []
        for m in msgs:
            if m and m not in out:
                out.append(m)
        return out
