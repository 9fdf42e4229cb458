# services/verification/submission.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from services.verification.backend import ReviewBackend
from services.verification.errors import NotSubmittableError, ReviewError, UnauthorizedError
from services.verification.flags import to_backend_flag
from services.verification.models import ProcessedReport
from services.verification.session import ReviewSession

logger = logging.getLogger(__name__)

# navigation targets handed back to the shell
ROUTE_BATCH_EXHAUSTED = "/main/verification/monitoring"
ROUTE_VERIFIED = "/main/reports?status=verified"
ROUTE_DEFERRED = "/main/reports?status=unverified"

# keys rebuilt from the draft; every other upstream key passes through untouched
_DRAFT_KEYS = ("patient_info", "patientInfo", "lab_info", "labInfo", "test_results", "testResults")


@dataclass(frozen=True)
class SubmissionOutcome:
    ok: bool
    report_id: Optional[str]
    next_report_id: Optional[str] = None
    exhausted: bool = False
    navigate_to: Optional[str] = None
    error: Optional[str] = None


def audit_note(reviewer: str, when: datetime, notes: str = "") -> str:
    head = f"Verified by {reviewer or 'unknown'} at {when.isoformat()}"
    notes = (notes or "").strip()
    return f"{head}. {notes}" if notes else head


def build_commit_payload(
    report: ProcessedReport,
    *,
    reviewer: str,
    notes: str = "",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Serialize a draft into the `report-verify` body, flags re-encoded to backend codes."""
    when = now or datetime.now(timezone.utc)

    verified: Dict[str, Any] = {k: v for k, v in report.raw_extracted.items() if k not in _DRAFT_KEYS}
    verified["patient_info"] = asdict(report.patient_info)
    verified["lab_info"] = asdict(report.lab_info)
    verified["test_results"] = [
        {**asdict(t), "flag": to_backend_flag(t.flag)} for t in report.test_results
    ]
    if report.uploader:
        verified["uploader"] = report.uploader

    return {
        "verified_data": verified,
        "notes": audit_note(reviewer, when, notes),
    }


class VerificationSubmissionController:
    """
    Commits the selected draft and walks the session to the next pending
    report. A failed commit never changes the draft; the error is kept on
    `self.error` for the shell to show and the user can submit again.
    """

    def __init__(
        self,
        backend: ReviewBackend,
        session: ReviewSession,
        *,
        reviewer: str,
        batch_mode: bool = True,
        on_advance: Optional[Callable[[str], Awaitable[None]]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.backend = backend
        self.session = session
        self.reviewer = reviewer
        self.batch_mode = batch_mode
        self.on_advance = on_advance
        self.clock = clock

        self.is_submitting = False
        self.error: Optional[str] = None
        self.last_outcome: Optional[SubmissionOutcome] = None

    @property
    def can_submit(self) -> bool:
        r = self.session.selected
        return r is not None and r.is_submittable and not self.is_submitting

    async def submit(self, notes: str = "") -> SubmissionOutcome:
        report = self.session.selected
        if report is None or not report.is_submittable:
            raise NotSubmittableError()
        if self.is_submitting:
            raise NotSubmittableError("A submission is already in progress.")

        payload = build_commit_payload(report, reviewer=self.reviewer, notes=notes, now=self.clock())
        self.is_submitting = True
        self.error = None
        try:
            await self.backend.verify_report(report.id, payload)
        except ReviewError as e:
            logger.warning("verification rejected report=%s: %s", report.id, e)
            self.error = e.user_message
            self.last_outcome = SubmissionOutcome(ok=False, report_id=report.id, error=e.user_message)
            if isinstance(e, UnauthorizedError):
                raise
            return self.last_outcome
        finally:
            self.is_submitting = False

        logger.info("report %s verified by %s", report.id, self.reviewer)
        if report.id in self.session:
            self.session.mark_verified(report.id)
        else:
            # a reload dropped the draft while the commit was in flight
            logger.debug("verified report %s is no longer in the session", report.id)

        self.last_outcome = await self._advance(report.id)
        return self.last_outcome

    async def _advance(self, verified_id: str) -> SubmissionOutcome:
        if not self.batch_mode:
            return SubmissionOutcome(ok=True, report_id=verified_id, navigate_to=ROUTE_VERIFIED)

        # the user moved on while the commit was in flight; keep their choice
        if self.session.selected_id not in (None, verified_id):
            return SubmissionOutcome(ok=True, report_id=verified_id, next_report_id=self.session.selected_id)

        nxt = self.session.next_pending()
        if nxt is None:
            self.session.clear_selection()
            logger.info("batch queue exhausted after report %s", verified_id)
            return SubmissionOutcome(
                ok=True, report_id=verified_id, exhausted=True, navigate_to=ROUTE_BATCH_EXHAUSTED
            )

        self.session.select(nxt.id)
        if self.on_advance is not None:
            await self.on_advance(nxt.id)
        return SubmissionOutcome(ok=True, report_id=verified_id, next_report_id=nxt.id)

    def defer(self) -> SubmissionOutcome:
        """Leave the report for later: no commit, navigation only."""
        r = self.session.selected
        return SubmissionOutcome(ok=True, report_id=r.id if r else None, navigate_to=ROUTE_DEFERRED)
