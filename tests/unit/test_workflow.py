from __future__ import annotations

import asyncio

import pytest

from services.verification.errors import NetworkError
from services.verification.submission import ROUTE_BATCH_EXHAUSTED, ROUTE_DEFERRED, ROUTE_VERIFIED
from services.verification.workflow import RouteState, VerificationWorkflow, format_processing_time

from conftest import make_batch


def _batch(backend, *ids: str, status: str = "completed") -> None:
    backend.set_status("B1", make_batch(status=status, total=len(ids), processed=len(ids)))
    for i in ids:
        backend.add_report(i)


@pytest.mark.asyncio
async def test_mount_auto_selects_first_and_loads_preview(backend):
    _batch(backend, "R1", "R2")
    wf = VerificationWorkflow(backend, batch_id="B1")
    await wf.mount()

    assert [r.id for r in wf.session.reports] == ["R1", "R2"]
    assert wf.session.selected_id == "R1"
    assert wf.preview.report_id == "R1"
    assert wf.preview.content == b"%PDF-R1"
    assert wf.tracker.progress == 100
    assert not wf.tracker.is_polling
    assert wf.route == RouteState(batch_id="B1", report_id="R1")
    assert wf.errors == []


@pytest.mark.asyncio
async def test_submit_advances_to_next_completed_report(backend):
    _batch(backend, "R1", "R2")
    wf = VerificationWorkflow(backend, batch_id="B1")
    await wf.mount()

    outcome = await wf.submit()

    assert outcome.ok
    assert wf.session.get("R1").status == "verified"
    assert wf.session.selected_id == "R2"
    assert wf.preview.report_id == "R2"
    assert wf.exit_to is None
    assert wf.route.report_id == "R2"


@pytest.mark.asyncio
async def test_last_report_exhausts_the_batch(backend):
    _batch(backend, "R1")
    wf = VerificationWorkflow(backend, batch_id="B1")
    await wf.mount()

    outcome = await wf.submit()
    assert outcome.exhausted
    assert wf.exit_to == ROUTE_BATCH_EXHAUSTED
    assert wf.session.selected is None


@pytest.mark.asyncio
async def test_empty_queue(backend):
    backend.set_status("B1", make_batch(status="completed", total=0))
    wf = VerificationWorkflow(backend, batch_id="B1")
    await wf.mount()
    assert wf.session.selected is None
    assert not wf.paginator.can_advance
    assert not wf.submission.can_submit
    assert wf.errors == []


@pytest.mark.asyncio
async def test_route_report_id_wins_over_first_item(backend):
    _batch(backend, "R1", "R2")
    wf = VerificationWorkflow(backend, batch_id="B1", report_id="R2")
    await wf.mount()
    assert wf.session.selected_id == "R2"


@pytest.mark.asyncio
async def test_route_report_on_a_later_page_is_loaded(backend):
    _batch(backend, "R1", "R2", "R3")
    wf = VerificationWorkflow(backend, batch_id="B1", report_id="R3", queue_per_page=2)
    await wf.mount()
    assert wf.session.selected_id == "R3"
    assert wf.preview.report_id == "R3"


@pytest.mark.asyncio
async def test_poll_refresh_keeps_edits_and_reload_discards_them(backend):
    _batch(backend, "R1")
    wf = VerificationWorkflow(backend, batch_id="B1")
    await wf.mount()
    wf.session.update_patient_field("name", "Corrected Name")

    backend.add_report("R2")
    await wf.tracker.refresh()
    assert [r.id for r in wf.session.reports] == ["R1", "R2"]
    assert wf.session.get("R1").patient_info.name == "Corrected Name"

    await wf.reload()
    assert wf.session.get("R1").patient_info.name == "Jane Smith"
    assert wf.session.selected_id == "R1"


@pytest.mark.asyncio
async def test_late_preview_for_previous_selection_is_discarded(backend):
    _batch(backend, "R1", "R2")
    wf = VerificationWorkflow(backend, batch_id="B1")
    await wf.mount()

    backend.pdf_delays["R1"] = 0.05
    slow = asyncio.ensure_future(wf.select("R1"))
    await asyncio.sleep(0.01)
    await wf.select("R2")
    await slow

    assert wf.session.selected_id == "R2"
    assert wf.preview.report_id == "R2"
    assert wf.preview.content == b"%PDF-R2"


@pytest.mark.asyncio
async def test_failed_draft_fetch_is_surfaced_not_fatal(backend):
    _batch(backend, "R1", "R2")
    real_get = backend.get_report

    async def flaky(rid):
        if rid == "R1":
            raise NetworkError("report service unavailable")
        return await real_get(rid)

    backend.get_report = flaky
    wf = VerificationWorkflow(backend, batch_id="B1")
    await wf.mount()

    assert [r.id for r in wf.session.reports] == ["R2"]
    assert wf.session.selected_id == "R2"
    assert "report service unavailable" in wf.errors


@pytest.mark.asyncio
async def test_single_report_mode(backend):
    backend.add_report("R9", batch_id=None)
    wf = VerificationWorkflow(backend, report_id="R9")
    await wf.mount()
    assert not wf.in_batch
    assert wf.session.selected_id == "R9"

    outcome = await wf.submit()
    assert outcome.navigate_to == ROUTE_VERIFIED
    assert wf.exit_to == ROUTE_VERIFIED


@pytest.mark.asyncio
async def test_defer_leaves_status_untouched(backend):
    _batch(backend, "R1")
    wf = VerificationWorkflow(backend, batch_id="B1")
    await wf.mount()
    await wf.defer()
    assert wf.exit_to == ROUTE_DEFERRED
    assert wf.session.get("R1").status == "completed"
    assert not any(c[0] == "verify_report" for c in backend.calls)


@pytest.mark.asyncio
async def test_teardown_cancels_polling(backend):
    _batch(backend, "R1", status="processing")
    wf = VerificationWorkflow(backend, batch_id="B1", poll_interval_s=0.01)
    await wf.mount()
    assert wf.tracker.is_polling

    await wf.teardown()
    assert not wf.tracker.is_polling
    n = len(backend.calls)
    await asyncio.sleep(0.05)
    assert len(backend.calls) == n

@pytest.mark.asyncio
async def test_leaving_the_view_stops_polling(backend):
    _batch(backend, "R1", "R2", status="processing")
    wf = VerificationWorkflow(backend, batch_id="B1", poll_interval_s=0.01)
    await wf.mount()
    assert wf.tracker.is_polling

    await wf.submit()
    assert wf.tracker.is_polling
    outcome = await wf.submit()
    assert outcome.exhausted
    assert not wf.tracker.is_polling

    n = len(backend.calls)
    await asyncio.sleep(0.05)
    assert len(backend.calls) == n


@pytest.mark.asyncio
async def test_defer_stops_polling(backend):
    _batch(backend, "R1", status="processing")
    wf = VerificationWorkflow(backend, batch_id="B1", poll_interval_s=0.01)
    await wf.mount()
    await wf.defer()
    assert not wf.tracker.is_polling


@pytest.mark.asyncio
async def test_preview_failure_after_teardown_is_ignored(backend):
    _batch(backend, "R1", "R2")
    wf = VerificationWorkflow(backend, batch_id="B1")
    await wf.mount()

    async def slow_failure(rid):
        await asyncio.sleep(0.02)
        raise NetworkError("preview unavailable")

    backend.get_report_pdf = slow_failure
    pending = asyncio.ensure_future(wf.select("R2"))
    await asyncio.sleep(0.005)
    await wf.teardown()
    await pending

    assert wf.preview.error is None
    assert "preview unavailable" not in wf.errors


def test_requires_batch_or_report(backend):
    with pytest.raises(ValueError):
        VerificationWorkflow(backend)


def test_route_state_query_round_trip():
    route = RouteState(batch_id="B1", report_id="R2")
    assert route.to_query() == {"batchId": "B1", "reportId": "R2"}
    assert RouteState.from_query(route.to_query()) == route
    assert RouteState.from_query({"batch": ["B7"], "reportId": " "}) == RouteState(batch_id="B7")
    assert RouteState().to_query() == {}


@pytest.mark.parametrize("seconds, text", [(0, "0s"), (42, "42s"), (125, "2m 5s"), ("x", "-")])
def test_format_processing_time(seconds, text):
    assert format_processing_time(seconds) == text
