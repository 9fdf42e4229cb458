import asyncio
import threading
from typing import Any, Callable

import streamlit as st

# --- 1. Page Config ---
st.set_page_config(layout="wide", page_title="Lab Report Verification")

from apps.common.logging_config import configure_logging
from apps.common.settings import load_settings
from apps.review_ui.adapters import HttpReviewBackend
from services.verification.errors import ReviewError, UnauthorizedError
from services.verification.models import UI_FLAGS
from services.verification.session import LAB_FIELDS, PATIENT_FIELDS, group_by_category
from services.verification.workflow import RouteState, VerificationWorkflow, format_processing_time

configure_logging()
SETTINGS = load_settings()

FLAG_OPTIONS = [None, *UI_FLAGS]
TEST_COLUMNS = ("test_name", "result", "unit", "reference_range")


# --- Event loop owner ---
class LoopThread:
    """All workflow state lives on this loop; the page only submits work to it."""

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, name="review-loop", daemon=True)
        self.thread.start()

    def run(self, coro, timeout: float = 60.0):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call(self, fn: Callable[..., Any], *args: Any):
        async def _call():
            return fn(*args)
        return self.run(_call())


@st.cache_resource
def get_loop() -> LoopThread:
    return LoopThread()


def close_workflow() -> None:
    wf = st.session_state.pop("workflow", None)
    st.session_state.pop("workflow_key", None)
    if wf is None:
        return
    loop = get_loop()
    loop.run(wf.teardown())
    loop.run(wf.backend.aclose())


def get_workflow(route: RouteState) -> VerificationWorkflow:
    loop = get_loop()
    key = (route.batch_id, None if route.batch_id else route.report_id)
    wf = st.session_state.get("workflow")
    if wf is not None and st.session_state.get("workflow_key") == key:
        return wf

    if wf is not None:
        close_workflow()

    async def _open() -> VerificationWorkflow:
        backend = HttpReviewBackend.from_settings(SETTINGS)
        new_wf = VerificationWorkflow(
            backend,
            batch_id=route.batch_id,
            report_id=route.report_id,
            reviewer=st.session_state.get("reviewer_name") or SETTINGS.reviewer,
            poll_interval_s=SETTINGS.poll_interval_s,
            queue_per_page=SETTINGS.queue_per_page,
            files_per_page=SETTINGS.files_per_page,
        )
        await new_wf.mount()
        return new_wf

    wf = loop.run(_open())
    st.session_state.workflow = wf
    st.session_state.workflow_key = key
    return wf


def run_action(coro):
    try:
        return get_loop().run(coro)
    except UnauthorizedError as e:
        st.error(f"🔒 {e.user_message}")
        st.stop()
    except ReviewError as e:
        st.error(e.user_message)
    return None


# --- Main App ---
route = RouteState.from_query(st.query_params.to_dict())
st.title("🧪 Lab Report Verification")

if not route.batch_id and not route.report_id:
    st.info("Open this page with ?batchId=<id> or ?reportId=<id>.")
    st.stop()

# Sidebar
st.sidebar.header("Controls")
reviewer_name = st.sidebar.text_input("Reviewer", value=SETTINGS.reviewer, key="reviewer_name")

try:
    wf = get_workflow(route)
except UnauthorizedError as e:
    st.error(f"🔒 {e.user_message}")
    st.stop()
wf.submission.reviewer = reviewer_name or SETTINGS.reviewer

if wf.exit_to:
    close_workflow()
    st.success(f"Done. Continue at `{wf.exit_to}`.")
    st.stop()

for msg in wf.errors:
    st.warning(msg)


# --- Batch status ---
if wf.tracker is not None:
    auto = st.sidebar.toggle("Auto refresh", value=wf.tracker.auto_refresh)
    if auto != wf.tracker.auto_refresh:
        run_action(wf.set_auto_refresh(auto))
    if st.sidebar.button("🔄 Refresh"):
        run_action(wf.refresh())

    @st.fragment(run_every=SETTINGS.poll_interval_s if wf.tracker.is_polling else None)
    def status_panel():
        tracker = wf.tracker
        batch = tracker.batch
        if batch is None:
            st.info("Loading batch status...")
            return
        st.subheader(f"{batch.name or batch.id} · {batch.status.upper()}")
        st.progress(tracker.progress / 100, text=f"{batch.processed_reports}/{batch.total_reports} processed")
        c1, c2 = st.columns([3, 1])
        c1.markdown(f"**Failed:** {tracker.failed_count}")
        if tracker.failed_count and c2.button("↻ Retry failed"):
            run_action(wf.retry_failed())

    status_panel()

    pg = wf.paginator
    with st.sidebar.expander(f"Awaiting verification ({pg.queue_cursor.total})", expanded=True):
        for cand in pg.queue_items:
            label = f"{cand.filename} · {cand.summary.test_count} tests · {format_processing_time(cand.processing_time)}"
            if st.button(label, key=f"cand_{cand.id}", disabled=cand.id not in wf.session):
                run_action(wf.select(cand.id))
                st.query_params.update(wf.route.to_query())
                st.rerun()
        q1, q2, q3 = st.columns(3)
        if q1.button("◀", key="queue_prev", disabled=not pg.queue_cursor.has_prev):
            run_action(pg.prev_queue_page())
            st.rerun()
        q2.caption(f"{pg.queue_cursor.current_page}/{pg.queue_cursor.last_page}")
        if q3.button("▶", key="queue_next", disabled=not pg.queue_cursor.has_next):
            run_action(pg.next_queue_page())
            st.rerun()

    with st.sidebar.expander(f"All files ({pg.files_cursor.total})"):
        for fs in pg.file_items:
            line = f"`{fs.status}` {fs.filename}"
            if fs.error_message:
                line += f": {fs.error_message}"
            st.markdown(line)
        f1, f2, f3 = st.columns(3)
        if f1.button("◀", key="files_prev", disabled=not pg.files_cursor.has_prev):
            run_action(pg.prev_files_page())
            st.rerun()
        f2.caption(f"{pg.files_cursor.current_page}/{pg.files_cursor.last_page}")
        if f3.button("▶", key="files_next", disabled=not pg.files_cursor.has_next):
            run_action(pg.next_files_page())
            st.rerun()


# --- Workspace ---
report = wf.session.selected
if report is None:
    st.info("No report is ready for verification yet.")
    st.stop()

st.query_params.update(wf.route.to_query())
session = wf.session
loop = get_loop()


def _on_edit(kind: str, name: str, widget_key: str, test_id: str = "") -> None:
    value = st.session_state[widget_key]
    if kind == "patient":
        loop.call(session.update_patient_field, name, value)
    elif kind == "lab":
        loop.call(session.update_lab_field, name, value)
    else:
        loop.call(session.update_test_result, test_id, name, value)


col_doc, col_data = st.columns([1, 1])

with col_doc:
    st.subheader("Document")
    st.caption(f"{report.filename} · {report.status}")
    preview = wf.preview
    if preview.report_id == report.id and preview.content:
        st.download_button("⬇️ Download PDF", preview.content, file_name=report.filename or f"{report.id}.pdf")
    elif preview.error:
        st.error(preview.error)
    else:
        st.info("Loading preview...")

with col_data:
    editable = report.is_submittable
    st.subheader("Patient")
    for name in PATIENT_FIELDS:
        k = f"{report.id}:patient:{name}"
        st.text_input(name.replace("_", " ").title(), value=getattr(report.patient_info, name), key=k,
                      disabled=not editable, on_change=_on_edit, args=("patient", name, k))

    st.subheader("Lab")
    for name in LAB_FIELDS:
        k = f"{report.id}:lab:{name}"
        st.text_input(name.replace("_", " ").title(), value=getattr(report.lab_info, name), key=k,
                      disabled=not editable, on_change=_on_edit, args=("lab", name, k))

st.subheader("Test results")
for category, tests in group_by_category(report.test_results).items():
    st.markdown(f"**{category or 'UNCATEGORIZED'}**")
    for t in tests:
        cols = st.columns([3, 2, 2, 3, 2, 1])
        for col, name in zip(cols, TEST_COLUMNS):
            k = f"{report.id}:test:{t.id}:{name}"
            col.text_input(name, value=getattr(t, name), key=k, label_visibility="collapsed",
                           disabled=not editable, on_change=_on_edit, args=("test", name, k, t.id))
        fk = f"{report.id}:test:{t.id}:flag"
        cols[4].selectbox("flag", FLAG_OPTIONS, index=FLAG_OPTIONS.index(t.flag), key=fk,
                          format_func=lambda f: f or "-", label_visibility="collapsed",
                          disabled=not editable, on_change=_on_edit, args=("test", "flag", fk, t.id))
        if cols[5].button("🗑", key=f"rm_{t.id}", disabled=not editable):
            loop.call(session.remove_test_result, t.id)
            st.rerun()
    if st.button(f"+ Add test to {category}", key=f"add_{report.id}_{category}", disabled=not editable):
        loop.call(session.add_test_result, category)
        st.rerun()

with st.form(key=f"category_{report.id}", clear_on_submit=True):
    new_category = st.text_input("New category")
    if st.form_submit_button("+ Add category", disabled=not editable) and new_category.strip():
        loop.call(session.add_category, new_category)
        st.rerun()

st.markdown("---")
notes = st.text_area("Reviewer Notes", height=100, key=f"notes_{report.id}")
b1, b2, _ = st.columns([1, 1, 4])
if b1.button("🕒 Verify later", disabled=not wf.submission.can_submit):
    run_action(wf.defer())
    st.rerun()
if b2.button("✅ Submit verification", type="primary", disabled=not wf.submission.can_submit):
    outcome = run_action(wf.submit(notes))
    if outcome is not None and not outcome.ok:
        st.error(f"Verification failed: {outcome.error}")
    elif outcome is not None:
        st.toast(f"Verified: {report.filename}", icon="✅")
        st.rerun()
