from __future__ import annotations

import base64
import binascii
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Body, HTTPException, Query
from fastapi.responses import JSONResponse, Response

from services.ingestion.storage import Storage
from services.validation.schema_validation import collect_errors, validate_with_schema

VERIFIED_SCHEMA = "verified_report"

# report status -> per-file status shown in the file listing
_FILE_STATUS = {
    "pending": "pending",
    "processing": "processing",
    "completed": "completed",
    "verified": "processed",
    "failed": "failed",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _paginate(items: List[Any], page: int, per_page: int) -> Dict[str, Any]:
    per_page = max(1, per_page)
    total = len(items)
    last_page = max(1, math.ceil(total / per_page))
    start = (page - 1) * per_page
    return {
        "data": items[start : start + per_page],
        "total": total,
        "per_page": per_page,
        "current_page": page,
        "last_page": last_page,
    }


def aggregate_batch_status(statuses: List[str]) -> Dict[str, Any]:
    total = len(statuses)
    processed = sum(1 for s in statuses if s in ("completed", "verified"))
    failed = sum(1 for s in statuses if s == "failed")

    if total and processed + failed == total:
        agg = "failed" if failed == total else "completed"
    elif processed or failed or any(s == "processing" for s in statuses):
        agg = "processing"
    else:
        agg = "pending"

    return {"status": agg, "total_reports": total, "processed_reports": processed, "failed_reports": failed}


def summarize_extraction(extracted: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    ex = extracted or {}
    tests = ex.get("test_results") or []
    categories: List[str] = []
    for t in tests:
        c = (t or {}).get("category")
        if c and c not in categories:
            categories.append(c)
    return {
        "has_patient_info": bool(ex.get("patient_info")),
        "has_lab_info": bool(ex.get("lab_info")),
        "test_count": len(tests),
        "categories": categories,
    }


def create_batches_router(*, storage: Storage) -> APIRouter:
    router = APIRouter()

    def load_batch(batch_id: str) -> Dict[str, Any]:
        meta = storage.get_json_if_exists(key=f"batch_{batch_id}", name="batch.json")
        if not meta:
            raise HTTPException(status_code=404, detail="Batch not found.")
        return meta

    def load_report(report_id: str) -> Dict[str, Any]:
        doc = storage.get_json_if_exists(key=f"report_{report_id}", name="report.json")
        if not doc:
            raise HTTPException(status_code=404, detail="Report not found.")
        return doc

    def save_report(doc: Dict[str, Any]) -> None:
        storage.put_json_atomic(key=f"report_{doc['report']['id']}", obj=doc, name="report.json")

    def batch_reports(meta: Dict[str, Any]) -> List[Dict[str, Any]]:
        out = []
        for rid in meta.get("report_ids", []):
            doc = storage.get_json_if_exists(key=f"report_{rid}", name="report.json")
            if doc:
                out.append(doc)
        return out

    def refresh_batch(meta: Dict[str, Any]) -> Dict[str, Any]:
        docs = batch_reports(meta)
        agg = aggregate_batch_status([d["report"].get("status", "pending") for d in docs])
        if agg["status"] == "processing" and not meta.get("processing_started_at"):
            meta["processing_started_at"] = _now()
        if agg["status"] in ("completed", "failed"):
            meta.setdefault("processing_completed_at", _now())
        else:
            meta.pop("processing_completed_at", None)
        meta.update(agg)
        storage.put_json_atomic(key=f"batch_{meta['id']}", obj=meta, name="batch.json")
        return meta

    # --- Batch seeding (stands in for the upload pipeline) ---
    @router.post("/batches")
    def create_batch(body: Dict[str, Any] = Body(...)):
        batch_id = str(body.get("id") or uuid4())
        report_ids = []

        for f in body.get("files", []):
            rid = str(f.get("id") or uuid4())
            status = f.get("status", "completed")
            doc = {
                "report": {
                    "id": rid,
                    "batch_id": batch_id,
                    "original_filename": f.get("filename", f"{rid}.pdf"),
                    "status": status,
                    "error_message": f.get("error_message"),
                    "processing_time": f.get("processing_time", 0),
                    "processed_at": _now() if status in ("completed", "failed") else None,
                    "uploader": f.get("uploader") or body.get("uploader"),
                },
                "extracted_data": f.get("extracted_data"),
            }
            save_report(doc)

            if f.get("pdf_base64"):
                try:
                    blob = base64.b64decode(f["pdf_base64"], validate=True)
                except (binascii.Error, ValueError) as e:
                    raise HTTPException(status_code=400, detail=f"Invalid pdf_base64 for {rid}.") from e
                storage.put_bytes(key=f"report_{rid}", blob=blob, name="preview.pdf")
            report_ids.append(rid)

        meta = {
            "id": batch_id,
            "name": body.get("name") or f"Batch {batch_id[:8]}",
            "created_at": _now(),
            "report_ids": report_ids,
        }
        meta = refresh_batch(meta)
        return JSONResponse(status_code=201, content={"success": True, "data": meta})

    # --- Batch reads ---
    @router.get("/batches/{batch_id}/status")
    def batch_status(batch_id: str):
        meta = refresh_batch(load_batch(batch_id))
        return {"success": True, "data": {k: v for k, v in meta.items() if k != "report_ids"}}

    @router.get("/batches/{batch_id}/reports-for-verification")
    def reports_for_verification(
        batch_id: str,
        page: int = Query(1, ge=1),
        per_page: int = Query(10, ge=1, le=100),
    ):
        meta = load_batch(batch_id)
        pending = []
        for doc in batch_reports(meta):
            rep = doc["report"]
            if rep.get("status") != "completed":
                continue
            patient = (doc.get("extracted_data") or {}).get("patient_info") or None
            pending.append({
                "id": rep["id"],
                "original_filename": rep.get("original_filename"),
                "processed_at": rep.get("processed_at"),
                "processing_time": rep.get("processing_time", 0),
                "extracted_data_summary": summarize_extraction(doc.get("extracted_data")),
                "patient": (
                    {"id": patient.get("patient_id", ""), "name": patient.get("name", ""), "patient_id": patient.get("patient_id", "")}
                    if patient else None
                ),
                "batch": {"id": meta["id"], "name": meta.get("name")},
                "uploader": rep.get("uploader"),
            })
        return _paginate(pending, page, per_page)

    @router.get("/batches/{batch_id}/files")
    def batch_files(
        batch_id: str,
        page: int = Query(1, ge=1),
        per_page: int = Query(20, ge=1, le=100),
    ):
        meta = load_batch(batch_id)
        files = [
            {
                "id": d["report"]["id"],
                "filename": d["report"].get("original_filename"),
                "status": _FILE_STATUS.get(d["report"].get("status"), "pending"),
                "error_message": d["report"].get("error_message"),
                "processed_at": d["report"].get("processed_at"),
            }
            for d in batch_reports(meta)
        ]
        return _paginate(files, page, per_page)

    @router.post("/batches/{batch_id}/retry-failed")
    def retry_failed(batch_id: str):
        meta = load_batch(batch_id)
        retried = 0
        for doc in batch_reports(meta):
            if doc["report"].get("status") == "failed":
                doc["report"]["status"] = "pending"
                doc["report"]["error_message"] = None
                save_report(doc)
                retried += 1
        refresh_batch(meta)
        return {"success": True, "retried": retried}

    # --- Reports ---
    @router.get("/reports/{report_id}")
    def get_report(report_id: str):
        doc = load_report(report_id)
        return {"success": True, "data": {"report": doc["report"], "extracted_data": doc.get("extracted_data")}}

    @router.put("/reports/{report_id}/result")
    def put_processing_result(report_id: str, body: Dict[str, Any] = Body(...)):
        # upstream pipeline callback: a file finished (or failed) processing
        doc = load_report(report_id)
        status = body.get("status", "completed")
        if status not in ("processing", "completed", "failed"):
            raise HTTPException(status_code=400, detail="Invalid processing status.")
        doc["report"]["status"] = status
        doc["report"]["error_message"] = body.get("error_message")
        if "processing_time" in body:
            doc["report"]["processing_time"] = body["processing_time"]
        if status != "processing":
            doc["report"]["processed_at"] = _now()
        if "extracted_data" in body:
            doc["extracted_data"] = body["extracted_data"]
        save_report(doc)
        return {"success": True}

    @router.post("/reports/{report_id}/verify")
    def verify_report(report_id: str, body: Dict[str, Any] = Body(...)):
        doc = load_report(report_id)
        if doc["report"].get("status") not in ("completed", "verified"):
            return JSONResponse(
                status_code=422,
                content={"message": "Report is not ready for verification.", "errors": {}},
            )

        verified = body.get("verified_data")
        ok, message = validate_with_schema(verified if isinstance(verified, dict) else {}, VERIFIED_SCHEMA)
        if not ok:
            errors = collect_errors(verified if isinstance(verified, dict) else {}, VERIFIED_SCHEMA)
            return JSONResponse(
                status_code=422,
                content={
                    "message": "The given data was invalid.",
                    "errors": {f"verified_data.{k}": v for k, v in errors.items()} or {"verified_data": [message]},
                },
            )

        # no version check: the last accepted write wins
        doc["verified_data"] = verified
        doc["notes"] = body.get("notes")
        doc["report"]["status"] = "verified"
        doc["report"]["verified_at"] = _now()
        save_report(doc)
        return {"success": True, "message": "Report verified successfully"}

    @router.get("/reports/{report_id}/pdf")
    def report_pdf(report_id: str):
        load_report(report_id)
        blob = storage.get_bytes_if_exists(key=f"report_{report_id}", name="preview.pdf")
        if blob is None:
            raise HTTPException(status_code=404, detail="Preview not available.")
        return Response(content=blob, media_type="application/pdf")

    return router
