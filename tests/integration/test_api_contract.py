# tests/integration/test_api_contract.py
from __future__ import annotations

import base64

import pytest
from fastapi.testclient import TestClient

from apps.api.app_factory import create_app
from services.ingestion.storage import LocalStorage

from conftest import make_envelope

TOKEN = "t0ken"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


def _file(rid: str, status: str = "completed", **extra):
    env = make_envelope(rid)
    return {"id": rid, "filename": f"{rid}.pdf", "status": status, "extracted_data": env["extracted_data"], **extra}


@pytest.fixture
def client(tmp_path):
    app = create_app(storage=LocalStorage(str(tmp_path / "store")), api_token=TOKEN)
    return TestClient(app)


def _seed(client, files, batch_id="B1"):
    r = client.post("/api/batches", json={"id": batch_id, "name": "Morning run", "files": files}, headers=AUTH)
    assert r.status_code == 201
    return r.json()["data"]


def test_health_is_public(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_missing_or_wrong_token_is_401(client):
    r = client.get("/api/batches/B1/status")
    assert r.status_code == 401
    assert r.json() == {"message": "Unauthenticated."}
    r = client.get("/api/batches/B1/status", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


def test_unknown_batch_is_404_with_message(client):
    r = client.get("/api/batches/nope/status", headers=AUTH)
    assert r.status_code == 404
    assert r.json()["message"] == "Batch not found."


def test_status_aggregates_report_states(client):
    _seed(client, [_file("R1"), _file("R2", status="failed", error_message="unreadable"), _file("R3", status="processing")])
    r = client.get("/api/batches/B1/status", headers=AUTH)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "processing"
    assert (data["total_reports"], data["processed_reports"], data["failed_reports"]) == (3, 1, 1)
    assert data["processing_started_at"]
    assert "report_ids" not in data


def test_pipeline_callback_completes_the_batch(client):
    _seed(client, [_file("R1"), _file("R2", status="processing")])
    r = client.put("/api/reports/R2/result", json={"status": "completed", "processing_time": 7}, headers=AUTH)
    assert r.status_code == 200
    data = client.get("/api/batches/B1/status", headers=AUTH).json()["data"]
    assert data["status"] == "completed"
    assert data["processing_completed_at"]


def test_queue_lists_completed_reports_paged(client):
    _seed(client, [_file("R1"), _file("R2"), _file("R3"), _file("R4", status="failed")])
    r = client.get("/api/batches/B1/reports-for-verification", params={"page": 2, "per_page": 2}, headers=AUTH)
    assert r.status_code == 200
    body = r.json()
    assert [c["id"] for c in body["data"]] == ["R3"]
    assert (body["current_page"], body["last_page"], body["total"], body["per_page"]) == (2, 2, 3, 2)

    cand = body["data"][0]
    assert cand["extracted_data_summary"] == {
        "has_patient_info": True,
        "has_lab_info": True,
        "test_count": 2,
        "categories": ["BIOCHEMISTRY", "HEMATOLOGY"],
    }
    assert cand["patient"]["name"] == "Jane Smith"
    assert cand["batch"] == {"id": "B1", "name": "Morning run"}


def test_files_listing_and_retry_failed(client):
    _seed(client, [_file("R1"), _file("R2", status="failed", error_message="unreadable")])
    files = client.get("/api/batches/B1/files", headers=AUTH).json()["data"]
    assert [(f["id"], f["status"], f["error_message"]) for f in files] == [
        ("R1", "completed", None),
        ("R2", "failed", "unreadable"),
    ]

    r = client.post("/api/batches/B1/retry-failed", headers=AUTH)
    assert r.json() == {"success": True, "retried": 1}
    data = client.get("/api/batches/B1/status", headers=AUTH).json()["data"]
    assert data["failed_reports"] == 0
    assert data["status"] == "processing"


def test_get_report_envelope(client):
    _seed(client, [_file("R1")])
    body = client.get("/api/reports/R1", headers=AUTH).json()
    assert body["success"] is True
    assert body["data"]["report"]["original_filename"] == "R1.pdf"
    assert body["data"]["extracted_data"]["raw_text"] == "GLUCOSE 6.5 H"


def _verified_data(**patient):
    return {
        "patient_info": {"name": "Jane Smith", "patient_id": "PT001", "age": "45 Y", "gender": "Female", "phone": "", **patient},
        "lab_info": {
            "lab_id": "LT001", "requested_by": "", "requested_date": "",
            "collected_date": "", "analysis_date": "", "validated_by": "",
        },
        "test_results": [
            {"id": "R1_0", "category": "BIOCHEMISTRY", "test_name": "Glucose", "result": "6.5",
             "unit": "mmol/L", "reference_range": "(3.9-6.1)", "flag": "H"},
        ],
    }


def test_verify_rejects_invalid_data_with_field_errors(client):
    _seed(client, [_file("R1")])
    r = client.post("/api/reports/R1/verify", json={"verified_data": _verified_data(name=""), "notes": ""}, headers=AUTH)
    assert r.status_code == 422
    body = r.json()
    assert body["message"] == "The given data was invalid."
    assert "verified_data.patient_info.name" in body["errors"]

    doc = client.get("/api/reports/R1", headers=AUTH).json()["data"]
    assert doc["report"]["status"] == "completed"


def test_verify_rejects_reports_still_processing(client):
    _seed(client, [_file("R1", status="processing")])
    r = client.post("/api/reports/R1/verify", json={"verified_data": _verified_data()}, headers=AUTH)
    assert r.status_code == 422
    assert r.json()["message"] == "Report is not ready for verification."


def test_verify_marks_report_and_leaves_queue(client):
    _seed(client, [_file("R1"), _file("R2")])
    r = client.post(
        "/api/reports/R1/verify",
        json={"verified_data": _verified_data(), "notes": "Verified by analyst at 2024-01-01T00:00:00+00:00"},
        headers=AUTH,
    )
    assert r.status_code == 200
    assert r.json() == {"success": True, "message": "Report verified successfully"}

    report = client.get("/api/reports/R1", headers=AUTH).json()["data"]["report"]
    assert report["status"] == "verified"
    assert report["verified_at"]

    queue = client.get("/api/batches/B1/reports-for-verification", headers=AUTH).json()
    assert [c["id"] for c in queue["data"]] == ["R2"]
    files = client.get("/api/batches/B1/files", headers=AUTH).json()["data"]
    assert files[0]["status"] == "processed"


def test_pdf_preview(client):
    pdf = b"%PDF-1.4 fake"
    _seed(client, [_file("R1", pdf_base64=base64.b64encode(pdf).decode()), _file("R2")])
    r = client.get("/api/reports/R1/pdf", headers=AUTH)
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/pdf"
    assert r.content == pdf

    r = client.get("/api/reports/R2/pdf", headers=AUTH)
    assert r.status_code == 404
    assert r.json()["message"] == "Preview not available."


def test_bad_pdf_payload_is_400(client):
    r = client.post(
        "/api/batches",
        json={"id": "B2", "files": [_file("R1", pdf_base64="***")]},
        headers=AUTH,
    )
    assert r.status_code == 400
