"""Тесты HTTP API (FastAPI TestClient, поддельные коллабораторы)."""

import threading
import time

import pytest
from fastapi.testclient import TestClient

from conftest import PDF_BYTES, PNG_BYTES
from ocr_jobs.main import create_app
from ocr_jobs.services.job_service import JobService


@pytest.fixture
def client(store, executor, config):
    service = JobService(store, executor, config)
    with TestClient(create_app(service)) as client:
        yield client


def poll_until_done(client, job_id, timeout=10.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/jobs/{job_id}/status").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"Задача {job_id} не завершилась")


def test_submit_image_and_get_result(client):
    response = client.post(
        "/jobs",
        files={"file": ("photo.png", PNG_BYTES, "image/png")},
        data={"language": "eng"},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    job_id = body["jobId"]

    status = poll_until_done(client, job_id)
    assert status["status"] == "completed"
    assert status["id"] == job_id
    assert "createdAt" in status and "updatedAt" in status

    result = client.get(f"/jobs/{job_id}/result")
    assert result.status_code == 200
    data = result.json()
    assert data["text"] == "Hello OCR"
    assert data["sourceName"] == "photo.png"
    assert data["extractionMethod"] == "ocr"
    assert data["pages"][0]["pageNumber"] == 1
    assert data["accessibility"] == {
        "altText": "Hello OCR",
        "hasText": True,
        "languageDetected": "eng",
    }


def test_alt_text_truncated_to_200_chars(client, adapter):
    adapter.image_text = "line one\n" + "x" * 300

    job_id = client.post(
        "/jobs", files={"file": ("photo.png", PNG_BYTES, "image/png")}
    ).json()["jobId"]
    poll_until_done(client, job_id)

    alt_text = client.get(f"/jobs/{job_id}/result").json()["accessibility"]["altText"]
    assert alt_text.startswith("line one x")
    assert alt_text.endswith("...")
    assert len(alt_text) == 203


def test_submit_with_summary(client, summarizer):
    job_id = client.post(
        "/jobs",
        files={"file": ("photo.png", PNG_BYTES, "image/png")},
        data={"summarize": "true"},
    ).json()["jobId"]
    poll_until_done(client, job_id)

    assert client.get(f"/jobs/{job_id}/result").json()["summary"] == summarizer.answer


def test_submit_without_file_or_url_is_400(client):
    response = client.post("/jobs", data={"language": "eng"})

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_input"


def test_submit_unsupported_type_is_400(client):
    response = client.post(
        "/jobs",
        files={"file": ("setup.exe", b"MZ\x90\x00", "application/octet-stream")},
    )

    assert response.status_code == 400
    assert "message" in response.json()


def test_unknown_job_is_404(client):
    assert client.get("/jobs/nope/status").status_code == 404
    assert client.get("/jobs/nope/result").status_code == 404


def test_result_before_completion_is_409(client, adapter):
    gate = threading.Event()
    adapter.gate = gate
    job_id = client.post(
        "/jobs", files={"file": ("photo.png", PNG_BYTES, "image/png")}
    ).json()["jobId"]

    try:
        response = client.get(f"/jobs/{job_id}/result")
        assert response.status_code == 409
        assert response.json()["status"] in ("pending", "processing")
        assert client.get(f"/jobs/{job_id}/status").status_code == 200
    finally:
        gate.set()

    poll_until_done(client, job_id)


def test_failed_job_exposes_reason_only_in_status(client, adapter):
    adapter.page_texts = ["a", "b"]
    adapter.fail_page = 2
    job_id = client.post(
        "/jobs", files={"file": ("scan.pdf", PDF_BYTES, "application/pdf")}
    ).json()["jobId"]

    status = poll_until_done(client, job_id)

    assert status["status"] == "failed"
    assert status["error"]
    assert client.get(f"/jobs/{job_id}/result").status_code == 409


def test_languages(client):
    response = client.get("/languages")

    assert response.status_code == 200
    assert {"code": "eng", "name": "English"} in response.json()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["service"] == "ocr-jobs"
    assert body["status"] in ("ok", "degraded")


def test_submit_url_flags_from_query_string(client, monkeypatch):
    calls = []

    def fake_submit_url(url, language=None, want_summary=False):
        calls.append((url, language, want_summary))
        return "job-from-query"

    monkeypatch.setattr(client.app.state.job_service, "submit_url", fake_submit_url)

    response = client.post(
        "/jobs", params={"url": "https://e.com/a.pdf", "summarize": "true", "language": "deu"}
    )

    assert response.status_code == 202
    assert response.json()["jobId"] == "job-from-query"
    assert calls == [("https://e.com/a.pdf", "deu", True)]


def test_form_flags_take_precedence_over_query(client, monkeypatch):
    calls = []

    def fake_submit_url(url, language=None, want_summary=False):
        calls.append((url, language, want_summary))
        return "job-from-form"

    monkeypatch.setattr(client.app.state.job_service, "submit_url", fake_submit_url)

    response = client.post(
        "/jobs",
        params={"language": "deu", "summarize": "true"},
        data={"url": "https://e.com/a.pdf", "language": "rus", "summarize": "false"},
    )

    assert response.status_code == 202
    assert calls == [("https://e.com/a.pdf", "rus", False)]
