"""Тесты сервиса задач: постановка, классификация, статус и результат."""

import threading
import time

import httpx
import pytest

from conftest import PDF_BYTES, PNG_BYTES, wait_for_terminal
from ocr_jobs.errors import InvalidInput, JobNotFound, JobNotReady
from ocr_jobs.schemas import DocumentKind, JobStatus
from ocr_jobs.services.job_service import classify_document


@pytest.mark.parametrize(
    "filename, content, content_type, expected",
    [
        ("scan.bin", PDF_BYTES, None, DocumentKind.PDF),
        ("photo.bin", PNG_BYTES, None, DocumentKind.IMAGE),
        ("photo.jpg", b"\xff\xd8\xff\xe0rest", None, DocumentKind.IMAGE),
        ("noext", b"data", "application/pdf", DocumentKind.PDF),
        ("picture.TIFF", b"data", None, DocumentKind.IMAGE),
        ("setup.exe", b"MZ\x90\x00", "application/octet-stream", DocumentKind.UNSUPPORTED),
        ("notes.txt", b"hello", "text/plain", DocumentKind.UNSUPPORTED),
    ],
)
def test_classify_document(filename, content, content_type, expected):
    assert classify_document(filename, content, content_type) == expected


def test_submit_returns_before_completion(service, adapter):
    gate = threading.Event()
    adapter.gate = gate

    job_id = service.submit("image.png", PNG_BYTES, language="eng")

    try:
        assert service.get_status(job_id).status in (JobStatus.PENDING, JobStatus.PROCESSING)
    finally:
        gate.set()

    wait_for_terminal(service, job_id)
    assert service.get_status(job_id).status == JobStatus.COMPLETED


def test_png_scenario(service):
    job_id = service.submit("image.png", PNG_BYTES, language="eng")

    observed = wait_for_terminal(service, job_id)

    result = service.get_result(job_id)
    assert observed[-1] == JobStatus.COMPLETED
    assert len(result.pages) == 1
    assert result.pages[0].page_number == 1
    assert result.aggregated_text == result.pages[0].text
    assert result.language == "eng"
    assert result.source_name == "image.png"


def test_status_sequence_is_monotonic(service, adapter):
    adapter.page_texts = ["a", "b", "c"]
    adapter.page_delays = {1: 0.05, 2: 0.05, 3: 0.05}

    job_id = service.submit("scan.pdf", PDF_BYTES)
    observed = wait_for_terminal(service, job_id)

    order = [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED]
    assert observed == [s for s in order if s in observed]


def test_scanned_pdf_scenario(service, adapter):
    adapter.page_texts = ["one", "two", "three"]

    job_id = service.submit("scan.pdf", PDF_BYTES)
    wait_for_terminal(service, job_id)

    result = service.get_result(job_id)
    assert [p.page_number for p in result.pages] == [1, 2, 3]
    assert result.aggregated_text == "one\n\ntwo\n\nthree"


def test_default_language_applied(service, config):
    job_id = service.submit("image.png", PNG_BYTES)
    wait_for_terminal(service, job_id)

    assert service.get_result(job_id).language == config.default_language


def test_unsupported_type_rejected_without_record(service, store):
    with pytest.raises(InvalidInput):
        service.submit("setup.exe", b"MZ\x90\x00binary")

    assert store._jobs == {}


def test_empty_file_rejected(service):
    with pytest.raises(InvalidInput):
        service.submit("image.png", b"")


def test_oversized_file_rejected(service, config):
    content = PNG_BYTES + b"\x00" * (config.max_file_size_mb * 1024 * 1024)

    with pytest.raises(InvalidInput, match="слишком большой"):
        service.submit("image.png", content)


@pytest.mark.parametrize("language", ["eng; rm -rf /", "ENG", "e", "eng+"])
def test_invalid_language_rejected(service, language):
    with pytest.raises(InvalidInput):
        service.submit("image.png", PNG_BYTES, language=language)


def test_multi_language_accepted(service):
    job_id = service.submit("image.png", PNG_BYTES, language="rus+eng")
    wait_for_terminal(service, job_id)

    assert service.get_result(job_id).language == "rus+eng"


def test_result_not_ready_while_processing(service, adapter):
    gate = threading.Event()
    adapter.gate = gate
    job_id = service.submit("image.png", PNG_BYTES)

    try:
        # Дожидаемся захвата задачи исполнителем
        while service.get_status(job_id).status == JobStatus.PENDING:
            time.sleep(0.01)
        assert service.get_status(job_id).status == JobStatus.PROCESSING
        with pytest.raises(JobNotReady) as exc_info:
            service.get_result(job_id)
        assert exc_info.value.status == "processing"
    finally:
        gate.set()

    wait_for_terminal(service, job_id)


def test_failed_job_result_not_ready_reason_in_status(service, adapter):
    adapter.page_texts = ["a", "b"]
    adapter.fail_page = 1
    job_id = service.submit("scan.pdf", PDF_BYTES)

    wait_for_terminal(service, job_id)

    status = service.get_status(job_id)
    assert status.status == JobStatus.FAILED
    assert status.error
    with pytest.raises(JobNotReady):
        service.get_result(job_id)


def test_repeated_reads_are_identical(service):
    job_id = service.submit("image.png", PNG_BYTES)
    wait_for_terminal(service, job_id)

    assert service.get_result(job_id) == service.get_result(job_id)
    assert service.get_status(job_id) == service.get_status(job_id)


def test_unknown_job_not_found(service):
    with pytest.raises(JobNotFound):
        service.get_status("missing")
    with pytest.raises(JobNotFound):
        service.get_result("missing")


def test_uploaded_file_stored_under_job_id_until_terminal(service, store, config, adapter):
    gate = threading.Event()
    adapter.gate = gate
    job_id = service.submit("image.png", PNG_BYTES)
    upload = config.upload_dir / f"{job_id}.png"

    try:
        assert store.get(job_id).document_path.endswith(f"{job_id}.png")
        assert upload.read_bytes() == PNG_BYTES
    finally:
        gate.set()

    wait_for_terminal(service, job_id)
    # Файл удаляется сразу после терминального перехода
    deadline = time.monotonic() + 5
    while upload.exists() and time.monotonic() < deadline:
        time.sleep(0.01)
    assert not upload.exists()


def test_submit_url_uses_url_as_source(service):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

    url = "https://example.com/files/scan.png"
    job_id = service.submit_url(url, transport=httpx.MockTransport(handler))
    wait_for_terminal(service, job_id)

    result = service.get_result(job_id)
    assert result.source_name == url
    assert result.document_kind == DocumentKind.IMAGE


def test_submit_url_network_error_is_invalid_input(service):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(InvalidInput):
        service.submit_url("https://example.com/a.pdf", transport=httpx.MockTransport(handler))


def test_submit_url_http_error_is_invalid_input(service):
    transport = httpx.MockTransport(lambda request: httpx.Response(404))

    with pytest.raises(InvalidInput, match="404"):
        service.submit_url("https://example.com/a.pdf", transport=transport)


@pytest.mark.parametrize("url", ["ftp://example.com/a.pdf", "not a url", "file:///etc/passwd"])
def test_submit_url_rejects_non_http(service, url):
    with pytest.raises(InvalidInput):
        service.submit_url(url)


def test_languages_listed(service):
    codes = [lang.code for lang in service.languages()]

    assert "eng" in codes
    assert "chi_sim" in codes
    assert len(codes) == 12
