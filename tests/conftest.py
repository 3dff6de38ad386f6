"""
Общие фикстуры тестов: настройки, поддельные коллабораторы, сервис.

Поддельный адаптер не требует Tesseract/poppler: страницы «рендерятся»
во временные файлы, а текст каждой страницы задаётся в тесте.
"""

import threading
import time
from pathlib import Path
from typing import Optional

import pytest

from ocr_jobs.config import Settings
from ocr_jobs.errors import RecognitionFailure
from ocr_jobs.schemas import PageExtraction, TERMINAL_STATUSES
from ocr_jobs.services.job_service import JobService
from ocr_jobs.services.job_store import InMemoryJobStore
from ocr_jobs.services.pipeline import PipelineExecutor

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
PDF_BYTES = b"%PDF-1.4\n" + b"\x00" * 32


class FakeAdapter:
    """
    Поддельный адаптер извлечения.

    Args:
        render_dir: папка для «отрендеренных» страниц
        image_text: текст, возвращаемый для одиночного изображения
        page_texts: тексты страниц сканированного PDF (по порядку)
        text_layer: результат извлечения текстового слоя (None = недостаточен)
        page_delays: задержка распознавания по номеру страницы
        fail_page: номер страницы, на которой OCR падает
        gate: событие, которого ждёт extract_page перед возвратом
        render_gate: событие, которого ждёт render_pages перед каждой страницей
    """

    def __init__(
        self,
        render_dir: Path,
        image_text: str = "Hello OCR",
        page_texts: Optional[list[str]] = None,
        text_layer: Optional[str] = None,
        page_delays: Optional[dict[int, float]] = None,
        fail_page: Optional[int] = None,
        gate: Optional[threading.Event] = None,
        render_gate: Optional[threading.Event] = None,
    ):
        self.render_dir = render_dir
        self.image_text = image_text
        self.page_texts = page_texts or []
        self.text_layer = text_layer
        self.page_delays = page_delays or {}
        self.fail_page = fail_page
        self.gate = gate
        self.render_gate = render_gate

        self.rendered: list[Path] = []
        self.extract_calls: list[str] = []
        self.text_layer_calls = 0
        self.render_calls = 0
        self._lock = threading.Lock()

    def extract_page(self, image_path, language: str) -> PageExtraction:
        with self._lock:
            self.extract_calls.append(str(image_path))

        if self.gate is not None:
            self.gate.wait(timeout=10)

        name = Path(image_path).stem
        if name.startswith("page-"):
            page_number = int(name.split("-")[1])
            time.sleep(self.page_delays.get(page_number, 0))
            if page_number == self.fail_page:
                raise RecognitionFailure(f"Сбой распознавания страницы {page_number}")
            text = self.page_texts[page_number - 1]
        else:
            text = self.image_text

        return PageExtraction(
            text=text,
            metadata={"confidence": 91.0, "width": 100, "height": 200, "language": language},
        )

    def extract_document_text_layer(self, document_path) -> Optional[str]:
        self.text_layer_calls += 1
        return self.text_layer

    def render_pages(self, document_path):
        self.render_calls += 1
        self.render_dir.mkdir(parents=True, exist_ok=True)
        for page_number in range(1, len(self.page_texts) + 1):
            if self.render_gate is not None:
                self.render_gate.wait(timeout=10)
            path = self.render_dir / f"page-{page_number}.png"
            path.write_bytes(PNG_BYTES)
            self.rendered.append(path)
            yield path


class RecordingSummarizer:
    """Суммаризатор, возвращающий фиксированный ответ и запоминающий промпты."""

    def __init__(self, answer: str = "Краткое описание документа"):
        self.answer = answer
        self.prompts: list[str] = []

    def summarize(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answer


class FailingSummarizer:
    """Суммаризатор, который падает при каждом вызове."""

    def __init__(self):
        self.calls = 0

    def summarize(self, prompt: str) -> str:
        self.calls += 1
        raise RuntimeError("LLM недоступна")


def wait_for_terminal(service: JobService, job_id: str, timeout: float = 10.0):
    """Опрашивает статус, пока задача не перейдёт в терминальный статус."""
    observed = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = service.get_status(job_id).status
        if not observed or observed[-1] != status:
            observed.append(status)
        if status in TERMINAL_STATUSES:
            return observed
        time.sleep(0.01)
    raise AssertionError(f"Задача {job_id} не завершилась за {timeout} с: {observed}")


@pytest.fixture
def config(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        store_backend="memory",
        database_path=tmp_path / "jobs.sqlite",
        upload_dir=tmp_path / "uploads",
        job_workers=2,
        page_workers=3,
        job_timeout_seconds=10.0,
        max_file_size_mb=1,
        summary_prompt_chars=4000,
        openai_api_key=None,
    )


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def adapter(tmp_path) -> FakeAdapter:
    return FakeAdapter(render_dir=tmp_path / "rendered")


@pytest.fixture
def summarizer() -> RecordingSummarizer:
    return RecordingSummarizer()


@pytest.fixture
def executor(store, adapter, summarizer, config):
    executor = PipelineExecutor(store, adapter, summarizer=summarizer, config=config)
    yield executor
    executor.shutdown(wait=False)


@pytest.fixture
def service(store, executor, config):
    service = JobService(store, executor, config)
    service.start()
    yield service
    service.shutdown()
