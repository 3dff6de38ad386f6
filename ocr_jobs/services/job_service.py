"""
Job Service — публичные операции над задачами.

    submit / submit_url — валидация, сохранение файла, задача pending,
                          постановка исполнителя в пул без ожидания
    get_status          — статус и время изменений
    get_result          — полный результат (только для completed)
    languages           — список поддерживаемых языков
"""

import logging
import re
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path, PurePath
from typing import Optional

import httpx

from ocr_jobs.config import Settings, settings as default_settings
from ocr_jobs.errors import InvalidInput, JobNotReady
from ocr_jobs.schemas import (
    DocumentKind,
    Job,
    JobPatch,
    JobStatus,
    JobStatusResponse,
    Language,
)
from ocr_jobs.services.extraction import ExtractionAdapter
from ocr_jobs.services.fetcher import fetch_remote
from ocr_jobs.services.job_store import JobStore, create_store
from ocr_jobs.services.pipeline import PipelineExecutor
from ocr_jobs.services.summarizer import Summarizer

logger = logging.getLogger(__name__)

# Tesseract поддерживает эти и многие другие языки
SUPPORTED_LANGUAGES = [
    Language(code="eng", name="English"),
    Language(code="fra", name="French"),
    Language(code="deu", name="German"),
    Language(code="spa", name="Spanish"),
    Language(code="ita", name="Italian"),
    Language(code="chi_sim", name="Chinese Simplified"),
    Language(code="chi_tra", name="Chinese Traditional"),
    Language(code="jpn", name="Japanese"),
    Language(code="kor", name="Korean"),
    Language(code="rus", name="Russian"),
    Language(code="ara", name="Arabic"),
    Language(code="hin", name="Hindi"),
]

# Один или несколько кодов Tesseract через "+": "eng", "rus+eng", "chi_sim"
_LANGUAGE_RE = re.compile(r"^[a-z][a-z_]{1,15}(\+[a-z][a-z_]{1,15})*$")

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".gif", ".webp"}

_MAGIC_SIGNATURES = [
    (b"%PDF", DocumentKind.PDF),
    (b"\x89PNG\r\n\x1a\n", DocumentKind.IMAGE),
    (b"\xff\xd8\xff", DocumentKind.IMAGE),
    (b"GIF87a", DocumentKind.IMAGE),
    (b"GIF89a", DocumentKind.IMAGE),
    (b"II*\x00", DocumentKind.IMAGE),
    (b"MM\x00*", DocumentKind.IMAGE),
    (b"BM", DocumentKind.IMAGE),
]


def classify_document(
    filename: str,
    content: bytes,
    content_type: Optional[str] = None,
) -> DocumentKind:
    """
    Определяет тип документа.

    Приоритет:
        1. Сигнатура содержимого (%PDF, PNG, JPEG, GIF, TIFF, BMP, WEBP)
        2. Content-Type
        3. Расширение файла

    Returns:
        DocumentKind: IMAGE, PDF или UNSUPPORTED
    """
    for signature, kind in _MAGIC_SIGNATURES:
        if content.startswith(signature):
            return kind
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return DocumentKind.IMAGE

    if content_type == "application/pdf":
        return DocumentKind.PDF
    if content_type and content_type.startswith("image/"):
        return DocumentKind.IMAGE

    extension = PurePath(filename).suffix.lower()
    if extension == ".pdf":
        return DocumentKind.PDF
    if extension in IMAGE_EXTENSIONS:
        return DocumentKind.IMAGE

    return DocumentKind.UNSUPPORTED


class JobService:
    """
    Сервис задач OCR.

    Args:
        store: хранилище задач (открывается в start(), закрывается в shutdown())
        executor: исполнитель пайплайна
        config: настройки (лимиты, папка загрузок, размер пула задач)
    """

    def __init__(
        self,
        store: JobStore,
        executor: PipelineExecutor,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.executor = executor
        self.config = config or default_settings
        self._pool: Optional[ThreadPoolExecutor] = None

    def start(self) -> None:
        """Открывает хранилище и пул исполнителей задач."""
        self.store.open()
        Path(self.config.upload_dir).mkdir(parents=True, exist_ok=True)
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.job_workers,
            thread_name_prefix="ocr-job",
        )
        logger.info(f"Сервис задач запущен: workers={self.config.job_workers}")

    def shutdown(self, wait: bool = True) -> None:
        """Дожидается выполняющихся задач и закрывает хранилище."""
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
        self.executor.shutdown(wait=wait)
        self.store.close()
        logger.info("Сервис задач остановлен")

    # -------------------------------------------------------------------------
    # Постановка задач
    # -------------------------------------------------------------------------

    def submit(
        self,
        filename: str,
        content: bytes,
        language: Optional[str] = None,
        want_summary: bool = False,
        content_type: Optional[str] = None,
        source_name: Optional[str] = None,
    ) -> str:
        """
        Создаёт задачу pending и ставит её в очередь, не дожидаясь обработки.

        Args:
            filename: исходное имя файла (для расширения)
            content: содержимое файла
            language: язык Tesseract, по умолчанию default_language
            want_summary: запросить описание у LLM
            content_type: заявленный Content-Type
            source_name: что показывать как источник (имя файла или URL)

        Returns:
            str: идентификатор задачи

        Raises:
            InvalidInput: пустой/слишком большой файл, неподдерживаемый тип,
                некорректный язык
        """
        language = self._validate_language(language)

        if not content:
            raise InvalidInput("Файл пустой")

        max_size = self.config.max_file_size_mb * 1024 * 1024
        if len(content) > max_size:
            raise InvalidInput(
                f"Файл слишком большой: {len(content)} байт, "
                f"максимум: {self.config.max_file_size_mb} МБ"
            )

        kind = classify_document(filename, content, content_type)
        if kind == DocumentKind.UNSUPPORTED:
            raise InvalidInput(
                f"Неподдерживаемый тип файла: {filename} ({content_type or 'unknown'})"
            )

        if self._pool is None:
            raise RuntimeError("Сервис задач не запущен: вызовите start()")

        job_id = uuid.uuid4().hex
        extension = PurePath(filename).suffix.lower() or (
            ".pdf" if kind == DocumentKind.PDF else ".img"
        )
        document_path = Path(self.config.upload_dir) / f"{job_id}{extension}"
        document_path.write_bytes(content)

        job = Job(
            id=job_id,
            source_name=source_name or filename,
            language=language,
            document_path=str(document_path),
            document_kind=kind,
            want_summary=want_summary,
        )

        try:
            self.store.create(job)
        except Exception:
            document_path.unlink(missing_ok=True)
            raise

        logger.info(
            f"Задача создана: {job_id}, файл={job.source_name}, "
            f"тип={kind.value}, язык={language}, {len(content)} байт"
        )

        self._schedule(job_id, document_path)
        return job_id

    def submit_url(
        self,
        url: str,
        language: Optional[str] = None,
        want_summary: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> str:
        """
        Скачивает документ по URL и создаёт задачу.

        Raises:
            InvalidInput: ошибка загрузки или невалидный документ
        """
        language = self._validate_language(language)
        fetched = fetch_remote(url, self.config, transport=transport)
        return self.submit(
            fetched.filename,
            fetched.content,
            language=language,
            want_summary=want_summary,
            content_type=fetched.content_type,
            source_name=url,
        )

    def _validate_language(self, language: Optional[str]) -> str:
        language = (language or self.config.default_language).strip()
        if not _LANGUAGE_RE.match(language):
            raise InvalidInput(f"Некорректный код языка: {language!r}")
        return language

    def _schedule(self, job_id: str, document_path: Path) -> None:
        """Отправляет задачу в пул исполнителей."""
        try:
            future = self._pool.submit(self.executor.run, job_id)
        except RuntimeError as e:
            # Пул уже остановлен: задача не должна зависнуть в pending
            logger.error(f"Не удалось поставить задачу {job_id} в очередь: {e}")
            if self.store.transition(job_id, JobStatus.PENDING, JobStatus.PROCESSING):
                self.store.transition(
                    job_id,
                    JobStatus.PROCESSING,
                    JobStatus.FAILED,
                    JobPatch(error="Сервис останавливается, задача не выполнена"),
                )
            if not self.config.keep_uploads:
                document_path.unlink(missing_ok=True)
            return

        future.add_done_callback(_log_unexpected_error)

    # -------------------------------------------------------------------------
    # Чтение
    # -------------------------------------------------------------------------

    def get_status(self, job_id: str) -> JobStatusResponse:
        """
        Статус задачи.

        Raises:
            JobNotFound: задача не существует
        """
        job = self.store.get(job_id)
        return JobStatusResponse(
            id=job.id,
            status=job.status,
            created_at=job.created_at,
            updated_at=job.updated_at,
            error=job.error,
        )

    def get_result(self, job_id: str) -> Job:
        """
        Полный результат задачи.

        Raises:
            JobNotFound: задача не существует
            JobNotReady: задача не в статусе completed (включая failed)
        """
        job = self.store.get(job_id)
        if job.status != JobStatus.COMPLETED:
            raise JobNotReady(job_id, job.status.value)
        return job

    def languages(self) -> list[Language]:
        return list(SUPPORTED_LANGUAGES)


def _log_unexpected_error(future: Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Исполнитель завершился с ошибкой: {error!r}")


def create_job_service(config: Optional[Settings] = None) -> JobService:
    """Собирает сервис с реальными коллабораторами по настройкам."""
    config = config or default_settings
    store = create_store(config)
    executor = PipelineExecutor(
        store=store,
        adapter=ExtractionAdapter(config),
        summarizer=Summarizer(config),
        config=config,
    )
    return JobService(store, executor, config)
