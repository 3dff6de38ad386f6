"""
OCR Jobs Service — FastAPI приложение.

Эндпоинты:
    POST /jobs — загрузка файла (или url) и постановка задачи, 202
    GET  /jobs/{job_id}/status — статус задачи
    GET  /jobs/{job_id}/result — результат завершённой задачи
    GET  /languages — поддерживаемые языки
    GET  /health — проверка работоспособности (Tesseract + конфиг)

Запуск:
    uvicorn ocr_jobs.main:app --host 0.0.0.0 --port 3000
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ocr_jobs.config import settings
from ocr_jobs.errors import InvalidInput, JobNotFound, JobNotReady
from ocr_jobs.schemas import (
    Accessibility,
    Job,
    JobResultResponse,
    JobStatus,
    JobStatusResponse,
    JobSubmitted,
    Language,
)
from ocr_jobs.services.extraction import get_tesseract_version
from ocr_jobs.services.job_service import JobService, create_job_service

# Настройка логгера
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [OCR-Jobs] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

ALT_TEXT_LENGTH = 200


class UnicodeJSONResponse(JSONResponse):
    """JSON ответ с нормальным отображением кириллицы (без \\uXXXX экранирования)."""

    def render(self, content) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


def create_app(service: Optional[JobService] = None) -> FastAPI:
    """
    Создаёт FastAPI приложение.

    Args:
        service: готовый сервис задач (для тестов); по умолчанию
            собирается из настроек при старте приложения

    Returns:
        FastAPI: приложение с lifespan, открывающим и закрывающим сервис
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        job_service = service or create_job_service(settings)
        job_service.start()
        app.state.job_service = job_service
        try:
            yield
        finally:
            await run_in_threadpool(job_service.shutdown)

    app = FastAPI(
        title="OCR Jobs Service",
        description="Асинхронное извлечение текста из изображений и PDF (Tesseract OCR)",
        version="1.0.0",
        default_response_class=UnicodeJSONResponse,
        lifespan=lifespan,
    )

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(request: Request, exc: InvalidInput):
        logger.warning(f"Некорректный запрос: {exc}")
        return UnicodeJSONResponse(
            status_code=400,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(JobNotFound)
    async def not_found_handler(request: Request, exc: JobNotFound):
        return UnicodeJSONResponse(
            status_code=404,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(JobNotReady)
    async def not_ready_handler(request: Request, exc: JobNotReady):
        return UnicodeJSONResponse(
            status_code=409,
            content={"error": exc.code, "message": str(exc), "status": exc.status},
        )


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health_check() -> dict:
        """
        Проверка работоспособности сервиса.

        Returns:
            dict: статус сервиса, доступность Tesseract и конфигурация
        """
        tesseract_version = await run_in_threadpool(get_tesseract_version)

        return {
            "status": "ok" if tesseract_version else "degraded",
            "service": "ocr-jobs",
            "version": "1.0.0",
            "cpu_count": os.cpu_count(),
            "tesseract": {
                "available": tesseract_version is not None,
                "version": tesseract_version or "unknown",
            },
            "config": {
                "max_file_size_mb": settings.max_file_size_mb,
                "store_backend": settings.store_backend,
                "render_dpi": settings.render_dpi,
                "job_workers": settings.job_workers,
                "page_workers": settings.page_workers,
                "job_timeout_seconds": settings.job_timeout_seconds,
                "summarizer_configured": settings.openai_api_key is not None,
            },
        }

    @app.post(
        "/jobs",
        status_code=202,
        response_model=JobSubmitted,
        response_model_by_alias=True,
    )
    async def submit_job(
        request: Request,
        file: Optional[UploadFile] = File(default=None, description="Изображение или PDF"),
        url: Optional[str] = Form(default=None, description="URL документа"),
        url_query: Optional[str] = Query(default=None, alias="url"),
        language: Optional[str] = Form(default=None, description="Язык Tesseract"),
        language_query: Optional[str] = Query(default=None, alias="language"),
        summarize: Optional[bool] = Form(default=None, description="Запросить описание у LLM"),
        summarize_query: Optional[bool] = Query(default=None, alias="summarize"),
    ) -> JobSubmitted:
        """
        Ставит документ в очередь на распознавание.

        Возвращает id задачи сразу, не дожидаясь обработки.

        Raises:
            InvalidInput: нет файла и url, неподдерживаемый тип, превышен размер
        """
        service: JobService = request.app.state.job_service
        source_url = url or url_query
        language = language or language_query
        want_summary = bool(summarize if summarize is not None else summarize_query)

        if file is not None and file.filename:
            content = await file.read()
            logger.info(f"Получен файл: {file.filename}, {len(content)} байт")
            job_id = await run_in_threadpool(
                service.submit,
                file.filename,
                content,
                language,
                want_summary,
                file.content_type,
            )
        elif source_url:
            job_id = await run_in_threadpool(
                service.submit_url, source_url, language, want_summary
            )
        else:
            raise InvalidInput("Не передан файл (поле file) или url")

        return JobSubmitted(job_id=job_id, status=JobStatus.PENDING)

    @app.get(
        "/jobs/{job_id}/status",
        response_model=JobStatusResponse,
        response_model_by_alias=True,
    )
    async def get_job_status(job_id: str, request: Request) -> JobStatusResponse:
        service: JobService = request.app.state.job_service
        return await run_in_threadpool(service.get_status, job_id)

    @app.get(
        "/jobs/{job_id}/result",
        response_model=JobResultResponse,
        response_model_by_alias=True,
    )
    async def get_job_result(job_id: str, request: Request) -> JobResultResponse:
        """
        Результат завершённой задачи.

        Для задач не в completed (в т.ч. failed) возвращает 409;
        причина ошибки доступна через /status.
        """
        service: JobService = request.app.state.job_service
        job = await run_in_threadpool(service.get_result, job_id)
        return _job_to_result(job)

    @app.get("/languages", response_model=list[Language])
    async def list_languages(request: Request) -> list[Language]:
        service: JobService = request.app.state.job_service
        return service.languages()


def _job_to_result(job: Job) -> JobResultResponse:
    """Преобразует завершённую задачу в ответ API с блоком доступности."""
    text = job.aggregated_text or ""
    alt_text = text[:ALT_TEXT_LENGTH].replace("\n", " ")
    if len(text) > ALT_TEXT_LENGTH:
        alt_text += "..."

    return JobResultResponse(
        id=job.id,
        source_name=job.source_name,
        language=job.language,
        status=job.status,
        extraction_method=job.extraction_method,
        text=text,
        summary=job.summary,
        pages=job.pages,
        accessibility=Accessibility(
            alt_text=alt_text,
            has_text=bool(text.strip()),
            language_detected=job.language,
        ),
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Запуск OCR Jobs Service на порту {settings.port}")
    logger.info(f"CPU ядер: {os.cpu_count()}")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.port,
        log_level="info",
    )
