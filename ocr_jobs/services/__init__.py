"""
Сервисы OCR Jobs.

Модули:
    - extraction: OCR изображений, текстовый слой PDF, рендеринг страниц
    - job_store: хранилище задач с атомарными переходами статуса
    - pipeline: исполнитель пайплайна одной задачи
    - job_service: постановка задач, статус и результат
    - summarizer: LLM суммаризация текста
    - fetcher: загрузка документа по URL
"""

from ocr_jobs.services.extraction import ExtractionAdapter
from ocr_jobs.services.job_service import JobService, create_job_service
from ocr_jobs.services.job_store import InMemoryJobStore, JobStore, SqliteJobStore
from ocr_jobs.services.pipeline import PipelineExecutor
from ocr_jobs.services.summarizer import Summarizer

__all__ = [
    "ExtractionAdapter",
    "JobService",
    "create_job_service",
    "JobStore",
    "InMemoryJobStore",
    "SqliteJobStore",
    "PipelineExecutor",
    "Summarizer",
]
