"""
OCR Jobs Service — асинхронное извлечение текста из изображений и PDF.

Клиент отправляет документ и сразу получает id задачи; обработка идёт
в фоне:
    - Изображение: OCR через Tesseract
    - PDF: текстовый слой (PyMuPDF), иначе рендеринг + OCR по страницам
    - Опционально: краткое описание от LLM

Результат доступен по id задачи после перехода в completed.
"""

from ocr_jobs.config import settings
from ocr_jobs.schemas import Job, JobStatus, PageResult

__all__ = [
    "settings",
    "Job",
    "JobStatus",
    "PageResult",
]
