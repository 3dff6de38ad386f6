"""
Единые схемы данных OCR Jobs Service.

Включает:
    - Статусы задачи и машину состояний
    - Pydantic модели задачи и результата страницы (хранятся в Job Store)
    - Pydantic модели ответов API (camelCase)
    - Внутренние dataclass'ы пайплайна
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Статусы и машина состояний
# =============================================================================


class JobStatus(str, Enum):
    """Статус задачи: pending -> processing -> completed | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# processing -> processing — дозапись очередной страницы
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class DocumentKind(str, Enum):
    """Тип документа, определяется один раз при классификации."""

    IMAGE = "image"
    PDF = "pdf"
    UNSUPPORTED = "unsupported"


class ExtractionMethod(str, Enum):
    """Какой стратегией получен итоговый текст."""

    OCR = "ocr"
    TEXT_LAYER = "text_layer"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Модели хранилища
# =============================================================================


class APIModel(BaseModel):
    """База для моделей, отдаваемых через API: поля в camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PageResult(APIModel):
    """
    Результат извлечения для одной страницы.

    Attributes:
        page_number: номер страницы (начинается с 1), задаёт порядок
        text: распознанный текст (может быть пустым)
        metadata: данные адаптера (confidence, размеры, слова с bbox)
    """

    page_number: int = Field(ge=1)
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    """
    Запись задачи в Job Store.

    Attributes:
        id: уникальный идентификатор задачи
        source_name: исходное имя файла или URL
        language: язык Tesseract (например "eng" или "rus+eng")
        status: текущий статус
        document_path: локальный путь к сохранённому документу
        document_kind: тип документа (image / pdf)
        want_summary: запрошена ли суммаризация
        pages: результаты по страницам (только для OCR пути)
        aggregated_text: итоговый текст (только при completed)
        summary: краткое описание от LLM (если запрошено и удалось)
        error: причина ошибки (только при failed)
        extraction_method: выбранная стратегия извлечения
        created_at: время создания
        updated_at: время последнего изменения
    """

    id: str
    source_name: str
    language: str
    status: JobStatus = JobStatus.PENDING
    document_path: str
    document_kind: DocumentKind
    want_summary: bool = False
    pages: list[PageResult] = Field(default_factory=list)
    aggregated_text: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    extraction_method: Optional[ExtractionMethod] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


@dataclass
class JobPatch:
    """
    Изменения, применяемые атомарно вместе с переходом статуса.

    Attributes:
        append_pages: страницы для дозаписи в конец pages
        clear_pages: сбросить накопленные страницы (при failed)
        aggregated_text: итоговый текст
        summary: описание от LLM
        error: причина ошибки
        extraction_method: выбранная стратегия
    """

    append_pages: list[PageResult] = field(default_factory=list)
    clear_pages: bool = False
    aggregated_text: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    extraction_method: Optional[ExtractionMethod] = None


# =============================================================================
# Внутренние dataclass'ы пайплайна
# =============================================================================


@dataclass
class PageExtraction:
    """
    Результат распознавания одного изображения.

    Attributes:
        text: распознанный текст
        metadata: confidence, размеры изображения, слова с координатами
    """

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchedFile:
    """Файл, скачанный по URL."""

    filename: str
    content: bytes
    content_type: Optional[str] = None


# =============================================================================
# Pydantic модели для API
# =============================================================================


class JobSubmitted(APIModel):
    job_id: str
    status: JobStatus


class JobStatusResponse(APIModel):
    """
    Статус задачи.

    Причина ошибки failed задачи доступна только здесь, а не в результате.
    """

    id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    error: Optional[str] = None


class Accessibility(APIModel):
    """
    Данные для доступности (alt-текст изображения).

    Attributes:
        alt_text: первые 200 символов текста в одну строку
        has_text: есть ли в документе непустой текст
        language_detected: язык, с которым выполнялось распознавание
    """

    alt_text: str
    has_text: bool
    language_detected: str


class JobResultResponse(APIModel):
    """Полный результат завершённой задачи."""

    id: str
    source_name: str
    language: str
    status: JobStatus
    extraction_method: Optional[ExtractionMethod] = None
    text: str
    summary: Optional[str] = None
    pages: list[PageResult] = []
    accessibility: Accessibility
    created_at: datetime
    updated_at: datetime


class Language(BaseModel):
    code: str
    name: str
