"""
Иерархия ошибок OCR Jobs Service.

Синхронные ошибки (InvalidInput, JobNotFound, JobNotReady) доходят до
клиента через HTTP слой. Ошибки коллабораторов (RecognitionFailure,
ResourceExhausted, ExtractionTimeout) перехватываются исполнителем пайплайна
и превращаются в статус failed.
"""

from typing import Optional


class OCRJobsError(Exception):
    """Базовая ошибка сервиса."""

    code = "internal_error"


class InvalidInput(OCRJobsError):
    """Некорректный запрос: нет файла/url, неподдерживаемый тип, превышен размер."""

    code = "invalid_input"


class JobNotFound(OCRJobsError):
    """Задача с таким id не существует."""

    code = "not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Задача {job_id} не найдена")
        self.job_id = job_id


class JobNotReady(OCRJobsError):
    """Результат запрошен до перехода задачи в completed."""

    code = "not_ready"

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Задача {job_id} ещё не завершена (статус: {status})")
        self.job_id = job_id
        self.status = status


class DuplicateJobId(OCRJobsError):
    """Попытка создать задачу с уже существующим id."""

    code = "duplicate_id"


class IllegalTransition(OCRJobsError):
    """Переход между статусами, которого нет в машине состояний."""

    code = "illegal_transition"


class RecognitionFailure(OCRJobsError):
    """Распознавание невозможно: нет Tesseract, битый файл, неизвестный формат."""

    code = "recognition_failure"


class ResourceExhausted(OCRJobsError):
    """Входные данные превышают настроенные лимиты (пиксели, страницы)."""

    code = "resource_exhausted"


class UnsupportedDocument(OCRJobsError):
    """Тип документа не поддерживается пайплайном."""

    code = "unsupported_document"


class ExtractionTimeout(OCRJobsError):
    """Обработка задачи не уложилась в дедлайн."""

    code = "timeout"

    def __init__(self, stage: str, timeout_seconds: Optional[float] = None):
        message = f"Timeout: этап '{stage}' превысил дедлайн"
        if timeout_seconds is not None:
            message += f" ({timeout_seconds:g} с)"
        super().__init__(message)
        self.stage = stage


class SummarizationError(OCRJobsError):
    """Ошибка LLM суммаризации (не фатальна для задачи)."""

    code = "summarization_error"


class JobConflict(OCRJobsError):
    """Статус задачи изменился конкурентно: переход не применён."""

    code = "conflict"
