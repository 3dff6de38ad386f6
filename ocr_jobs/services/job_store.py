"""
Job Store — хранилище задач OCR.

Единственный примитив изменения — transition(): атомарный переход статуса
с применением патча. Переход выполняется только если текущий статус
совпадает с ожидаемым, иначе возвращается False (конфликт) и патч
не применяется. Это делает безопасными параллельные и повторные запуски
исполнителя для одной задачи.

Реализации:
    - InMemoryJobStore: словарь в памяти под threading.Lock
    - SqliteJobStore: одна строка на задачу, страницы в JSON
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Union

from ocr_jobs.config import Settings
from ocr_jobs.errors import DuplicateJobId, IllegalTransition, JobNotFound
from ocr_jobs.schemas import (
    ALLOWED_TRANSITIONS,
    Job,
    JobPatch,
    JobStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class JobStore:
    """Базовый интерфейс хранилища задач."""

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def create(self, job: Job) -> None:
        raise NotImplementedError

    def transition(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        patch: Optional[JobPatch] = None,
    ) -> bool:
        raise NotImplementedError

    def get(self, job_id: str) -> Job:
        raise NotImplementedError


def check_transition(from_status: JobStatus, to_status: JobStatus) -> None:
    """Проверяет, что переход есть в машине состояний."""
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise IllegalTransition(
            f"Недопустимый переход: {from_status.value} -> {to_status.value}"
        )


def apply_patch(job: Job, to_status: JobStatus, patch: Optional[JobPatch]) -> Job:
    """
    Применяет переход и патч к копии задачи.

    Страницы только дописываются в конец и должны продолжать
    последовательность номеров без пропусков.

    Returns:
        Job: новая версия задачи

    Raises:
        ValueError: если номер добавляемой страницы нарушает порядок
    """
    patch = patch or JobPatch()
    pages = [] if patch.clear_pages else list(job.pages)

    for page in patch.append_pages:
        expected = len(pages) + 1
        if page.page_number != expected:
            raise ValueError(
                f"Задача {job.id}: ожидалась страница {expected}, "
                f"получена {page.page_number}"
            )
        pages.append(page)

    update = {"status": to_status, "pages": pages, "updated_at": utcnow()}
    for name in ("aggregated_text", "summary", "error", "extraction_method"):
        value = getattr(patch, name)
        if value is not None:
            update[name] = value

    return job.model_copy(update=update, deep=True)


class InMemoryJobStore(JobStore):
    """
    In-memory хранилище задач.

    Подходит для одного процесса и тестов: данные теряются при перезапуске.
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise DuplicateJobId(f"Задача {job.id} уже существует")
            self._jobs[job.id] = job.model_copy(deep=True)

        logger.debug(f"Создана задача {job.id}, всего в хранилище={len(self._jobs)}")

    def transition(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        patch: Optional[JobPatch] = None,
    ) -> bool:
        check_transition(from_status, to_status)

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.status != from_status:
                return False
            self._jobs[job_id] = apply_patch(job, to_status, patch)

        return True

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job.model_copy(deep=True)


class SqliteJobStore(JobStore):
    """
    SQLite хранилище задач.

    Атомарность перехода обеспечивается условным UPDATE
    (WHERE id = ? AND status = ?) внутри транзакции.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def open(self) -> None:
        """Открывает соединение и создаёт схему при необходимости."""
        if self.conn is not None:
            return

        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,
        )
        self.conn.row_factory = sqlite3.Row
        self._create_schema()
        logger.info(f"Хранилище задач открыто: {self.db_path}")

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
            logger.info("Хранилище задач закрыто")

    def _create_schema(self) -> None:
        self._connection().execute("""
            CREATE TABLE IF NOT EXISTS ocr_jobs (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("Хранилище задач не открыто: вызовите open()")
        return self.conn

    def create(self, job: Job) -> None:
        conn = self._connection()
        with self._lock:
            try:
                conn.execute(
                    """
                    INSERT INTO ocr_jobs (id, status, payload, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.status.value,
                        job.model_dump_json(),
                        job.created_at.isoformat(),
                        job.updated_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateJobId(f"Задача {job.id} уже существует") from e

    def transition(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        patch: Optional[JobPatch] = None,
    ) -> bool:
        check_transition(from_status, to_status)
        conn = self._connection()

        with self._lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                job = self._load(job_id)
                if job.status != from_status:
                    conn.execute("ROLLBACK")
                    return False

                updated = apply_patch(job, to_status, patch)
                cursor = conn.execute(
                    """
                    UPDATE ocr_jobs
                    SET status = ?, payload = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        updated.status.value,
                        updated.model_dump_json(),
                        updated.updated_at.isoformat(),
                        job_id,
                        from_status.value,
                    ),
                )
                if cursor.rowcount != 1:
                    conn.execute("ROLLBACK")
                    return False

                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return True

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._load(job_id)

    def _load(self, job_id: str) -> Job:
        row = self._connection().execute(
            "SELECT payload FROM ocr_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        if row is None:
            raise JobNotFound(job_id)
        return Job.model_validate(json.loads(row["payload"]))


def create_store(config: Settings) -> JobStore:
    """Создаёт хранилище по настройке store_backend."""
    if config.store_backend == "memory":
        return InMemoryJobStore()
    return SqliteJobStore(config.database_path)
