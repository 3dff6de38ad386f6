"""
Исполнитель пайплайна — превращает поставленную задачу в терминальный статус.

Координирует обработку одной задачи:
    1. Захват задачи: pending -> processing (конфликт = задачу уже взял другой)
    2. Выбор стратегии по типу документа:
        - image: OCR одного изображения
        - pdf: текстовый слой, при недостаточном слое — рендеринг + OCR по страницам
    3. Сборка итогового текста
    4. Суммаризация (опционально, ошибка не фатальна)
    5. processing -> completed | failed

Параллелизация:
    - Страницы PDF распознаются в ThreadPoolExecutor по мере рендеринга
    - Результаты фиксируются в хранилище строго по возрастанию номера страницы
    - Одиночные вызовы (изображение, текстовый слой, рендеринг очередной
      страницы, суммаризация) идут в отдельный пул и ждутся не дольше дедлайна
"""

import logging
import os
import time
from collections import deque
from concurrent import futures
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional, TypeVar

from ocr_jobs.config import Settings, settings as default_settings
from ocr_jobs.errors import (
    ExtractionTimeout,
    JobConflict,
    OCRJobsError,
    RecognitionFailure,
    UnsupportedDocument,
)
from ocr_jobs.schemas import (
    DocumentKind,
    ExtractionMethod,
    Job,
    JobPatch,
    JobStatus,
    PageExtraction,
    PageResult,
)
from ocr_jobs.services.extraction import ExtractionAdapter
from ocr_jobs.services.job_store import JobStore
from ocr_jobs.services.summarizer import Summarizer, build_summary_prompt

logger = logging.getLogger(__name__)

T = TypeVar("T")

PAGE_SEPARATOR = "\n\n"


class Deadline:
    """Дедлайн выполнения одной задачи."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def remaining(self, stage: str) -> float:
        """
        Оставшееся время в секундах.

        Raises:
            ExtractionTimeout: если дедлайн уже прошёл
        """
        left = self.expires_at - time.monotonic()
        if left <= 0:
            raise ExtractionTimeout(stage, self.seconds)
        return left


class PipelineExecutor:
    """
    Исполнитель пайплайна извлечения текста.

    Args:
        store: хранилище задач
        adapter: адаптер извлечения (OCR, текстовый слой, рендеринг)
        summarizer: клиент LLM суммаризации
        config: настройки (пул страниц, дедлайн, лимит промпта)
    """

    def __init__(
        self,
        store: JobStore,
        adapter: ExtractionAdapter,
        summarizer: Optional[Summarizer] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.config = config or default_settings
        self.summarizer = summarizer or Summarizer(self.config)
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.page_workers,
            thread_name_prefix="ocr-page",
        )
        self._calls = ThreadPoolExecutor(
            max_workers=self.config.job_workers,
            thread_name_prefix="ocr-call",
        )

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=True)
        self._calls.shutdown(wait=wait, cancel_futures=True)

    def run(self, job_id: str) -> None:
        """
        Выполняет задачу до терминального статуса.

        Никогда не выбрасывает исключений: любая ошибка после захвата
        задачи переводит её в failed с человекочитаемой причиной.

        Args:
            job_id: идентификатор задачи в статусе pending
        """
        if not self.store.transition(job_id, JobStatus.PENDING, JobStatus.PROCESSING):
            logger.info(f"Задача {job_id} уже захвачена другим исполнителем, пропуск")
            return

        total_start = time.perf_counter()
        deadline = Deadline(self.config.job_timeout_seconds)
        document_path = None

        try:
            job = self.store.get(job_id)
            document_path = job.document_path

            logger.info("=" * 60)
            logger.info(f"ЗАДАЧА {job_id}")
            logger.info(f"   Файл: {job.source_name} ({job.document_kind.value})")
            logger.info(f"   Язык: {job.language}")
            logger.info(f"   Суммаризация: {'да' if job.want_summary else 'нет'}")
            logger.info("=" * 60)

            aggregated_text, method, pages = self._extract(job, deadline)

            summary = None
            if job.want_summary:
                summary = self._summarize(job, aggregated_text, deadline)

            patch = JobPatch(
                append_pages=pages,
                aggregated_text=aggregated_text,
                summary=summary,
                extraction_method=method,
            )
            if not self.store.transition(
                job_id, JobStatus.PROCESSING, JobStatus.COMPLETED, patch
            ):
                raise JobConflict(f"Задача {job_id} изменена конкурентно")

        except JobConflict as e:
            logger.warning(f"Задача {job_id}: {e}")
            return
        except OCRJobsError as e:
            logger.warning(f"Задача {job_id} завершилась с ошибкой: {e}")
            self._fail(job_id, str(e))
            return
        except Exception as e:
            logger.exception(f"Непредвиденная ошибка задачи {job_id}: {e}")
            self._fail(job_id, f"Внутренняя ошибка: {e}")
            return
        finally:
            if document_path and not self.config.keep_uploads:
                _remove_file(Path(document_path))

        total_duration = int((time.perf_counter() - total_start) * 1000)
        logger.info(
            f"ЗАДАЧА ЗАВЕРШЕНА {job_id}: {method.value}, "
            f"{len(aggregated_text)} симв., "
            f"summary={'да' if summary else 'нет'}, {total_duration}ms"
        )

    def _fail(self, job_id: str, reason: str) -> None:
        """Переводит задачу в failed, сбрасывая частичные страницы."""
        try:
            applied = self.store.transition(
                job_id,
                JobStatus.PROCESSING,
                JobStatus.FAILED,
                JobPatch(error=reason, clear_pages=True),
            )
        except Exception:
            logger.exception(f"Не удалось перевести задачу {job_id} в failed")
            return

        if not applied:
            logger.warning(f"Задача {job_id} уже не в processing, failed не записан")

    # -------------------------------------------------------------------------
    # Стратегии извлечения
    # -------------------------------------------------------------------------

    def _extract(
        self,
        job: Job,
        deadline: Deadline,
    ) -> tuple[str, ExtractionMethod, list[PageResult]]:
        """
        Выбирает стратегию по типу документа.

        Returns:
            tuple: (итоговый текст, стратегия, страницы для финального перехода)
        """
        if job.document_kind == DocumentKind.IMAGE:
            extraction = self._call(
                deadline,
                "ocr",
                self.adapter.extract_page,
                job.document_path,
                job.language,
            )
            page = _to_page_result(1, extraction)
            return page.text, ExtractionMethod.OCR, [page]

        elif job.document_kind == DocumentKind.PDF:
            text_layer = self._read_text_layer(job, deadline)
            if text_layer is not None:
                logger.info(f"   Стратегия: текстовый слой ({len(text_layer)} симв.)")
                return text_layer, ExtractionMethod.TEXT_LAYER, []

            logger.info("   Стратегия: рендеринг + OCR")
            texts = self._extract_rendered_pages(job, deadline)
            return PAGE_SEPARATOR.join(texts), ExtractionMethod.OCR, []

        else:
            raise UnsupportedDocument(
                f"Неподдерживаемый тип документа: {job.document_kind.value}"
            )

    def _read_text_layer(self, job: Job, deadline: Deadline) -> Optional[str]:
        """
        Текстовый слой — основная стратегия для PDF.

        Повреждённый слой не фатален: переходим к рендерингу.
        """
        try:
            return self._call(
                deadline,
                "text_layer",
                self.adapter.extract_document_text_layer,
                job.document_path,
            )
        except RecognitionFailure as e:
            logger.warning(f"   Текстовый слой недоступен ({e}), fallback на OCR")
            return None

    def _extract_rendered_pages(self, job: Job, deadline: Deadline) -> list[str]:
        """
        Рендерит PDF и распознаёт страницы параллельно.

        Страницы отправляются в пул по мере рендеринга. Фиксация в хранилище
        идёт строго по порядку: голова очереди ждёт свой результат, даже если
        следующие страницы уже готовы. Временное изображение удаляется сразу
        после фиксации страницы, а при ошибке — в finally.

        Returns:
            list[str]: тексты страниц в порядке номеров
        """
        in_flight: deque[tuple[int, Path, futures.Future]] = deque()
        max_in_flight = self.config.page_workers * 2
        texts: list[str] = []
        page_count = 0

        rendered = iter(self.adapter.render_pages(job.document_path))
        try:
            while True:
                # Рендеринг очередной страницы тоже ограничен дедлайном
                image_path = self._call(deadline, "render", next, rendered, None)
                if image_path is None:
                    break
                page_count += 1
                page_number = page_count
                future = self._pool.submit(
                    self.adapter.extract_page, image_path, job.language
                )
                in_flight.append((page_number, Path(image_path), future))

                # Фиксируем готовый префикс, не блокируя рендеринг
                while in_flight and (
                    in_flight[0][2].done() or len(in_flight) >= max_in_flight
                ):
                    texts.append(self._commit_page(job, deadline, *in_flight.popleft()))

            while in_flight:
                texts.append(self._commit_page(job, deadline, *in_flight.popleft()))
        finally:
            for _, image_path, future in in_flight:
                future.cancel()
                _remove_file(image_path)
            _close_pages(rendered)

        if page_count == 0:
            raise RecognitionFailure("PDF не содержит страниц для обработки")

        logger.info(f"   OCR: {page_count} страниц, {sum(len(t) for t in texts)} симв.")
        return texts

    def _commit_page(
        self,
        job: Job,
        deadline: Deadline,
        page_number: int,
        image_path: Path,
        future: futures.Future,
    ) -> str:
        """Дожидается результата страницы, фиксирует его и удаляет изображение."""
        try:
            try:
                extraction = future.result(timeout=deadline.remaining("ocr"))
            except futures.TimeoutError:
                future.cancel()
                raise ExtractionTimeout("ocr", deadline.seconds)

            page = _to_page_result(page_number, extraction)
            if not self.store.transition(
                job.id,
                JobStatus.PROCESSING,
                JobStatus.PROCESSING,
                JobPatch(append_pages=[page]),
            ):
                raise JobConflict(f"Задача {job.id} изменена конкурентно")
        finally:
            _remove_file(image_path)

        logger.info(
            f"        стр.{page_number}: {len(page.text)} симв., "
            f"уверенность {page.metadata.get('confidence', 0):.0f}%"
        )
        return page.text

    # -------------------------------------------------------------------------
    # Суммаризация
    # -------------------------------------------------------------------------

    def _summarize(self, job: Job, text: str, deadline: Deadline) -> Optional[str]:
        """
        Запрашивает описание у LLM.

        Любая ошибка суммаризатора логируется и проглатывается;
        выход за дедлайн остаётся фатальным.
        """
        prompt = build_summary_prompt(text, self.config.summary_prompt_chars)

        try:
            return self._call(deadline, "summarize", self.summarizer.summarize, prompt)
        except ExtractionTimeout:
            raise
        except Exception as e:
            logger.warning(f"Суммаризация задачи {job.id} не удалась: {e}")
            return None

    # -------------------------------------------------------------------------
    # Вызовы коллабораторов с дедлайном
    # -------------------------------------------------------------------------

    def _call(self, deadline: Deadline, stage: str, fn: Callable[..., T], *args) -> T:
        """Выполняет блокирующий вызов в пуле, ожидая не дольше дедлайна."""
        timeout = deadline.remaining(stage)
        future = self._calls.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except futures.TimeoutError:
            future.cancel()
            raise ExtractionTimeout(stage, deadline.seconds)


def _to_page_result(page_number: int, extraction: PageExtraction) -> PageResult:
    return PageResult(
        page_number=page_number,
        text=extraction.text or "",
        metadata=dict(extraction.metadata),
    )


def _close_pages(rendered) -> None:
    """Закрывает генератор страниц (удаляет временную папку рендеринга)."""
    close = getattr(rendered, "close", None)
    if close is None:
        return
    try:
        close()
    except ValueError:
        # Рендеринг ещё идёт в пуле вызовов после таймаута; папка удалится,
        # когда генератор завершит страницу и будет собран
        logger.warning("Рендеринг страницы ещё выполняется, очистка отложена")


def _remove_file(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Не удалось удалить временный файл {path}: {e}")
