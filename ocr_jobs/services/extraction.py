"""
Адаптер извлечения текста — единый интерфейс над коллабораторами.

Содержит:
    - Распознавание изображения через Tesseract (один вызов image_to_data)
    - Извлечение текстового слоя PDF через PyMuPDF
    - Ленивый рендеринг страниц PDF в изображения через pdf2image (pdftoppm)

Адаптер не повторяет неудачные вызовы: политика повторов и fallback
принадлежит исполнителю пайплайна.
"""

import logging
import shutil
import tempfile
import time
from pathlib import Path
from typing import Iterator, Optional, Union

import fitz  # PyMuPDF
import pytesseract
from pdf2image import convert_from_path
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)
from pdf2image.pdf2image import pdfinfo_from_path
from PIL import Image, UnidentifiedImageError

from ocr_jobs.config import Settings, settings as default_settings
from ocr_jobs.errors import RecognitionFailure, ResourceExhausted
from ocr_jobs.schemas import PageExtraction

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_PDF_ERRORS = (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)


class ExtractionAdapter:
    """
    Адаптер над распознавателем, рендерером страниц и экстрактором текстового слоя.

    Args:
        config: настройки сервиса (DPI, OEM/PSM, лимиты)
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    # -------------------------------------------------------------------------
    # Распознавание изображения
    # -------------------------------------------------------------------------

    def extract_page(self, image_path: PathLike, language: str) -> PageExtraction:
        """
        Распознаёт текст на одном изображении через Tesseract.

        Один вызов image_to_data даёт и текст, и confidence, и координаты слов.

        Args:
            image_path: путь к изображению
            language: языки в формате Tesseract (например "rus+eng")

        Returns:
            PageExtraction: текст и метаданные страницы

        Raises:
            RecognitionFailure: Tesseract недоступен, файл не читается или
                распознавание дольше ocr_timeout_seconds
            ResourceExhausted: изображение больше max_image_pixels
        """
        start = time.perf_counter()
        image = self._open_image(image_path)

        config = f"--oem {self.config.ocr_oem} --psm {self.config.ocr_psm}"

        try:
            with image:
                width, height = image.size
                data = pytesseract.image_to_data(
                    image,
                    lang=language,
                    config=config,
                    output_type=pytesseract.Output.DICT,
                    timeout=self.config.ocr_timeout_seconds,
                )
        except pytesseract.TesseractNotFoundError as e:
            raise RecognitionFailure("Tesseract не установлен или не найден в PATH") from e
        except (pytesseract.TesseractError, RuntimeError, OSError) as e:
            raise RecognitionFailure(f"Ошибка Tesseract: {e}") from e

        text = _assemble_text_from_data(data)
        words = _extract_words_from_data(data)

        # Средняя уверенность только по реальным словам (conf >= 0)
        confidences = [w["conf"] for w in words if w["conf"] >= 0]
        avg_confidence = sum(confidences) / len(confidences) if confidences else 0.0

        return PageExtraction(
            text=text,
            metadata={
                "confidence": round(avg_confidence, 2),
                "width": width,
                "height": height,
                "words": words,
                "processing_time_ms": int((time.perf_counter() - start) * 1000),
            },
        )

    def _open_image(self, image_path: PathLike) -> Image.Image:
        """Открывает изображение и проверяет лимит пикселей."""
        try:
            image = Image.open(image_path)
        except Image.DecompressionBombError as e:
            raise ResourceExhausted(f"Изображение слишком большое: {e}") from e
        except (UnidentifiedImageError, OSError) as e:
            raise RecognitionFailure(f"Не удалось открыть изображение: {e}") from e

        width, height = image.size
        if width * height > self.config.max_image_pixels:
            image.close()
            raise ResourceExhausted(
                f"Изображение {width}x{height} превышает лимит "
                f"{self.config.max_image_pixels} пикселей"
            )
        return image

    # -------------------------------------------------------------------------
    # Текстовый слой PDF
    # -------------------------------------------------------------------------

    def extract_document_text_layer(self, document_path: PathLike) -> Optional[str]:
        """
        Извлекает встроенный текстовый слой PDF.

        Args:
            document_path: путь к PDF

        Returns:
            str: текст документа (страницы через пустую строку)
            None: текстовый слой отсутствует или короче text_layer_min_chars

        Raises:
            RecognitionFailure: PDF повреждён или не открывается
            ResourceExhausted: страниц больше max_pages
        """
        try:
            with fitz.open(str(document_path)) as doc:
                if doc.page_count > self.config.max_pages:
                    raise ResourceExhausted(
                        f"PDF содержит {doc.page_count} страниц, "
                        f"максимум: {self.config.max_pages}"
                    )
                page_texts = [page.get_text().strip() for page in doc]
        except (fitz.FileDataError, RuntimeError, ValueError, OSError) as e:
            raise RecognitionFailure(f"Не удалось прочитать PDF: {e}") from e

        text = "\n\n".join(t for t in page_texts if t)

        if len(text.strip()) < self.config.text_layer_min_chars:
            logger.info(
                f"Текстовый слой недостаточен: {len(text.strip())} симв. "
                f"(минимум {self.config.text_layer_min_chars})"
            )
            return None

        return text

    # -------------------------------------------------------------------------
    # Рендеринг PDF -> images
    # -------------------------------------------------------------------------

    def render_pages(self, document_path: PathLike) -> Iterator[Path]:
        """
        Лениво рендерит страницы PDF в изображения, по одной за раз.

        Генератор одноразовый: каждая страница рендерится только когда
        потребитель запросил её. Потребитель владеет каждым файлом и удаляет
        его после обработки; закрытие генератора удаляет временную папку.

        Args:
            document_path: путь к PDF

        Yields:
            Path: путь к изображению очередной страницы (в порядке страниц)

        Raises:
            RecognitionFailure: poppler недоступен, PDF повреждён или вызов
                poppler дольше render_timeout_seconds
            ResourceExhausted: страниц больше max_pages
        """
        try:
            info = pdfinfo_from_path(
                str(document_path), timeout=self.config.render_timeout_seconds
            )
        except _PDF_ERRORS as e:
            raise RecognitionFailure(f"Не удалось прочитать PDF: {e}") from e

        page_count = int(info.get("Pages", 0))
        if page_count > self.config.max_pages:
            raise ResourceExhausted(
                f"PDF содержит {page_count} страниц, максимум: {self.config.max_pages}"
            )

        logger.info(
            f"Рендеринг PDF: {page_count} страниц, dpi={self.config.render_dpi}"
        )

        tmp_dir = Path(tempfile.mkdtemp(prefix="ocr-pages-"))
        try:
            for page_num in range(1, page_count + 1):
                try:
                    paths = convert_from_path(
                        str(document_path),
                        dpi=self.config.render_dpi,
                        fmt=self.config.render_format,
                        first_page=page_num,
                        last_page=page_num,
                        output_folder=str(tmp_dir),
                        output_file=f"page-{page_num:05d}",
                        paths_only=True,
                        timeout=self.config.render_timeout_seconds,
                    )
                except _PDF_ERRORS as e:
                    raise RecognitionFailure(
                        f"Ошибка рендеринга страницы {page_num}: {e}"
                    ) from e

                if not paths:
                    raise RecognitionFailure(f"Страница {page_num} не отрендерилась")

                yield Path(paths[0])
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)


def _assemble_text_from_data(data: dict) -> str:
    """
    Собирает текст из словаря image_to_data с правильной структурой.

    Алгоритм:
        - Слова на одной строке (line_num) соединяются пробелами
        - Разные строки в одном блоке — новая строка (\\n)
        - Разные блоки — пустая строка между ними (\\n\\n)

    Args:
        data: словарь от pytesseract.image_to_data()

    Returns:
        str: собранный текст с правильной структурой
    """
    # Структура: {block_num: {par_num: {line_num: [words]}}}
    blocks: dict = {}

    for i in range(len(data["text"])):
        word = str(data["text"][i]).strip()
        if not word:  # Пропускаем пустые записи
            continue

        block = data["block_num"][i]
        par = data["par_num"][i]
        line = data["line_num"][i]

        blocks.setdefault(block, {}).setdefault(par, {}).setdefault(line, []).append(word)

    result_blocks = []

    for block_num in sorted(blocks):
        block_lines = []
        for par_num in sorted(blocks[block_num]):
            for line_num in sorted(blocks[block_num][par_num]):
                block_lines.append(" ".join(blocks[block_num][par_num][line_num]))

        result_blocks.append("\n".join(block_lines))

    return "\n\n".join(result_blocks)


def _extract_words_from_data(data: dict) -> list[dict]:
    """
    Извлекает слова с координатами из словаря image_to_data.

    Args:
        data: словарь от pytesseract.image_to_data()

    Returns:
        list[dict]: {text, left, top, width, height, conf, block, line}
    """
    words = []

    for i in range(len(data["text"])):
        word_text = str(data["text"][i]).strip()
        if not word_text:
            continue

        try:
            conf = int(float(data["conf"][i]))
        except (TypeError, ValueError):
            conf = -1

        words.append(
            {
                "text": word_text,
                "left": data["left"][i],
                "top": data["top"][i],
                "width": data["width"][i],
                "height": data["height"][i],
                "conf": conf,
                "block": data["block_num"][i],
                "line": data["line_num"][i],
            }
        )

    return words


def get_tesseract_version() -> Optional[str]:
    """Версия Tesseract или None, если он недоступен."""
    try:
        return str(pytesseract.get_tesseract_version())
    except pytesseract.TesseractNotFoundError:
        return None
