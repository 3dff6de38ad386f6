"""
Единая конфигурация OCR Jobs Service.

Все значения читаются из .env файла (или переменных окружения).
Для локального запуска достаточно дефолтов; ключ LLM нужен только
для суммаризации.

Единый префикс: OCR_
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Настройки OCR Jobs Service.

    Читает переменные с префиксом OCR_ из .env файла.
    Объединяет все параметры: API лимиты, хранилище, пайплайн, суммаризация.
    """

    model_config = SettingsConfigDict(
        env_prefix="OCR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Сервер ---
    port: int = 3000
    log_level: str = "INFO"

    # --- API: лимиты ---
    max_file_size_mb: int = 50
    max_pages: int = 200
    # Лимит пикселей одного изображения (защита от decompression bomb)
    max_image_pixels: int = 178_956_970

    # --- Хранилище ---
    upload_dir: Path = Path("uploads")
    store_backend: Literal["memory", "sqlite"] = "sqlite"
    database_path: Path = Path("database.sqlite")

    # --- Split: PDF -> images ---
    render_dpi: int = 300
    render_format: str = "png"

    # --- Текстовый слой PDF ---
    # Меньше этого числа символов — слой считается недостаточным
    text_layer_min_chars: int = 100

    # --- OCR: Tesseract ---
    ocr_oem: int = 3
    ocr_psm: int = 3
    default_language: str = "eng"

    # --- Параллелизм и таймауты ---
    job_workers: int = 4
    page_workers: int = 4
    job_timeout_seconds: float = 600.0
    fetch_timeout_seconds: float = 30.0
    # Верхняя граница одного вызова внешнего процесса (tesseract, pdftoppm/pdfinfo)
    ocr_timeout_seconds: float = 120.0
    render_timeout_seconds: float = 120.0

    # --- Загрузки ---
    # Исходный документ удаляется после терминального статуса задачи
    keep_uploads: bool = False

    # --- Суммаризация (LLM) ---
    summary_prompt_chars: int = 4000
    summary_model: str = "gpt-4o-mini"
    summary_max_tokens: int = 500
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    summary_timeout_seconds: float = 60.0


# Глобальный экземпляр настроек
settings = Settings()
