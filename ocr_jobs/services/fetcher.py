"""
Загрузка документа по URL.

Любая сетевая ошибка, не-2xx ответ или превышение лимита размера
превращается в InvalidInput: клиент получает 400 синхронно.
"""

import logging
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import urlparse

import httpx

from ocr_jobs.config import Settings, settings as default_settings
from ocr_jobs.errors import InvalidInput
from ocr_jobs.schemas import FetchedFile

logger = logging.getLogger(__name__)


def fetch_remote(
    url: str,
    config: Optional[Settings] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> FetchedFile:
    """
    Скачивает файл по URL с ограничением размера.

    Args:
        url: http(s) адрес документа
        config: настройки (таймаут и лимит размера)
        transport: транспорт httpx (подменяется в тестах)

    Returns:
        FetchedFile: имя файла, содержимое и Content-Type

    Raises:
        InvalidInput: некорректный URL, сетевая ошибка или слишком большой файл
    """
    config = config or default_settings

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInput(f"Некорректный URL: {url}")

    max_size = config.max_file_size_mb * 1024 * 1024
    filename = PurePosixPath(parsed.path).name or "document"

    logger.info(f"Загрузка документа по URL: {url}")

    try:
        with httpx.Client(
            timeout=httpx.Timeout(config.fetch_timeout_seconds),
            follow_redirects=True,
            transport=transport,
        ) as client:
            with client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise InvalidInput(
                        f"URL вернул ошибку: {response.status_code}"
                    )

                chunks = []
                size = 0
                for chunk in response.iter_bytes():
                    size += len(chunk)
                    if size > max_size:
                        raise InvalidInput(
                            f"Файл по URL слишком большой, "
                            f"максимум: {config.max_file_size_mb} МБ"
                        )
                    chunks.append(chunk)

                content_type = response.headers.get("content-type")
    except httpx.HTTPError as e:
        raise InvalidInput(f"Не удалось скачать {url}: {e}") from e

    content = b"".join(chunks)
    logger.info(f"Скачано {len(content)} байт: {filename}")

    return FetchedFile(
        filename=filename,
        content=content,
        content_type=content_type.split(";")[0].strip() if content_type else None,
    )
