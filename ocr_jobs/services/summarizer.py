"""
Суммаризация распознанного текста через LLM (OpenAI-совместимый API).

Ошибка суммаризации не фатальна: задача завершается без summary.
"""

import logging
from typing import Optional

import openai
from openai import OpenAI

from ocr_jobs.config import Settings, settings as default_settings
from ocr_jobs.errors import SummarizationError

logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTIONS = (
    "You are given text extracted from a document or image by OCR. "
    "Write a short description of what the document is and summarize its "
    "key content in a few sentences. Use the language of the document. "
    "Do not invent information that is not present in the text."
)


def build_summary_prompt(text: str, limit: int) -> str:
    """
    Формирует промпт из ограниченного префикса текста.

    Args:
        text: итоговый текст документа
        limit: максимальное число символов текста в промпте

    Returns:
        str: промпт для LLM
    """
    excerpt = text[:limit]
    return f"{SUMMARY_INSTRUCTIONS}\n\nOCR Extracted Text:\n{excerpt}"


class Summarizer:
    """
    Клиент LLM суммаризации.

    Клиент OpenAI создаётся лениво: без ключа сервис работает,
    но каждая попытка суммаризации завершается SummarizationError.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._client: Optional[OpenAI] = None

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self.config.openai_api_key:
                raise SummarizationError("OCR_OPENAI_API_KEY не задан")
            self._client = OpenAI(
                api_key=self.config.openai_api_key,
                base_url=self.config.openai_base_url,
                timeout=self.config.summary_timeout_seconds,
            )
        return self._client

    def summarize(self, prompt: str) -> str:
        """
        Запрашивает описание у LLM.

        Args:
            prompt: готовый промпт (см. build_summary_prompt)

        Returns:
            str: текст описания

        Raises:
            SummarizationError: нет ключа, ошибка API или пустой ответ
        """
        client = self._get_client()

        try:
            response = client.chat.completions.create(
                model=self.config.summary_model,
                temperature=0.3,
                max_tokens=self.config.summary_max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.OpenAIError as e:
            raise SummarizationError(f"Ошибка LLM API: {e}") from e

        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise SummarizationError("LLM вернула пустой ответ")

        return content
