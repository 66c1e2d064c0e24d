"""
xAI (Grok) adapter (ai). Book generation through chat completions.
"""
import logging
from typing import List

from config import get_provider_settings
from constants import PROVIDER_TYPE_AI
from errors import ProviderResponseError
from providers.adapters.generative import BOOK_FIELDS_INSTRUCTION, parse_generated_books
from providers.base import BaseProvider
from providers.capabilities import BookGenerator, GeneratedBook

logger = logging.getLogger(__name__)

XAI_API_BASE = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-4-1-fast-non-reasoning"

SYSTEM_PROMPT = (
    "You are a knowledgeable book expert. Generate a JSON array of books matching "
    "the user's request. " + BOOK_FIELDS_INSTRUCTION + " If you do not have "
    "verifiable information, answer with {\"error\": \"insufficient verifiable data\"}."
)


class XaiProvider(BaseProvider, BookGenerator):
    NAME = "xai"
    PROVIDER_TYPE = PROVIDER_TYPE_AI
    REQUIRES_API_KEY = True

    @property
    def model(self) -> str:
        return get_provider_settings(self.NAME).get('model') or DEFAULT_MODEL

    def build_request(self, prompt: str, count: int) -> dict:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"{prompt}\n\nGenerate exactly {count} books in JSON format. "
                        "Return only a valid JSON array with no additional text."
                    ),
                },
            ],
            "temperature": 0.7,
            "response_format": {"type": "json_object"},
        }

    def generate_books(self, prompt: str, count: int) -> List[GeneratedBook]:
        data = self.http.post_json(
            f"{XAI_API_BASE}/chat/completions",
            self.build_request(prompt, count),
            headers={"Authorization": f"Bearer {self.api_key or ''}"},
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderResponseError(f"{self.NAME}: no content in response") from e

        usage = (data or {}).get("usage") or {}
        if usage:
            logger.info(f"{self.NAME} token usage: {usage.get('total_tokens')} ({self.model})")

        books = parse_generated_books(content, self.NAME)
        logger.info(f"{self.NAME} generated {len(books)}/{count} books")
        return books
