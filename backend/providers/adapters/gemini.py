"""
Gemini adapter (ai). Book generation with native structured output.
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

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_MODEL = "gemini-2.5-flash"

RESPONSE_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "author": {"type": "string"},
            "publisher": {"type": "string"},
            "publication_year": {"type": "integer"},
            "format": {"type": "string"},
            "significance": {"type": "string"},
        },
        "required": ["title", "author", "publication_year"],
    },
}


class GeminiProvider(BaseProvider, BookGenerator):
    NAME = "gemini"
    PROVIDER_TYPE = PROVIDER_TYPE_AI
    REQUIRES_API_KEY = True

    @property
    def model(self) -> str:
        return get_provider_settings(self.NAME).get('model') or DEFAULT_MODEL

    def build_request(self, prompt: str, count: int) -> dict:
        return {
            "contents": [{
                "parts": [{
                    "text": f"{prompt}\n\nGenerate exactly {count} books. {BOOK_FIELDS_INSTRUCTION}",
                }],
            }],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }

    def generate_books(self, prompt: str, count: int) -> List[GeneratedBook]:
        data = self.http.post_json(
            f"{GEMINI_API_BASE}/{self.model}:generateContent",
            self.build_request(prompt, count),
            headers={"x-goog-api-key": self.api_key or ""},
        )
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderResponseError(f"{self.NAME}: no content in response") from e

        books = parse_generated_books(text, self.NAME)
        logger.info(f"{self.NAME} generated {len(books)}/{count} books")
        return books
