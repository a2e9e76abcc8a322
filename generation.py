"""Text generation used for contextual enrichment."""

from __future__ import annotations

import logging
from typing import Protocol

from credentials import Credentials
from embeddings import get_genai_client
from errors import ProviderError

logger = logging.getLogger("recall.generation")


class TextGenerator(Protocol):
    def generate(self, prompt: str) -> str: ...


class GeminiGenerator:
    """Google Gemini via google-genai."""

    name = "gemini"

    def __init__(self, model: str, credentials: Credentials):
        self.model = model
        self.credentials = credentials

    def generate(self, prompt: str) -> str:
        api_key = self.credentials.get("gemini")
        if api_key is None:
            raise ProviderError(self.name, "GEMINI_API_KEY / GOOGLE_API_KEY not configured")
        try:
            response = get_genai_client(api_key).models.generate_content(model=self.model, contents=prompt)
        except Exception as e:
            raise ProviderError(self.name, str(e)) from e
        text = (response.text or "").strip()
        if not text:
            raise ProviderError(self.name, "empty response")
        return text
